# ==============================================================================
# app/api/forms.py
# ------------------------------------------------------------------------------
# Request payload validation using Flask-WTF forms fed from JSON bodies.
# ==============================================================================

from flask_wtf import FlaskForm
from wtforms import BooleanField, DateField, DecimalField, IntegerField, PasswordField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional, Regexp

from app.api.utils import json_formdata
from app.models import CRM_TYPES, DEAL_CATEGORIES, DEAL_STATUSES, PERIOD_TYPES, USER_ROLES
from app.calculator.schema import EXPORT_FORMATS
from app.calculator.workflow import ACTION_RESULTS, BULK_ACTIONS

EMAIL_PATTERN = r'^[^@\s]+@[^@\s]+\.[^@\s]+$'


def _choices(values):
    return [(v, v) for v in values]


class JSONForm(FlaskForm):
    """Base form for the JSON API; CSRF does not apply to bearer-token requests."""
    class Meta:
        csrf = False

    @classmethod
    def from_json(cls, payload, partial=False):
        """
        Builds the form from a decoded JSON object. With `partial`, fields the
        payload does not mention are dropped so only supplied values are
        validated and returned by `form.data`.
        """
        form = cls(formdata=json_formdata(payload))
        if partial:
            for name in [field.name for field in form if field.name not in payload]:
                del form[name]
        return form


class RegisterForm(JSONForm):
    company_name = StringField('Company name', validators=[DataRequired(message="Company name is required."), Length(max=255)])
    email = StringField('Email', validators=[DataRequired(message="Email is required."), Regexp(EMAIL_PATTERN, message="Invalid email address.")])
    password = PasswordField('Password', validators=[InputRequired(message="Password is required."), Length(min=8)])
    first_name = StringField('First name', validators=[DataRequired(message="First name is required."), Length(max=128)])
    last_name = StringField('Last name', validators=[DataRequired(message="Last name is required."), Length(max=128)])


class LoginForm(JSONForm):
    email = StringField('Email', validators=[DataRequired(message="Email is required.")])
    password = PasswordField('Password', validators=[InputRequired(message="Password is required.")])


class UserForm(JSONForm):
    """Form for adding a user; updates use it with partial=True."""
    email = StringField('Email', validators=[DataRequired(message="Email is required."), Regexp(EMAIL_PATTERN, message="Invalid email address.")])
    first_name = StringField('First name', validators=[DataRequired(message="First name is required."), Length(max=128)])
    last_name = StringField('Last name', validators=[DataRequired(message="Last name is required."), Length(max=128)])
    password = PasswordField('Password', validators=[Optional(), Length(min=8)])
    role = SelectField('Role', choices=_choices(USER_ROLES), validators=[Optional()])
    sub_role = StringField('Sub role', validators=[Optional(), Length(max=64)])
    manager_id = IntegerField('Manager', validators=[Optional()])
    is_admin = BooleanField('Admin')
    is_manager = BooleanField('Manager')
    is_active = BooleanField('Active')


class DealForm(JSONForm):
    deal_name = StringField('Deal name', validators=[DataRequired(message="Deal name is required."), Length(max=255)])
    account_name = StringField('Account', validators=[Optional(), Length(max=255)])
    amount = DecimalField('Amount', validators=[InputRequired(message="Amount is required."), NumberRange(min=0)])
    close_date = DateField('Close date', format='%Y-%m-%d', validators=[InputRequired(message="Close date is required.")])
    status = SelectField('Status', choices=_choices(DEAL_STATUSES), validators=[Optional()])
    stage = StringField('Stage', validators=[Optional(), Length(max=64)])
    category = SelectField('Category', choices=_choices(DEAL_CATEGORIES), validators=[Optional()])
    crm_id = StringField('CRM id', validators=[Optional(), Length(max=64)])
    crm_type = SelectField('CRM', choices=_choices(CRM_TYPES), validators=[Optional()])
    user_id = IntegerField('Owner', validators=[Optional()])


class TargetForm(JSONForm):
    name = StringField('Name', validators=[Optional(), Length(max=128)])
    user_id = IntegerField('User', validators=[Optional()])
    role = SelectField('Role', choices=_choices(USER_ROLES), validators=[Optional()])
    period_type = SelectField('Period type', choices=_choices(PERIOD_TYPES), validators=[InputRequired(message="Period type is required.")])
    period_start = DateField('Period start', format='%Y-%m-%d', validators=[InputRequired(message="Period start is required.")])
    period_end = DateField('Period end', format='%Y-%m-%d', validators=[InputRequired(message="Period end is required.")])
    quota_amount = DecimalField('Quota', validators=[InputRequired(message="Quota is required."), NumberRange(min=0)])
    commission_rate = DecimalField('Commission rate', places=4, validators=[InputRequired(message="Commission rate is required."), NumberRange(min=0, max=1)])
    commission_payment_schedule = SelectField('Payment schedule', choices=_choices(PERIOD_TYPES), validators=[Optional()])
    currency = StringField('Currency', validators=[Optional(), Length(min=3, max=3)])
    parent_target_id = IntegerField('Parent target', validators=[Optional()])


class CommissionActionForm(JSONForm):
    action = SelectField('Action', choices=_choices(ACTION_RESULTS), validators=[InputRequired(message="Action is required.")])
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=2000)])
    payment_reference = StringField('Payment reference', validators=[Optional(), Length(max=128)])
    adjustment_amount = DecimalField('Adjusted amount', validators=[Optional()])
    adjustment_reason = TextAreaField('Adjustment reason', validators=[Optional()])


class BulkActionForm(JSONForm):
    action = SelectField('Action', choices=_choices(BULK_ACTIONS), validators=[InputRequired(message="Action is required.")])
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=2000)])


class ExportForm(JSONForm):
    format = SelectField('Format', choices=_choices(EXPORT_FORMATS), default='simple_csv', validators=[Optional()])
    status = SelectField('Status', choices=_choices(('calculated', 'pending_review', 'approved', 'rejected', 'paid')), validators=[Optional()])
    user_id = IntegerField('User', validators=[Optional()])
    period_start = DateField('Period start', format='%Y-%m-%d', validators=[Optional()])
    period_end = DateField('Period end', format='%Y-%m-%d', validators=[Optional()])


class AppSettingForm(JSONForm):
    """Form for editing a single application setting."""
    value = TextAreaField('Value', validators=[DataRequired(message="Value is required.")])


class CompanyForm(JSONForm):
    name = StringField('Company name', validators=[DataRequired(message="Company name is required."), Length(max=255)])
    domain = StringField('Domain', validators=[Optional(), Length(max=255)])
    hubspot_portal_id = StringField('HubSpot portal id', validators=[Optional(), Regexp(r'^\d{1,20}$', message="Portal id must be numeric.")])
