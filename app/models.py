# ==============================================================================
# app/models.py
# ------------------------------------------------------------------------------
# Defines the database schema using SQLAlchemy ORM models.
# ==============================================================================

from datetime import datetime
from decimal import Decimal
import json

from werkzeug.security import generate_password_hash, check_password_hash

from app import db

MONEY = db.Numeric(14, 2)
RATE = db.Numeric(6, 4)

PERIOD_TYPES = ('monthly', 'quarterly', 'annual')
DEAL_STATUSES = ('open', 'closed_won', 'closed_lost')
DEAL_CATEGORIES = ('pipeline', 'best_case', 'commit')
CRM_TYPES = ('manual', 'hubspot', 'salesforce', 'pipedrive', 'sheets')
USER_ROLES = ('sales_rep', 'manager')
COMMISSION_STATUSES = ('calculated', 'pending_review', 'approved', 'rejected', 'paid')


def _money(value):
    return str(value) if value is not None else None


def _day(value):
    return value.isoformat() if value is not None else None


class Company(db.Model):
    __tablename__ = 'company'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    domain = db.Column(db.String(255), unique=True, nullable=True)
    # HubSpot account (portal) whose webhooks belong to this company
    hubspot_portal_id = db.Column(db.String(64), unique=True, nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    users = db.relationship('User', backref='company', lazy='dynamic')

    def __repr__(self):
        return f'<Company {self.id}: {self.name}>'

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'domain': self.domain, 'hubspot_portal_id': self.hubspot_portal_id}


class User(db.Model):
    """
    A member of a company. Users form a reporting tree through manager_id;
    managers and admins act on the commissions of the people below them.
    """
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256))
    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    role = db.Column(db.String(32), nullable=False, default='sales_rep')
    sub_role = db.Column(db.String(64))
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_manager = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False, index=True)
    manager_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    manager = db.relationship('User', remote_side=[id], backref=db.backref('reports', lazy='dynamic'))

    def __repr__(self):
        return f'<User {self.id}: {self.email}>'

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    @property
    def can_manage_team(self):
        return bool(self.is_admin or self.is_manager or self.role == 'manager')

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role,
            'sub_role': self.sub_role,
            'is_admin': self.is_admin,
            'is_manager': self.is_manager,
            'is_active': self.is_active,
            'company_id': self.company_id,
            'manager_id': self.manager_id,
        }


class Target(db.Model):
    """
    A quota for a user (or for every user holding `role` when user_id is null)
    over a period. Annual targets may own quarterly/monthly children through
    parent_target_id.
    """
    __tablename__ = 'target'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128))
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True, index=True)
    role = db.Column(db.String(32), nullable=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False, index=True)
    period_type = db.Column(db.String(16), nullable=False, default='quarterly')
    period_start = db.Column(db.Date, nullable=False, index=True)
    period_end = db.Column(db.Date, nullable=False, index=True)
    quota_amount = db.Column(MONEY, nullable=False)
    commission_rate = db.Column(RATE, nullable=False)
    commission_payment_schedule = db.Column(db.String(16), nullable=False, default='monthly')
    currency = db.Column(db.String(3), default='GBP')
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    parent_target_id = db.Column(db.Integer, db.ForeignKey('target.id'), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', foreign_keys=[user_id])
    parent = db.relationship('Target', remote_side=[id], backref=db.backref('children', lazy='dynamic'))

    def __repr__(self):
        return f'<Target {self.id}: {self.name}>'

    def contains(self, on_date):
        return self.period_start <= on_date <= self.period_end

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'user_id': self.user_id,
            'role': self.role,
            'company_id': self.company_id,
            'period_type': self.period_type,
            'period_start': _day(self.period_start),
            'period_end': _day(self.period_end),
            'quota_amount': _money(self.quota_amount),
            'commission_rate': _money(self.commission_rate),
            'commission_payment_schedule': self.commission_payment_schedule,
            'currency': self.currency,
            'is_active': self.is_active,
            'parent_target_id': self.parent_target_id,
        }


class Deal(db.Model):
    __tablename__ = 'deal'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False, index=True)
    deal_name = db.Column(db.String(255), nullable=False)
    account_name = db.Column(db.String(255))
    amount = db.Column(MONEY, nullable=False, default=Decimal('0'))
    close_date = db.Column(db.Date, nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, default='open', index=True)
    stage = db.Column(db.String(64))
    category = db.Column(db.String(32))
    crm_id = db.Column(db.String(64))
    crm_type = db.Column(db.String(32), nullable=False, default='manual')

    # Per-deal commission snapshot, refreshed by the engine
    commission_rate = db.Column(RATE)
    commission_amount = db.Column(MONEY)
    commission_calculated_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', backref=db.backref('deals', lazy='dynamic'))

    __table_args__ = (db.UniqueConstraint('crm_id', 'company_id', name='_deal_crm_company_uc'),)

    def __repr__(self):
        return f'<Deal {self.id}: {self.deal_name}>'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'company_id': self.company_id,
            'deal_name': self.deal_name,
            'account_name': self.account_name,
            'amount': _money(self.amount),
            'close_date': _day(self.close_date),
            'status': self.status,
            'stage': self.stage,
            'category': self.category,
            'crm_id': self.crm_id,
            'crm_type': self.crm_type,
            'commission_rate': _money(self.commission_rate),
            'commission_amount': _money(self.commission_amount),
            'commission_calculated_at': self.commission_calculated_at.isoformat() if self.commission_calculated_at else None,
        }


class Commission(db.Model):
    """
    The commission owed for one closed deal. Snapshots the numbers used at
    calculation time and carries the approval workflow status.
    """
    __tablename__ = 'commission'
    id = db.Column(db.Integer, primary_key=True)
    deal_id = db.Column(db.Integer, db.ForeignKey('deal.id', ondelete='SET NULL'), unique=True, nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False, index=True)
    target_id = db.Column(db.Integer, db.ForeignKey('target.id'), nullable=True)
    target_name = db.Column(db.String(128))

    deal_amount = db.Column(MONEY, nullable=False)
    commission_rate = db.Column(RATE, nullable=False)
    commission_amount = db.Column(MONEY, nullable=False)
    period_start = db.Column(db.Date)
    period_end = db.Column(db.Date)

    status = db.Column(db.String(32), nullable=False, default='calculated', index=True)
    calculated_at = db.Column(db.DateTime, default=datetime.utcnow)
    calculated_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    reviewed_at = db.Column(db.DateTime)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    approved_at = db.Column(db.DateTime)
    approved_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    paid_at = db.Column(db.DateTime)
    payment_reference = db.Column(db.String(128))
    rejection_reason = db.Column(db.Text)

    original_amount = db.Column(MONEY)
    adjustment_reason = db.Column(db.String(512))
    adjusted_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    adjusted_at = db.Column(db.DateTime)

    notes = db.Column(db.Text)

    deal = db.relationship('Deal', backref=db.backref('commission', uselist=False))
    user = db.relationship('User', foreign_keys=[user_id])
    target = db.relationship('Target')
    approvals = db.relationship('CommissionApproval', backref='commission', lazy='dynamic',
                                order_by='CommissionApproval.id', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Commission {self.id}: deal={self.deal_id} {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'deal_id': self.deal_id,
            'user_id': self.user_id,
            'company_id': self.company_id,
            'target_id': self.target_id,
            'target_name': self.target_name,
            'deal_amount': _money(self.deal_amount),
            'commission_rate': _money(self.commission_rate),
            'commission_amount': _money(self.commission_amount),
            'original_amount': _money(self.original_amount),
            'period_start': _day(self.period_start),
            'period_end': _day(self.period_end),
            'status': self.status,
            'calculated_at': self.calculated_at.isoformat() if self.calculated_at else None,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'approved_at': self.approved_at.isoformat() if self.approved_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'payment_reference': self.payment_reference,
            'rejection_reason': self.rejection_reason,
            'adjustment_reason': self.adjustment_reason,
        }


class CommissionApproval(db.Model):
    """Append-only audit row, one per commission status transition."""
    __tablename__ = 'commission_approval'
    id = db.Column(db.Integer, primary_key=True)
    commission_id = db.Column(db.Integer, db.ForeignKey('commission.id'), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    performed_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    performed_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    previous_status = db.Column(db.String(32))
    new_status = db.Column(db.String(32))
    notes = db.Column(db.Text)
    metadata_json = db.Column(db.Text)

    performed_by_user = db.relationship('User')

    def __repr__(self):
        return f'<CommissionApproval {self.id}: {self.action} {self.previous_status}->{self.new_status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'commission_id': self.commission_id,
            'action': self.action,
            'performed_by': self.performed_by,
            'performed_at': self.performed_at.isoformat() if self.performed_at else None,
            'previous_status': self.previous_status,
            'new_status': self.new_status,
            'notes': self.notes,
            'metadata': json.loads(self.metadata_json) if self.metadata_json else None,
        }


class PeriodCommission(db.Model):
    """
    Aggregate commission for a user over one payment period. There is one
    'actual' row built from closed deals and one 'projected' row built from
    weighted open deals.
    """
    __tablename__ = 'period_commission'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False)
    target_id = db.Column(db.Integer, db.ForeignKey('target.id'), nullable=True)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    commission_type = db.Column(db.String(16), nullable=False)
    quota_amount = db.Column(MONEY)
    actual_amount = db.Column(MONEY, default=Decimal('0'))
    commission_earned = db.Column(MONEY, default=Decimal('0'))
    attainment_pct = db.Column(db.Numeric(8, 2), default=Decimal('0'))
    commission_rate = db.Column(RATE)
    status = db.Column(db.String(32), nullable=False, default='calculated')
    calculation_trigger = db.Column(db.String(32))
    last_calculated_at = db.Column(db.DateTime, default=datetime.utcnow)
    breakdown_json = db.Column(db.Text)

    details = db.relationship('CommissionDetail', backref='period_commission', lazy='dynamic',
                              cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('user_id', 'period_start', 'period_end', 'commission_type',
                                          name='_user_period_type_uc'),)

    def __repr__(self):
        return f'<PeriodCommission {self.user_id} {self.period_start}..{self.period_end} {self.commission_type}>'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'target_id': self.target_id,
            'period_start': _day(self.period_start),
            'period_end': _day(self.period_end),
            'commission_type': self.commission_type,
            'quota_amount': _money(self.quota_amount),
            'actual_amount': _money(self.actual_amount),
            'commission_earned': _money(self.commission_earned),
            'attainment_pct': _money(self.attainment_pct),
            'commission_rate': _money(self.commission_rate),
            'status': self.status,
            'calculation_trigger': self.calculation_trigger,
            'breakdown': json.loads(self.breakdown_json) if self.breakdown_json else None,
        }


class CommissionDetail(db.Model):
    __tablename__ = 'commission_detail'
    id = db.Column(db.Integer, primary_key=True)
    commission_id = db.Column(db.Integer, db.ForeignKey('period_commission.id'), nullable=False, index=True)
    deal_id = db.Column(db.Integer, db.ForeignKey('deal.id', ondelete='CASCADE'), nullable=False)
    commission_amount = db.Column(MONEY, nullable=False)


class WebhookEvent(db.Model):
    """Processed CRM webhook event ids, kept until expires_at to drop replays."""
    __tablename__ = 'webhook_event'
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    processed_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)


class AppSetting(db.Model):
    """
    Stores key-value pairs for the business rules used by the commission
    engine, editable at runtime through the settings API.
    """
    __tablename__ = 'app_setting'
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(128), unique=True, nullable=False, index=True)
    value = db.Column(db.String(512), nullable=False)
    description = db.Column(db.String(512))
    value_type = db.Column(db.String(32), default='string')  # 'float', 'int', 'string', 'json'

    def __repr__(self):
        return f'<AppSetting {self.key}: {self.value}>'

    def get_value(self):
        """Casts the string value to its correct Python type."""
        if self.value_type == 'float':
            return float(self.value)
        if self.value_type == 'int':
            return int(self.value)
        if self.value_type == 'json':
            return json.loads(self.value)
        return self.value

    def to_dict(self):
        return {'key': self.key, 'value': self.get_value(), 'description': self.description,
                'value_type': self.value_type}
