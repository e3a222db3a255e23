# ==============================================================================
# app/api/settings.py
# ------------------------------------------------------------------------------
# Read and edit the engine's business-rule settings.
# ==============================================================================

import json

from flask import current_app, g

from app import db
from app.api import bp
from app.api.forms import AppSettingForm
from app.api.utils import get_payload, success, validate_form
from app.calculator.engine import CalculationConfig
from app.errors import NotFoundError, ValidationError
from app.models import PERIOD_TYPES, AppSetting
from app.security import admin_required, token_required


def _is_weight(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 1


def _check_shape(key, value):
    """Raises ValidationError when a parsed engine setting has the wrong structure."""
    if key == 'CATEGORY_WEIGHTS':
        if not isinstance(value, dict) or not value:
            raise ValidationError("CATEGORY_WEIGHTS must be an object of category -> weight")
        bad = [k for k, v in value.items() if not _is_weight(v)]
        if bad:
            raise ValidationError("Category weights must be numbers between 0 and 1", details={'categories': bad})
    elif key == 'DEFAULT_CATEGORY_WEIGHT':
        if not _is_weight(value):
            raise ValidationError("DEFAULT_CATEGORY_WEIGHT must be between 0 and 1")
    elif key == 'CLOSED_WON_STAGES':
        if not isinstance(value, list) or not value or not all(isinstance(s, str) and s.strip() for s in value):
            raise ValidationError("CLOSED_WON_STAGES must be a list of stage names")
    elif key == 'DEFAULT_PAYMENT_SCHEDULE':
        if value not in PERIOD_TYPES:
            raise ValidationError(f"DEFAULT_PAYMENT_SCHEDULE must be one of: {', '.join(PERIOD_TYPES)}")


@bp.route('/settings', methods=['GET'])
@token_required
def list_settings():
    settings = AppSetting.query.order_by(AppSetting.key).all()
    return success([s.to_dict() for s in settings])


@bp.route('/settings/<key>', methods=['PUT'])
@admin_required
def edit_setting(key):
    setting = AppSetting.query.filter_by(key=key).first()
    if setting is None:
        raise NotFoundError('Setting')

    payload = get_payload()
    value = payload.get('value')
    if value is not None and not isinstance(value, str):
        value = json.dumps(value)
    new_value = validate_form(AppSettingForm.from_json({'value': value}))['value'].strip()

    try:
        if setting.value_type == 'json':
            parsed = json.loads(new_value)
            new_value = json.dumps(parsed, ensure_ascii=False)
        elif setting.value_type == 'float':
            parsed = float(new_value)
        elif setting.value_type == 'int':
            parsed = int(new_value)
        else:
            parsed = new_value
    except ValueError:
        raise ValidationError(f"Value is not a valid {setting.value_type} for setting '{key}'")
    _check_shape(key, parsed)

    setting.value = new_value
    db.session.commit()
    CalculationConfig._instance = None

    current_app.logger.info(f"Setting {key} changed by {g.current_user.email}; config cache cleared")
    return success(setting.to_dict())
