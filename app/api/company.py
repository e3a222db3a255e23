# ==============================================================================
# app/api/company.py
# ------------------------------------------------------------------------------
# The caller's company, including the HubSpot portal its webhooks come from.
# ==============================================================================

from flask import current_app, g

from app import db
from app.api import bp
from app.api.forms import CompanyForm
from app.api.utils import get_payload, success, validate_form
from app.errors import ConflictError
from app.models import Company
from app.security import admin_required, token_required


@bp.route('/company', methods=['GET'])
@token_required
def get_company():
    return success(g.current_user.company.to_dict())


@bp.route('/company', methods=['PUT'])
@admin_required
def edit_company():
    company = g.current_user.company
    data = validate_form(CompanyForm.from_json(get_payload(), partial=True))

    for field in ('domain', 'hubspot_portal_id'):
        if field not in data:
            continue
        value = (data[field] or '').strip() or None
        if value is not None:
            clash = Company.query.filter(getattr(Company, field) == value, Company.id != company.id).first()
            if clash is not None:
                raise ConflictError(f"Another company already uses this {field.replace('_', ' ')}")
        setattr(company, field, value)
    if 'name' in data:
        company.name = data['name'].strip()
    db.session.commit()

    current_app.logger.info(f"Company {company.id} updated by {g.current_user.email}")
    return success(company.to_dict())
