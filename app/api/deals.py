# ==============================================================================
# app/api/deals.py
# ------------------------------------------------------------------------------
# Deal CRUD and spreadsheet import. Every write re-runs the commission engine
# for the affected deal and period.
# ==============================================================================

import os
from datetime import datetime

from flask import current_app, g, request
from werkzeug.utils import secure_filename

from app import db
from app.api import bp
from app.api.forms import DealForm
from app.api.utils import allowed_file, date_arg, get_payload, paginate, success, validate_form
from app.calculator.engine import (batch_recalculate, clear_deal_commission, deal_snapshot,
                                   handle_deal_change, recalculate_user_period)
from app.calculator.money import to_decimal
from app.calculator.validator import validate_import_file
from app.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.models import Deal, User
from app.security import team_member_ids, token_required

DEAL_FIELDS = ('deal_name', 'account_name', 'amount', 'close_date', 'status', 'stage', 'category', 'crm_id', 'crm_type')

# --- Helper Functions ---

def _visible_deal(deal_id):
    deal = db.session.get(Deal, deal_id)
    if deal is None or deal.user_id not in team_member_ids(g.current_user):
        raise NotFoundError('Deal')
    return deal


def _owner_id(requested_id):
    """The deal owner: the caller unless a manager assigns it to someone on their team."""
    if requested_id is None or requested_id == g.current_user.id:
        return g.current_user.id
    if requested_id not in team_member_ids(g.current_user):
        raise ForbiddenError('You cannot assign deals to this user')
    return requested_id


def _check_crm_id(crm_id, exclude_id=None):
    if not crm_id:
        return
    query = Deal.query.filter_by(crm_id=crm_id, company_id=g.current_user.company_id)
    if exclude_id is not None:
        query = query.filter(Deal.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"A deal with CRM id '{crm_id}' already exists")


def _clean(value):
    return value.strip() if isinstance(value, str) and value.strip() else None

# --- Routes ---

@bp.route('/deals', methods=['GET'])
@token_required
def list_deals():
    query = Deal.query.filter(Deal.user_id.in_(team_member_ids(g.current_user)))

    if request.args.get('status'):
        query = query.filter(Deal.status == request.args['status'])
    if request.args.get('category'):
        query = query.filter(Deal.category == request.args['category'])
    user_id = request.args.get('user_id', type=int)
    if user_id:
        query = query.filter(Deal.user_id == user_id)
    from_date, to_date = date_arg('from_date'), date_arg('to_date')
    if from_date:
        query = query.filter(Deal.close_date >= from_date)
    if to_date:
        query = query.filter(Deal.close_date <= to_date)

    deals, pagination = paginate(query.order_by(Deal.close_date.desc(), Deal.id.desc()))
    return success([d.to_dict() for d in deals], pagination=pagination)


@bp.route('/deals/<int:deal_id>', methods=['GET'])
@token_required
def get_deal(deal_id):
    deal = _visible_deal(deal_id)
    payload = deal.to_dict()
    payload['commission'] = deal.commission.to_dict() if deal.commission else None
    return success(payload)


@bp.route('/deals', methods=['POST'])
@token_required
def create_deal():
    data = validate_form(DealForm.from_json(get_payload()))
    crm_id = _clean(data['crm_id'])
    _check_crm_id(crm_id)

    deal = Deal(
        user_id=_owner_id(data['user_id']), company_id=g.current_user.company_id,
        deal_name=data['deal_name'].strip(), account_name=_clean(data['account_name']),
        amount=to_decimal(data['amount']), close_date=data['close_date'],
        status=data['status'] or 'open', stage=_clean(data['stage']), category=data['category'] or None,
        crm_id=crm_id, crm_type=data['crm_type'] or 'manual'
    )
    db.session.add(deal)
    handle_deal_change(deal, trigger='manual', performed_by=g.current_user.id)

    current_app.logger.info(f"Deal {deal.id} created by {g.current_user.email}")
    return success(deal.to_dict(), status=201)


@bp.route('/deals/<int:deal_id>', methods=['PUT'])
@token_required
def update_deal(deal_id):
    deal = _visible_deal(deal_id)
    data = validate_form(DealForm.from_json(get_payload(), partial=True))
    previous = deal_snapshot(deal)

    if 'crm_id' in data:
        _check_crm_id(_clean(data['crm_id']), exclude_id=deal.id)
    if 'user_id' in data:
        deal.user = db.session.get(User, _owner_id(data['user_id']))

    for field in DEAL_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == 'amount':
            value = to_decimal(value)
        elif field in ('deal_name', 'close_date', 'status', 'crm_type'):
            if not value:
                continue
        else:
            value = _clean(value) if isinstance(value, str) else value
        setattr(deal, field, value)
    deal.updated_at = datetime.utcnow()

    handle_deal_change(deal, previous=previous, trigger='manual', performed_by=g.current_user.id)
    current_app.logger.info(f"Deal {deal.id} updated by {g.current_user.email}")
    return success(deal.to_dict())


@bp.route('/deals/<int:deal_id>', methods=['DELETE'])
@token_required
def delete_deal(deal_id):
    deal = _visible_deal(deal_id)
    commission = deal.commission
    if commission is not None and commission.status in ('approved', 'paid'):
        raise ConflictError(f"Cannot delete a deal whose commission is {commission.status}")

    owner = deal.user
    close_date = deal.close_date
    try:
        clear_deal_commission(deal, g.current_user.id, reason='Deal deleted')
        db.session.delete(deal)
        db.session.flush()
        recalculate_user_period(owner, close_date, trigger='deal_deleted')
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(f"Deal {deal_id} deleted by {g.current_user.email}")
    return success({'id': deal_id})


@bp.route('/deals/import', methods=['POST'])
@token_required
def import_deals():
    """Creates or updates deals from an uploaded .xlsx/.csv file."""
    if 'file' not in request.files:
        raise ValidationError('No file part in the request')
    file = request.files['file']
    if file.filename == '':
        raise ValidationError('No file selected')
    if not allowed_file(file.filename):
        raise ValidationError('File type not allowed. Upload an .xlsx or .csv file.')

    filename = secure_filename(file.filename)
    os.makedirs(current_app.config['UPLOAD_FOLDER'], exist_ok=True)
    filepath = os.path.join(current_app.config['UPLOAD_FOLDER'], f"{g.current_user.id}-{filename}")
    file.save(filepath)
    try:
        df, errors = validate_import_file(filepath)
    finally:
        os.remove(filepath)
    if errors:
        raise ValidationError('The import file is invalid', details={'errors': errors})

    company_id = g.current_user.company_id
    visible = team_member_ids(g.current_user)
    owners = {u.email.lower(): u for u in User.query.filter_by(company_id=company_id).all()}

    created, updated, row_errors, touched = 0, 0, [], []
    try:
        for index, row in df.iterrows():
            owner = owners.get(str(row['owner_email']).strip().lower())
            if owner is None or owner.id not in visible:
                row_errors.append(f"Row {index + 2}: owner '{row['owner_email']}' is not on your team.")
                continue

            crm_id = row['crm_id']
            if isinstance(crm_id, float) and crm_id.is_integer():
                crm_id = int(crm_id)
            crm_id = _clean(str(crm_id)) if crm_id is not None else None

            deal = Deal.query.filter_by(crm_id=crm_id, company_id=company_id).first() if crm_id else None
            if deal is None:
                deal = Deal(company_id=company_id, crm_id=crm_id, crm_type='sheets')
                db.session.add(deal)
                created += 1
            else:
                updated += 1

            deal.user = owner
            deal.deal_name = str(row['deal_name']).strip()
            deal.account_name = _clean(row['account_name'])
            deal.amount = to_decimal(row['amount'])
            deal.close_date = row['close_date']
            deal.status = row['status'] or deal.status or 'open'
            deal.stage = _clean(row['stage'])
            deal.category = row['category']
            touched.append(deal)

        db.session.flush()
        groups = batch_recalculate(touched, trigger='import', performed_by=g.current_user.id, commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(f"Import by {g.current_user.email}: {created} created, {updated} updated, {len(row_errors)} skipped")
    return success({'created': created, 'updated': updated, 'skipped': len(row_errors),
                    'errors': row_errors, 'periods_recalculated': groups})
