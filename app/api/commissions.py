# ==============================================================================
# app/api/commissions.py
# ------------------------------------------------------------------------------
# Commission review, approval workflow, summaries and payroll export.
# ==============================================================================

from datetime import datetime

from flask import Response, current_app, g, request

from app import db
from app.api import bp
from app.api.forms import BulkActionForm, CommissionActionForm, ExportForm
from app.api.utils import date_arg, get_payload, paginate, success, validate_form
from app.calculator.engine import get_commission_summary
from app.calculator.exporter import export_commissions_csv
from app.calculator.money import round_money, sum_money, to_decimal
from app.calculator.workflow import (allowed_actions, bulk_action, commission_history, process_approval,
                                     recalculate_commission)
from app.errors import NotFoundError, ValidationError
from app.models import COMMISSION_STATUSES, Commission, PeriodCommission
from app.security import manager_required, team_member_ids, token_required

DEFAULT_LIST_STATUSES = ('calculated', 'pending_review')

# --- Helper Functions ---

def _visible_commission(commission_id):
    commission = db.session.get(Commission, commission_id)
    if commission is None or commission.user_id not in team_member_ids(g.current_user):
        raise NotFoundError('Commission')
    return commission


def _status_filter():
    raw = request.args.get('status')
    if not raw:
        return DEFAULT_LIST_STATUSES
    if raw == 'all':
        return COMMISSION_STATUSES
    statuses = tuple(s.strip() for s in raw.split(',') if s.strip())
    unknown = [s for s in statuses if s not in COMMISSION_STATUSES]
    if unknown:
        raise ValidationError(f"Unknown status: {', '.join(unknown)}")
    return statuses


def _commission_payload(commission):
    payload = commission.to_dict()
    if commission.deal is not None:
        payload['deal_name'] = commission.deal.deal_name
        payload['account_name'] = commission.deal.account_name
    if commission.user is not None:
        payload['user_name'] = commission.user.full_name
    return payload


def _requested_user_id(visible):
    user_id = request.args.get('user_id', type=int)
    if user_id is not None and user_id not in visible:
        raise NotFoundError('User')
    return user_id

# --- Routes ---

@bp.route('/commissions', methods=['GET'])
@token_required
def list_commissions():
    visible = team_member_ids(g.current_user)
    base = Commission.query.filter(Commission.user_id.in_(visible))

    user_id = _requested_user_id(visible)
    if user_id is not None:
        base = base.filter(Commission.user_id == user_id)
    period_start, period_end = date_arg('period_start'), date_arg('period_end')
    if period_start:
        base = base.filter(Commission.period_end >= period_start)
    if period_end:
        base = base.filter(Commission.period_start <= period_end)
    min_amount = request.args.get('min_amount')
    max_amount = request.args.get('max_amount')
    try:
        if min_amount:
            base = base.filter(Commission.commission_amount >= to_decimal(min_amount))
        if max_amount:
            base = base.filter(Commission.commission_amount <= to_decimal(max_amount))
    except ValueError:
        raise ValidationError('min_amount and max_amount must be numbers')

    breakdown = {status: {'count': 0, 'amount': '0.00'} for status in COMMISSION_STATUSES}
    rows = (base.with_entities(Commission.status, db.func.count(Commission.id), db.func.sum(Commission.commission_amount))
            .group_by(Commission.status).all())
    for status, count, amount in rows:
        breakdown[status] = {'count': count, 'amount': str(round_money(amount))}

    query = base.filter(Commission.status.in_(_status_filter()))
    commissions, pagination = paginate(query.order_by(Commission.calculated_at.desc(), Commission.id.desc()))
    summary = {
        'total_amount': str(round_money(sum_money(c.commission_amount for c in commissions))),
        'status_breakdown': breakdown,
    }
    return success([_commission_payload(c) for c in commissions], pagination=pagination, summary=summary)


@bp.route('/commissions/<int:commission_id>', methods=['GET'])
@token_required
def get_commission(commission_id):
    commission = _visible_commission(commission_id)
    actions = allowed_actions(commission.status)
    payload = _commission_payload(commission)
    payload['history'] = [a.to_dict() for a in commission_history(commission)]
    payload['allowed_actions'] = list(actions) if g.current_user.can_manage_team else []
    payload['can_approve'] = g.current_user.can_manage_team and 'approve' in actions
    payload['can_pay'] = g.current_user.is_admin and 'pay' in actions
    return success(payload)


@bp.route('/commissions/<int:commission_id>/action', methods=['POST'])
@manager_required
def commission_action(commission_id):
    commission = _visible_commission(commission_id)
    data = validate_form(CommissionActionForm.from_json(get_payload()))
    process_approval(commission, data['action'], g.current_user,
                     notes=data['notes'] or None,
                     payment_reference=data['payment_reference'] or None,
                     adjustment_amount=data['adjustment_amount'],
                     adjustment_reason=data['adjustment_reason'] or None)
    current_app.logger.info(f"Commission {commission.id}: {data['action']} by {g.current_user.email}")
    return success(_commission_payload(commission))


@bp.route('/commissions/bulk-action', methods=['POST'])
@manager_required
def commission_bulk_action():
    payload = get_payload()
    data = validate_form(BulkActionForm.from_json(payload))
    ids = payload.get('commission_ids')
    if not isinstance(ids, list) or not ids:
        raise ValidationError('commission_ids must be a non-empty list')
    if not all(isinstance(i, int) and not isinstance(i, bool) for i in ids):
        raise ValidationError('commission_ids must contain integer ids')

    visible = team_member_ids(g.current_user)
    hidden = []
    for commission_id in ids:
        commission = db.session.get(Commission, commission_id)
        if commission is None or commission.user_id not in visible:
            hidden.append(commission_id)
    if hidden:
        raise ValidationError('Some commissions were not found', details={'missing_ids': hidden})

    results, errors = bulk_action(ids, data['action'], g.current_user, notes=data['notes'] or None)
    return success({'processed': results, 'errors': errors,
                    'processed_count': len(results), 'error_count': len(errors)})


@bp.route('/commissions/pending-count', methods=['GET'])
@token_required
def pending_count():
    visible = team_member_ids(g.current_user)
    count = Commission.query.filter(Commission.user_id.in_(visible),
                                    Commission.status.in_(DEFAULT_LIST_STATUSES)).count()
    return success({'count': count})


@bp.route('/commissions/<int:commission_id>/recalculate', methods=['POST'])
@manager_required
def recalculate(commission_id):
    commission = _visible_commission(commission_id)
    recalculate_commission(commission, g.current_user)
    return success(_commission_payload(commission))


@bp.route('/commissions/summary', methods=['GET'])
@token_required
def commission_summary():
    visible = team_member_ids(g.current_user)
    user_id = _requested_user_id(visible) or g.current_user.id
    period_start, period_end = date_arg('period_start'), date_arg('period_end')
    if period_start is None or period_end is None:
        raise ValidationError('period_start and period_end are required')
    if period_start > period_end:
        raise ValidationError('period_start must be on or before period_end')
    summary = get_commission_summary(user_id, period_start, period_end)
    summary.update({'user_id': user_id, 'period_start': period_start.isoformat(), 'period_end': period_end.isoformat()})
    return success(summary)


@bp.route('/commissions/periods', methods=['GET'])
@token_required
def commission_periods():
    visible = team_member_ids(g.current_user)
    user_id = _requested_user_id(visible) or g.current_user.id
    query = PeriodCommission.query.filter_by(user_id=user_id)
    if request.args.get('commission_type'):
        query = query.filter_by(commission_type=request.args['commission_type'])
    rows = query.order_by(PeriodCommission.period_start.desc(), PeriodCommission.commission_type).all()
    return success([r.to_dict() for r in rows])


@bp.route('/commissions/export', methods=['POST'])
@manager_required
def export_commissions():
    data = validate_form(ExportForm.from_json(get_payload()))
    visible = team_member_ids(g.current_user)

    query = Commission.query.filter(Commission.user_id.in_(visible))
    if data['status']:
        query = query.filter(Commission.status == data['status'])
    if data['user_id']:
        query = query.filter(Commission.user_id == data['user_id'])
    if data['period_start']:
        query = query.filter(Commission.period_end >= data['period_start'])
    if data['period_end']:
        query = query.filter(Commission.period_start <= data['period_end'])

    export_format = data['format'] or 'simple_csv'
    csv_text = export_commissions_csv(query.order_by(Commission.id).all(), export_format)
    filename = f"commissions-{export_format}-{datetime.utcnow():%Y%m%d%H%M%S}.csv"
    current_app.logger.info(f"Commission export ({export_format}) by {g.current_user.email}")
    return Response(csv_text, mimetype='text/csv',
                    headers={'Content-Disposition': f'attachment; filename={filename}'})
