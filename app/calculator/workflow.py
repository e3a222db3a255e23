# ==============================================================================
# app/calculator/workflow.py
# ------------------------------------------------------------------------------
# The commission approval state machine and its audit trail.
# ==============================================================================

import logging
from datetime import datetime

from app import db
from app.errors import ForbiddenError, ValidationError, WorkflowError
from app.models import Commission, CommissionApproval
from app.calculator.engine import DEAL_TARGET_PERIOD, find_active_target, record_approval
from app.calculator.money import calculate_commission, round_money, to_decimal

VALID_TRANSITIONS = {
    'calculated': ('review', 'approve', 'reject', 'adjust_and_approve'),
    'pending_review': ('approve', 'reject', 'request_change', 'adjust_and_approve'),
    'approved': ('pay', 'reject'),
    'rejected': ('review',),
    'paid': (),
}

ACTION_RESULTS = {
    'review': 'pending_review',
    'approve': 'approved',
    'reject': 'rejected',
    'request_change': 'calculated',
    'pay': 'paid',
    'adjust_and_approve': 'approved',
}

BULK_ACTIONS = ('approve', 'reject')
BULK_ELIGIBLE_STATUSES = ('calculated', 'pending_review')

ADJUSTMENT_REASON_MIN = 10
ADJUSTMENT_REASON_MAX = 500


def allowed_actions(status):
    return VALID_TRANSITIONS.get(status, ())


def can_transition(status, action):
    return action in allowed_actions(status)


def _check_action(commission, action, user, payment_reference, adjustment_amount, adjustment_reason):
    if action not in ACTION_RESULTS:
        raise ValidationError(f"Unknown action '{action}'")
    if not can_transition(commission.status, action):
        raise WorkflowError(f"Cannot {action} commission in {commission.status} status",
                            details={'current_status': commission.status,
                                     'allowed_actions': list(allowed_actions(commission.status))})
    if action == 'pay':
        if not user.is_admin:
            raise ForbiddenError('Only administrators can mark commissions as paid')
        if not payment_reference:
            raise ValidationError('A payment reference is required to mark a commission as paid')
    if action == 'adjust_and_approve':
        if adjustment_amount is None:
            raise ValidationError('An adjustment amount is required')
        try:
            amount = to_decimal(adjustment_amount)
        except ValueError:
            raise ValidationError('Adjustment amount must be a number')
        if amount < 0:
            raise ValidationError('Adjustment amount cannot be negative')
        reason = (adjustment_reason or '').strip()
        if not ADJUSTMENT_REASON_MIN <= len(reason) <= ADJUSTMENT_REASON_MAX:
            raise ValidationError(f'Adjustment reason must be between {ADJUSTMENT_REASON_MIN} '
                                  f'and {ADJUSTMENT_REASON_MAX} characters')


def _apply_action(commission, action, user, notes=None, payment_reference=None,
                  adjustment_amount=None, adjustment_reason=None):
    """Mutates the commission for one allowed action and appends its audit row."""
    now = datetime.utcnow()
    previous_status = commission.status
    new_status = ACTION_RESULTS[action]
    metadata = None

    if action == 'review':
        commission.reviewed_at = now
        commission.reviewed_by = user.id
    elif action == 'approve':
        commission.approved_at = now
        commission.approved_by = user.id
    elif action == 'reject':
        commission.rejection_reason = notes
    elif action == 'request_change':
        commission.reviewed_at = now
        commission.reviewed_by = user.id
    elif action == 'pay':
        commission.paid_at = now
        commission.payment_reference = payment_reference
        metadata = {'payment_reference': payment_reference}
    elif action == 'adjust_and_approve':
        new_amount = round_money(adjustment_amount)
        if commission.original_amount is None:
            commission.original_amount = commission.commission_amount
        metadata = {'old_amount': commission.commission_amount, 'new_amount': new_amount}
        commission.commission_amount = new_amount
        commission.adjustment_reason = adjustment_reason.strip()
        commission.adjusted_by = user.id
        commission.adjusted_at = now
        commission.approved_at = now
        commission.approved_by = user.id

    commission.status = new_status
    record_approval(commission, action, user.id, previous_status, new_status,
                    notes=notes or adjustment_reason, metadata=metadata)
    logging.info(f"Commission {commission.id}: {action} by user {user.id} ({previous_status} -> {new_status})")
    return commission


def process_approval(commission, action, user, notes=None, payment_reference=None,
                     adjustment_amount=None, adjustment_reason=None, commit=True):
    """
    Applies one workflow action to a commission.

    Raises:
        WorkflowError: The action is not allowed from the current status.
        ValidationError: Missing payment reference or a bad adjustment.
        ForbiddenError: A non-admin tried to pay.
    """
    _check_action(commission, action, user, payment_reference, adjustment_amount, adjustment_reason)
    try:
        _apply_action(commission, action, user, notes, payment_reference, adjustment_amount, adjustment_reason)
        if commit:
            db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return commission


def bulk_action(commission_ids, action, user, notes=None):
    """
    Approves or rejects several commissions at once. Every id is checked
    before anything is written; one bad id fails the whole request.

    Returns:
        tuple: (results, errors) where results lists {'id', 'status'} dicts.
    """
    if action not in BULK_ACTIONS:
        raise ValidationError(f"Bulk action must be one of: {', '.join(BULK_ACTIONS)}")
    ids = list(dict.fromkeys(int(i) for i in commission_ids))
    if not ids:
        raise ValidationError('No commission ids given')

    commissions = Commission.query.filter(Commission.id.in_(ids),
                                          Commission.company_id == user.company_id).all()
    found = {c.id: c for c in commissions}
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValidationError('Some commissions were not found', details={'missing_ids': missing})
    ineligible = [i for i in ids if found[i].status not in BULK_ELIGIBLE_STATUSES]
    if ineligible:
        raise ValidationError('Some commissions cannot be processed in their current status',
                              details={'invalid_ids': ineligible})

    results, errors = [], []
    try:
        for commission_id in ids:
            commission = found[commission_id]
            try:
                _check_action(commission, action, user, None, None, None)
                _apply_action(commission, action, user, notes)
                results.append({'id': commission.id, 'status': commission.status})
            except (WorkflowError, ValidationError, ForbiddenError) as e:
                errors.append({'id': commission.id, 'error': e.message})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logging.info(f"Bulk {action} by user {user.id}: {len(results)} processed, {len(errors)} failed")
    return results, errors


def recalculate_commission(commission, user):
    """
    Recomputes a commission from its deal's current target and puts it back
    to 'calculated'. Paid commissions are final.
    """
    if commission.status == 'paid':
        raise WorkflowError('Cannot recalculate a paid commission')
    deal = commission.deal
    if deal is None:
        raise ValidationError('Commission has no deal to recalculate from')

    target = find_active_target(deal.user, deal.close_date, preferred_period_type=DEAL_TARGET_PERIOD)
    if target is None:
        raise ValidationError('No active target covers the deal close date')

    previous_status = commission.status
    old_amount = commission.commission_amount
    try:
        now = datetime.utcnow()
        rate = to_decimal(target.commission_rate)
        new_amount = calculate_commission(deal.amount, rate)
        deal.commission_rate = rate
        deal.commission_amount = new_amount
        deal.commission_calculated_at = now

        commission.commission_rate = rate
        commission.commission_amount = new_amount
        commission.deal_amount = to_decimal(deal.amount)
        commission.target_id = target.id
        commission.target_name = target.name
        commission.period_start = target.period_start
        commission.period_end = target.period_end
        commission.status = 'calculated'
        commission.calculated_at = now
        commission.calculated_by = user.id
        record_approval(commission, 'recalculate', user.id, previous_status, 'calculated',
                        notes='Manual recalculation',
                        metadata={'old_amount': old_amount, 'new_amount': new_amount})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logging.info(f"Commission {commission.id} recalculated by user {user.id}: {old_amount} -> {new_amount}")
    return commission


def commission_history(commission):
    return (CommissionApproval.query.filter_by(commission_id=commission.id)
            .order_by(CommissionApproval.performed_at, CommissionApproval.id).all())
