# ==============================================================================
# app/calculator/engine.py
# ------------------------------------------------------------------------------
# Commission calculation: target lookup, per-deal commissions, and the
# per-period actual/projected aggregates.
# ==============================================================================

import json
import logging
from datetime import datetime

from app import db
from app.models import AppSetting, Commission, CommissionApproval, CommissionDetail, Deal, PeriodCommission, Target, User
from app.calculator.money import (ZERO, calculate_attainment, calculate_commission, round_money,
                                  sum_money, to_decimal)
from app.calculator.periods import generate_target_name, get_period_for_date, prorate_quota

# Preference when several active targets cover the same date
PERIOD_PREFERENCE = {'monthly': 0, 'quarterly': 1, 'annual': 2}

# Target type used whenever a deal change is recalculated (API, import, webhook, CLI)
DEAL_TARGET_PERIOD = 'quarterly'

# Commissions in these states are never rewritten by a recalculation
LOCKED_STATUSES = ('approved', 'paid')

# --- Configuration Loader Class ---

class CalculationConfig:
    """
    A singleton class to load and hold all business rules from the database.
    This ensures the database is queried only once per application lifecycle;
    set `CalculationConfig._instance = None` after editing a setting.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            logging.info("Creating and loading CalculationConfig instance...")
            cls._instance = super(CalculationConfig, cls).__new__(cls)
            try:
                cls._instance.load_settings()
                logging.info("CalculationConfig loaded successfully.")
            except Exception as e:
                cls._instance = None
                logging.error(f"FATAL: Could not load settings from database. Engine cannot run. Error: {e}", exc_info=True)
                raise
        return cls._instance

    def load_settings(self):
        """Loads all settings from the AppSetting table into attributes."""
        settings = AppSetting.query.all()
        settings_dict = {s.key: s.get_value() for s in settings}

        self.CATEGORY_WEIGHTS = settings_dict.get('CATEGORY_WEIGHTS', {'pipeline': 0.10, 'best_case': 0.25, 'commit': 0.75})
        self.DEFAULT_CATEGORY_WEIGHT = settings_dict.get('DEFAULT_CATEGORY_WEIGHT', 0.10)
        self.CLOSED_WON_STAGES = [s.lower() for s in settings_dict.get('CLOSED_WON_STAGES', ['closed won', 'closed_won', 'closedwon'])]
        self.DEFAULT_PAYMENT_SCHEDULE = settings_dict.get('DEFAULT_PAYMENT_SCHEDULE', 'monthly')

    def weight_for(self, category):
        return to_decimal(self.CATEGORY_WEIGHTS.get(category, self.DEFAULT_CATEGORY_WEIGHT))

# --- Helper Functions ---

def is_closed_won(deal):
    if deal.status == 'closed_won':
        return True
    stage = (deal.stage or '').strip().lower()
    return bool(stage) and stage in CalculationConfig().CLOSED_WON_STAGES


def is_open(deal):
    return deal.status == 'open' and not is_closed_won(deal)


def deal_snapshot(deal):
    """Captures the fields that drive commission so a later change can be diffed."""
    return {
        'user_id': deal.user_id,
        'status': deal.status,
        'stage': deal.stage,
        'amount': to_decimal(deal.amount),
        'close_date': deal.close_date,
        'category': deal.category,
        'closed_won': is_closed_won(deal),
    }


def _has_relevant_change(deal, previous):
    current = deal_snapshot(deal)
    return any(current[key] != previous.get(key) for key in ('user_id', 'status', 'stage', 'amount', 'close_date', 'category'))


def _schedule_for(target):
    return target.commission_payment_schedule or CalculationConfig().DEFAULT_PAYMENT_SCHEDULE


def _pick_target(candidates, preferred_period_type=None):
    # Newest first, then a stable sort by period granularity
    ordered = sorted(candidates, key=lambda t: (t.created_at or datetime.min, t.id), reverse=True)
    ordered.sort(key=lambda t: PERIOD_PREFERENCE.get(t.period_type, 99))
    if preferred_period_type:
        for target in ordered:
            if target.period_type == preferred_period_type:
                return target
    return ordered[0]


def record_approval(commission, action, performed_by, previous_status, new_status, notes=None, metadata=None):
    """Appends one audit row for a commission status transition."""
    approval = CommissionApproval(
        commission_id=commission.id, action=action, performed_by=performed_by,
        performed_at=datetime.utcnow(), previous_status=previous_status, new_status=new_status,
        notes=notes, metadata_json=json.dumps(metadata, default=str) if metadata else None
    )
    db.session.add(approval)
    return approval

# --- Target Lookup ---

def find_active_target(user, on_date, preferred_period_type=None):
    """
    Finds the active target covering `on_date` for a user. Monthly targets win
    over quarterly, quarterly over annual, newest first among equals, unless a
    preferred period type is available. Falls back to role targets.
    """
    if user is None or on_date is None:
        return None

    def _covering(query):
        return query.filter(Target.is_active.is_(True),
                            Target.period_start <= on_date,
                            Target.period_end >= on_date).all()

    candidates = _covering(Target.query.filter(Target.user_id == user.id))
    if not candidates:
        candidates = _covering(Target.query.filter(Target.user_id.is_(None),
                                                   Target.role == user.role,
                                                   Target.company_id == user.company_id))
    if not candidates:
        return None
    return _pick_target(candidates, preferred_period_type)

# --- Per-Deal Commission ---

def _clear_deal_snapshot(deal):
    deal.commission_rate = None
    deal.commission_amount = None
    deal.commission_calculated_at = None


def calculate_deal_commission(deal, performed_by=None, target=None, preferred_period_type=None):
    """
    Computes amount x rate for a closed-won deal and writes the per-deal
    Commission record (with its audit row).

    Returns:
        Commission or None: None when the deal is not closed-won or no active
        target covers its close date.
    """
    if not is_closed_won(deal):
        logging.info(f"Deal {deal.id} is not closed won (status: {deal.status}, stage: {deal.stage}), skipping commission calculation")
        return None

    if target is None:
        target = find_active_target(deal.user, deal.close_date, preferred_period_type)
    if target is None:
        logging.warning(f"No active target found for deal {deal.id} '{deal.deal_name}' (close date: {deal.close_date})")
        _clear_deal_snapshot(deal)
        return None

    now = datetime.utcnow()
    actor = performed_by or deal.user_id
    rate = to_decimal(target.commission_rate)
    amount = calculate_commission(deal.amount, rate)
    logging.info(f"Calculating commission for deal {deal.deal_name}: {deal.amount} x {rate} = {amount}")

    deal.commission_rate = rate
    deal.commission_amount = amount
    deal.commission_calculated_at = now

    target_name = target.name or generate_target_name(target.user, target.period_type, target.period_start,
                                                      target.period_end, role=target.role)
    notes = json.dumps({'target_id': target.id, 'period_type': target.period_type,
                        'calculated_at': now.isoformat()})

    commission = deal.commission
    if commission is None:
        commission = Commission(
            deal=deal, user_id=deal.user_id, company_id=deal.company_id,
            target_id=target.id, target_name=target_name,
            deal_amount=to_decimal(deal.amount), commission_rate=rate, commission_amount=amount,
            period_start=target.period_start, period_end=target.period_end,
            status='calculated', calculated_at=now, calculated_by=actor, notes=notes
        )
        db.session.add(commission)
        db.session.flush()
        record_approval(commission, 'calculated', actor, 'new', 'calculated',
                        metadata={'target_id': target.id, 'commission_rate': rate, 'commission_amount': amount})
        return commission

    if commission.status in LOCKED_STATUSES:
        logging.warning(f"Commission {commission.id} for deal {deal.id} is {commission.status}; leaving it untouched")
        return commission

    unchanged = (commission.status == 'calculated'
                 and commission.user_id == deal.user_id
                 and commission.target_id == target.id
                 and to_decimal(commission.commission_amount) == amount
                 and to_decimal(commission.deal_amount) == to_decimal(deal.amount))
    if unchanged:
        return commission

    previous_status = commission.status
    old_amount = commission.commission_amount
    commission.user_id = deal.user_id
    commission.company_id = deal.company_id
    commission.target_id = target.id
    commission.target_name = target_name
    commission.deal_amount = to_decimal(deal.amount)
    commission.commission_rate = rate
    commission.commission_amount = amount
    commission.period_start = target.period_start
    commission.period_end = target.period_end
    commission.status = 'calculated'
    commission.rejection_reason = None
    commission.calculated_at = now
    commission.calculated_by = actor
    commission.notes = notes
    record_approval(commission, 'recalculate', actor, previous_status, 'calculated',
                    notes='Deal changed', metadata={'old_amount': old_amount, 'new_amount': amount})
    return commission


def clear_deal_commission(deal, performed_by=None, reason='Deal is no longer closed won'):
    """Clears a deal's commission snapshot and rejects its unapproved Commission."""
    _clear_deal_snapshot(deal)
    commission = deal.commission
    if commission is None:
        return None
    if commission.status in ('calculated', 'pending_review'):
        previous_status = commission.status
        commission.status = 'rejected'
        commission.rejection_reason = reason
        record_approval(commission, 'reject', performed_by or deal.user_id, previous_status, 'rejected', notes=reason)
        logging.info(f"Commission {commission.id} rejected: {reason}")
    elif commission.status != 'rejected':
        logging.warning(f"Deal {deal.id} left closed won but commission {commission.id} is already {commission.status}")
    return commission

# --- Period Aggregates ---

def _upsert_period_row(user_id, period, target, commission_type):
    start, end = period
    row = PeriodCommission.query.filter_by(user_id=user_id, period_start=start, period_end=end,
                                           commission_type=commission_type).first()
    if row is None:
        row = PeriodCommission(user_id=user_id, company_id=target.company_id, period_start=start,
                               period_end=end, commission_type=commission_type, status='calculated')
        db.session.add(row)
    row.target_id = target.id
    row.commission_rate = to_decimal(target.commission_rate)
    row.quota_amount = round_money(prorate_quota(target.quota_amount, target.period_type, _schedule_for(target)))
    row.last_calculated_at = datetime.utcnow()
    return row


def _deals_in_period(user_id, period):
    start, end = period
    return Deal.query.filter(Deal.user_id == user_id,
                             Deal.close_date >= start,
                             Deal.close_date <= end).order_by(Deal.close_date, Deal.id).all()


def update_actual_commissions(user_id, period, target, trigger='manual'):
    """Rebuilds the 'actual' aggregate and its per-deal detail rows for one period."""
    start, end = period
    logging.info(f"Updating actual commissions for user {user_id} in period {start} to {end}")

    closed_deals = [d for d in _deals_in_period(user_id, period) if is_closed_won(d)]
    rate = to_decimal(target.commission_rate)
    total_amount = sum_money(d.amount for d in closed_deals)

    row = _upsert_period_row(user_id, period, target, 'actual')
    row.actual_amount = total_amount
    row.commission_earned = calculate_commission(total_amount, rate)
    row.attainment_pct = calculate_attainment(total_amount, row.quota_amount)
    row.calculation_trigger = trigger
    db.session.flush()

    CommissionDetail.query.filter_by(commission_id=row.id).delete()
    for deal in closed_deals:
        db.session.add(CommissionDetail(commission_id=row.id, deal_id=deal.id,
                                        commission_amount=calculate_commission(deal.amount, rate)))

    logging.info(f"Actual commission updated: {row.commission_earned} ({row.attainment_pct}% attainment)")
    return row


def update_projected_commissions(user_id, period, target, trigger='manual'):
    """Rebuilds the 'projected' aggregate from open deals weighted by category."""
    start, end = period
    logging.info(f"Updating projected commissions for user {user_id} in period {start} to {end}")
    config = CalculationConfig()

    open_deals = [d for d in _deals_in_period(user_id, period) if is_open(d)]
    by_category = {category: ZERO for category in config.CATEGORY_WEIGHTS}
    weighted_amount = ZERO
    for deal in open_deals:
        bucket = deal.category or 'pipeline'
        amount = to_decimal(deal.amount)
        by_category[bucket] = by_category.get(bucket, ZERO) + amount
        weighted_amount += amount * config.weight_for(deal.category)
    weighted_amount = round_money(weighted_amount)

    actual = PeriodCommission.query.filter_by(user_id=user_id, period_start=start, period_end=end,
                                              commission_type='actual').first()
    actual_amount = to_decimal(actual.actual_amount) if actual else ZERO

    row = _upsert_period_row(user_id, period, target, 'projected')
    row.actual_amount = weighted_amount
    row.commission_earned = calculate_commission(weighted_amount, target.commission_rate)
    row.attainment_pct = calculate_attainment(actual_amount + weighted_amount, row.quota_amount)
    row.calculation_trigger = trigger
    row.breakdown_json = json.dumps({
        'breakdown': {k: str(v) for k, v in by_category.items()},
        'deal_count': len(open_deals),
        'weights_used': config.CATEGORY_WEIGHTS,
    })
    db.session.flush()

    logging.info(f"Projected commission updated: {row.commission_earned} (weighted from {len(open_deals)} open deals)")
    return row


def recalculate_period(user_id, period, target, trigger='manual'):
    actual = update_actual_commissions(user_id, period, target, trigger)
    projected = update_projected_commissions(user_id, period, target, trigger)
    return actual, projected


def recalculate_user_period(user, on_date, trigger='manual'):
    """Refreshes the aggregates of the payment period containing `on_date`, if a target covers it."""
    target = find_active_target(user, on_date, preferred_period_type=DEAL_TARGET_PERIOD)
    if target is None:
        return None
    period = get_period_for_date(on_date, _schedule_for(target))
    return recalculate_period(user.id, period, target, trigger)

# --- Orchestrators ---

def handle_deal_change(deal, previous=None, trigger='manual', performed_by=None, commit=True):
    """
    Re-derives everything that depends on a deal after it was created or
    changed: the per-deal commission and the aggregates of its period (and
    of its old period, when the close date moved). All writes share one
    transaction.

    Args:
        deal (Deal): The deal in its new state (already added to the session).
        previous (dict): deal_snapshot() taken before the change, or None for a new deal.
        trigger (str): What caused the recalculation ('manual', 'webhook', 'import', ...).
        performed_by (int): Acting user id for audit rows.
        commit (bool): Commit the session when done.

    Returns:
        Commission or None
    """
    try:
        # Flush so relationship assignments (deal.user = ...) reach the foreign keys
        db.session.flush()
        if previous is not None and not _has_relevant_change(deal, previous):
            logging.info(f"No relevant changes on deal {deal.id}, skipping commission calculation")
            return deal.commission

        logging.info(f"Commission calculator: processing deal {deal.id} ({trigger})")
        target = find_active_target(deal.user, deal.close_date, preferred_period_type=DEAL_TARGET_PERIOD)

        commission = None
        if is_closed_won(deal):
            commission = calculate_deal_commission(deal, performed_by, target=target)
        elif deal.commission is not None or deal.commission_amount is not None:
            clear_deal_commission(deal, performed_by)

        if target is None:
            logging.warning(f"No active target found for user {deal.user_id} at {deal.close_date}")
        else:
            schedule = _schedule_for(target)
            period = get_period_for_date(deal.close_date, schedule)
            recalculate_period(deal.user_id, period, target, trigger)

            if previous is not None and previous.get('close_date') and previous['close_date'] != deal.close_date:
                old_period = get_period_for_date(previous['close_date'], schedule)
                if old_period != period:
                    logging.info("Deal moved periods, recalculating old period")
                    old_target = find_active_target(deal.user, previous['close_date'], DEAL_TARGET_PERIOD) or target
                    recalculate_period(deal.user_id, get_period_for_date(previous['close_date'], _schedule_for(old_target)),
                                       old_target, trigger)

        previous_owner_id = previous.get('user_id') if previous is not None else None
        if previous_owner_id is not None and previous_owner_id != deal.user_id:
            logging.info(f"Deal {deal.id} reassigned from user {previous_owner_id}, recalculating their period")
            previous_owner = db.session.get(User, previous_owner_id)
            if previous_owner is not None:
                recalculate_user_period(previous_owner, previous.get('close_date') or deal.close_date, trigger)

        if commit:
            db.session.commit()
        return commission
    except Exception:
        db.session.rollback()
        raise


def batch_recalculate(deals, trigger='sync', performed_by=None, commit=True):
    """
    Recalculates a batch of deals, touching each (user, period) aggregate once.

    Returns:
        int: The number of user/period combinations recalculated.
    """
    logging.info(f"Batch recalculating commissions for {len(deals)} deals")
    try:
        groups = {}
        for deal in deals:
            target = find_active_target(deal.user, deal.close_date, preferred_period_type=DEAL_TARGET_PERIOD)
            if is_closed_won(deal):
                calculate_deal_commission(deal, performed_by, target=target)
            elif deal.commission is not None or deal.commission_amount is not None:
                clear_deal_commission(deal, performed_by)
            if target is None:
                continue
            period = get_period_for_date(deal.close_date, _schedule_for(target))
            groups.setdefault((deal.user_id, period), target)

        for (user_id, period), target in groups.items():
            recalculate_period(user_id, period, target, trigger)

        if commit:
            db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logging.info(f"Batch recalculation complete for {len(groups)} user/period combinations")
    return len(groups)


def recalculate_for_target(target, performed_by=None, commit=True):
    """
    Calculates commissions for closed-won deals in a target's period that do
    not have one yet. Used after a target is created or updated.

    Returns:
        int: The number of deals that were calculated.
    """
    if target is None or not target.is_active:
        return 0

    query = Deal.query.filter(Deal.company_id == target.company_id,
                              Deal.close_date >= target.period_start,
                              Deal.close_date <= target.period_end,
                              Deal.commission_amount.is_(None))
    if target.user_id is not None:
        query = query.filter(Deal.user_id == target.user_id)
    else:
        query = query.join(User, Deal.user_id == User.id).filter(User.role == target.role)

    deals = [d for d in query.all() if is_closed_won(d)]
    logging.info(f"Found {len(deals)} deals to calculate commission for target {target.id}")
    batch_recalculate(deals, trigger='target_change', performed_by=performed_by, commit=commit)
    return len(deals)


def get_commission_summary(user_id, period_start, period_end):
    """Totals of closed-won deals and their commission for a user over a date range."""
    deals = Deal.query.filter(Deal.user_id == user_id,
                              Deal.close_date >= period_start,
                              Deal.close_date <= period_end).all()
    closed = [d for d in deals if is_closed_won(d)]
    total_sales = sum_money(d.amount for d in closed)

    summary = {
        'total_deals': len(closed),
        'total_sales': str(round_money(total_sales)),
        'total_commission': str(round_money(sum_money(d.commission_amount for d in closed))),
        'deals_with_pending_commission': sum(1 for d in closed if d.commission_amount is None),
        'quota_amount': None,
        'attainment_pct': None,
    }

    target = find_active_target(db.session.get(User, user_id), period_start)
    if target is not None:
        summary['target_id'] = target.id
        summary['quota_amount'] = str(round_money(target.quota_amount))
        summary['attainment_pct'] = str(calculate_attainment(total_sales, target.quota_amount))
    return summary
