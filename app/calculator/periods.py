# ==============================================================================
# app/calculator/periods.py
# ------------------------------------------------------------------------------
# Period arithmetic: payment-period bounds, quota proration and target naming.
# ==============================================================================

import calendar
from datetime import date, datetime

from app.calculator.money import to_decimal

MONTH_ABBREVIATIONS = ['JAN', 'FEB', 'MAR', 'APR', 'MAY', 'JUN',
                       'JUL', 'AUG', 'SEP', 'OCT', 'NOV', 'DEC']

# How many periods of the key type fit into one period of the inner key type
PERIODS_PER = {
    'annual': {'annual': 1, 'quarterly': 4, 'monthly': 12},
    'quarterly': {'quarterly': 1, 'monthly': 3},
    'monthly': {'monthly': 1},
}


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def get_period_for_date(on_date, schedule='monthly'):
    """
    Returns the (start, end) payment period containing `on_date`, both inclusive.
    """
    d = _as_date(on_date)
    if schedule == 'monthly':
        last_day = calendar.monthrange(d.year, d.month)[1]
        return date(d.year, d.month, 1), date(d.year, d.month, last_day)
    if schedule == 'quarterly':
        first_month = (d.month - 1) // 3 * 3 + 1
        last_month = first_month + 2
        return date(d.year, first_month, 1), date(d.year, last_month, calendar.monthrange(d.year, last_month)[1])
    if schedule == 'annual':
        return date(d.year, 1, 1), date(d.year, 12, 31)
    raise ValueError(f"Unknown payment schedule: {schedule!r}")


def prorate_quota(quota_amount, target_period_type, schedule):
    """
    Scales a target's quota down to the payment schedule: an annual quota paid
    out monthly is divided by 12, quarterly by 4; a quarterly quota paid monthly
    by 3. Schedules equal to or coarser than the target leave it unchanged.
    """
    quota = to_decimal(quota_amount)
    divisor = PERIODS_PER.get(target_period_type, {}).get(schedule, 1)
    return quota / divisor


def periods_overlap(a_start, a_end, b_start, b_end):
    return a_start <= b_end and b_start <= a_end


def generate_target_name(user, period_type, period_start, period_end=None, role=None):
    """
    Builds names such as 'AF-ANNUAL-2025', 'AF-Q1-2025' or 'AF-JAN-2025'.
    Role targets use the upper-cased role instead of initials.
    """
    if not period_type or not period_start:
        return None

    if user is not None:
        prefix = f"{(user.first_name or ' ')[0]}{(user.last_name or ' ')[0]}".strip().upper()
    else:
        prefix = (role or 'TEAM').upper()

    start = _as_date(period_start)
    year = start.year
    kind = period_type.lower()

    if kind in ('annual', 'yearly'):
        period_id = f"ANNUAL-{year}"
    elif kind == 'quarterly':
        period_id = f"Q{(start.month - 1) // 3 + 1}-{year}"
    elif kind == 'monthly':
        period_id = f"{MONTH_ABBREVIATIONS[start.month - 1]}-{year}"
    elif kind == 'weekly':
        period_id = f"W{start.isocalendar()[1]}-{year}"
    else:
        end = _as_date(period_end) if period_end else start
        period_id = f"{start.month}/{start.day}-{end.month}/{end.day}/{year}"

    return f"{prefix}-{period_id}"


def parse_target_name(name):
    """Splits a generated target name back into its parts, or None."""
    if not name:
        return None
    parts = name.split('-')
    if len(parts) < 3:
        return None
    return {
        'prefix': parts[0],
        'period_type': parts[1],
        'year': parts[-1],
        'period': '-'.join(parts[1:]),
    }
