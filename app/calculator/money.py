# ==============================================================================
# app/calculator/money.py
# ------------------------------------------------------------------------------
# Decimal helpers for monetary arithmetic. Amounts are rounded half-up to the
# penny; nothing in the engine multiplies floats.
# ==============================================================================

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

PENNY = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')


def to_decimal(value):
    """Converts None, numbers and numeric strings (with thousands separators) to Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1 rather than its binary expansion
        return Decimal(repr(value))
    try:
        return Decimal(str(value).replace(',', '').strip() or '0')
    except InvalidOperation:
        raise ValueError(f"Invalid monetary value: {value!r}")


def round_money(value):
    return to_decimal(value).quantize(PENNY, rounding=ROUND_HALF_UP)


def calculate_commission(amount, rate):
    """amount x rate, rounded to the penny."""
    return round_money(to_decimal(amount) * to_decimal(rate))


def calculate_percentage(value, total):
    total = to_decimal(total)
    if total == ZERO:
        return ZERO.quantize(PENNY)
    return (to_decimal(value) / total * HUNDRED).quantize(PENNY, rounding=ROUND_HALF_UP)


def calculate_attainment(actual, quota):
    """Actual sales as a percentage of quota; 0 when there is no quota."""
    return calculate_percentage(actual, quota)


def sum_money(values):
    return sum((to_decimal(v) for v in values), ZERO)


def format_currency(value, currency='GBP'):
    symbols = {'GBP': '£', 'USD': '$', 'EUR': '€'}
    amount = round_money(value)
    symbol = symbols.get(currency)
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{amount:,.2f} {currency}"


def calculate_tiered_commission(amount, tiers):
    """
    Graduated commission: each tier's rate applies to the slice of `amount`
    between its threshold and the next tier's threshold.

    Args:
        amount: The total sales amount.
        tiers (list): Dicts with 'threshold' and 'rate' keys, in any order.

    Returns:
        Decimal: The commission rounded to the penny.
    """
    amount = to_decimal(amount)
    ordered = sorted(tiers, key=lambda t: to_decimal(t['threshold']))
    commission = ZERO
    for index, tier in enumerate(ordered):
        threshold = to_decimal(tier['threshold'])
        if amount <= threshold:
            break
        upper = to_decimal(ordered[index + 1]['threshold']) if index + 1 < len(ordered) else amount
        commission += (min(amount, upper) - threshold) * to_decimal(tier['rate'])
    return round_money(commission)
