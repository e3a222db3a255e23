# ==============================================================================
# app/calculator/exporter.py
# ------------------------------------------------------------------------------
# Builds CSV exports of commissions for payroll.
# ==============================================================================

import pandas as pd

from .schema import EXPORT_FORMATS


def _iso(value):
    return value.isoformat() if value is not None else None


def commission_rows(commissions):
    """Flattens Commission records (with deal and user) into export rows."""
    rows = []
    for c in commissions:
        deal = c.deal
        rows.append({
            'commission_id': c.id,
            'deal_id': c.deal_id,
            'deal_name': deal.deal_name if deal else None,
            'account_name': deal.account_name if deal else None,
            'rep_name': c.user.full_name if c.user else None,
            'rep_email': c.user.email if c.user else None,
            'target_name': c.target_name,
            'deal_amount': c.deal_amount,
            'commission_rate': c.commission_rate,
            'commission_amount': c.commission_amount,
            'original_amount': c.original_amount,
            'adjustment_reason': c.adjustment_reason,
            'status': c.status,
            'period_start': _iso(c.period_start),
            'period_end': _iso(c.period_end),
            'calculated_at': _iso(c.calculated_at),
            'approved_at': _iso(c.approved_at),
            'paid_at': _iso(c.paid_at),
            'payment_reference': c.payment_reference,
        })
    return rows


def export_commissions_csv(commissions, export_format='simple_csv'):
    """
    Returns the CSV text for the given commissions in one of EXPORT_FORMATS.
    """
    if export_format not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format '{export_format}'")
    columns = EXPORT_FORMATS[export_format]
    df = pd.DataFrame(commission_rows(commissions), columns=columns)
    return df.to_csv(index=False)
