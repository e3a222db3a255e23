# ==============================================================================
# app/calculator/schema.py
# ------------------------------------------------------------------------------
# Defines the expected structure of an uploaded deal import file and of the
# commission exports. This schema is the single source of truth for the
# validator and the exporter.
# ==============================================================================

EXPECTED_SHEETS = {
    'Deals': {
        'required_columns': ['deal_name', 'amount', 'close_date', 'owner_email'],
        'optional_columns': ['account_name', 'status', 'stage', 'category', 'crm_id'],
        'numeric_columns': ['amount'],
        'date_columns': ['close_date'],
        'allowed_values': {
            'status': ['open', 'closed_won', 'closed_lost'],
            'category': ['pipeline', 'best_case', 'commit'],
        }
    }
}

EXPORT_FORMATS = {
    'simple_csv': [
        'commission_id', 'deal_name', 'rep_name', 'deal_amount', 'commission_amount', 'status', 'period_end'
    ],
    'detailed_csv': [
        'commission_id', 'deal_id', 'deal_name', 'account_name', 'rep_name', 'rep_email', 'target_name',
        'deal_amount', 'commission_rate', 'commission_amount', 'original_amount', 'adjustment_reason',
        'status', 'period_start', 'period_end', 'calculated_at', 'approved_at', 'paid_at', 'payment_reference'
    ],
}
