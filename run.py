# ==============================================================================
# run.py
# ------------------------------------------------------------------------------
# Development entry point. `flask shell` gets the models and the engine
# helpers preloaded for ad-hoc recalculation.
# ==============================================================================

import os

from app import create_app, db
from app.calculator.engine import batch_recalculate, handle_deal_change
from app.models import AppSetting, Commission, Company, Deal, PeriodCommission, Target, User

app = create_app()

@app.shell_context_processor
def make_shell_context():
    """Provides a shell context for the `flask shell` command."""
    return {
        'db': db,
        'AppSetting': AppSetting,
        'Commission': Commission,
        'Company': Company,
        'Deal': Deal,
        'PeriodCommission': PeriodCommission,
        'Target': Target,
        'User': User,
        'handle_deal_change': handle_deal_change,
        'batch_recalculate': batch_recalculate,
    }

if __name__ == '__main__':
    app.run(debug=True, port=int(os.environ.get('PORT', 5000)))
