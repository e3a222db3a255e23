from datetime import datetime

from app import db
from app.api import bp
from app.api.utils import success


@bp.route('/health', methods=['GET'])
def health():
    db.session.execute(db.text('SELECT 1'))
    return success({'status': 'ok', 'timestamp': datetime.utcnow().isoformat() + 'Z'})
