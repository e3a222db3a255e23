# ==============================================================================
# app/api/webhooks.py
# ------------------------------------------------------------------------------
# HubSpot webhook receiver. Requests are authenticated with the v3 signature
# and each event id is processed at most once.
# ==============================================================================

from datetime import date, datetime, timedelta

from flask import current_app, request

from app import db
from app.api import bp
from app.api.utils import success
from app.calculator.engine import (clear_deal_commission, deal_snapshot, handle_deal_change, is_closed_won,
                                   recalculate_user_period, CalculationConfig)
from app.calculator.money import to_decimal
from app.errors import APIError, ValidationError
from app.models import Company, Deal, WebhookEvent
from app.security import verify_hubspot_signature

TRACKED_PROPERTIES = ('amount', 'closedate', 'dealstage')
CLOSED_LOST_STAGES = ('closed lost', 'closed_lost', 'closedlost')

# --- Helper Functions ---

def _signed_url():
    query = request.query_string.decode('utf-8')
    return f"{request.path}?{query}" if query else request.path


def _check_signature():
    secret = current_app.config.get('HUBSPOT_WEBHOOK_SECRET')
    if not secret:
        if current_app.debug:
            current_app.logger.warning('HUBSPOT_WEBHOOK_SECRET not set; webhook signature validation skipped')
            return
        current_app.logger.error('HUBSPOT_WEBHOOK_SECRET not configured')
        raise APIError('Webhook validation not configured', code='WEBHOOK_NOT_CONFIGURED')

    verify_hubspot_signature(
        secret, request.method, _signed_url(), request.get_data(cache=True, as_text=True),
        request.headers.get('X-HubSpot-Signature-v3'), request.headers.get('X-HubSpot-Request-Timestamp'),
        max_age_seconds=current_app.config['WEBHOOK_MAX_AGE_SECONDS']
    )


def _already_processed(event_id):
    """Checks and records an event id in one step; returns True for a replay."""
    now = datetime.utcnow()
    existing = WebhookEvent.query.filter_by(event_id=event_id).first()
    if existing is not None and existing.expires_at > now:
        return True
    if existing is None:
        existing = WebhookEvent(event_id=event_id)
        db.session.add(existing)
    existing.processed_at = now
    existing.expires_at = now + timedelta(days=current_app.config['WEBHOOK_EVENT_RETENTION_DAYS'])
    return False


def _parse_close_date(value):
    """HubSpot sends dates as epoch milliseconds or ISO strings."""
    text = str(value).strip()
    if text.isdigit():
        return datetime.utcfromtimestamp(int(text) / 1000).date()
    return date.fromisoformat(text[:10])


def _status_for_stage(stage):
    normalized = (stage or '').strip().lower()
    if normalized in CalculationConfig().CLOSED_WON_STAGES:
        return 'closed_won'
    if normalized in CLOSED_LOST_STAGES:
        return 'closed_lost'
    return 'open'


def _apply_property_change(deal, name, value):
    if name == 'amount':
        deal.amount = to_decimal(value)
    elif name == 'closedate':
        deal.close_date = _parse_close_date(value)
    elif name == 'dealstage':
        deal.stage = value
        deal.status = _status_for_stage(value)
    deal.updated_at = datetime.utcnow()


def _delete_deal(deal):
    commission = deal.commission
    if commission is not None and commission.status in ('approved', 'paid'):
        current_app.logger.warning(f"HubSpot deleted deal {deal.id} but its commission is {commission.status}; keeping it")
        return False
    owner, close_date = deal.user, deal.close_date
    clear_deal_commission(deal, reason='Deal deleted in HubSpot')
    db.session.delete(deal)
    db.session.flush()
    recalculate_user_period(owner, close_date, trigger='webhook')
    return True


def _process_event(event):
    """Applies one event. Returns 'processed' or 'skipped'."""
    subscription = event.get('subscriptionType', '')
    object_id = event.get('objectId')
    if not subscription.startswith('deal.') or object_id is None:
        return 'skipped'

    portal_id = event.get('portalId')
    company = Company.query.filter_by(hubspot_portal_id=str(portal_id)).first() if portal_id is not None else None
    if company is None:
        current_app.logger.warning(f"HubSpot event from unknown portal {portal_id}; skipping")
        return 'skipped'

    deals = Deal.query.filter_by(company_id=company.id, crm_id=str(object_id), crm_type='hubspot').all()
    if not deals:
        current_app.logger.info(f"HubSpot event for unknown deal {object_id}; skipping")
        return 'skipped'

    if subscription == 'deal.deletion':
        return 'processed' if all([_delete_deal(d) for d in deals]) else 'skipped'

    if subscription != 'deal.propertyChange' or event.get('propertyName') not in TRACKED_PROPERTIES:
        return 'skipped'

    for deal in deals:
        previous = deal_snapshot(deal)
        _apply_property_change(deal, event['propertyName'], event.get('propertyValue'))
        handle_deal_change(deal, previous=previous, trigger='webhook', commit=False)
        current_app.logger.info(f"HubSpot {event['propertyName']} change applied to deal {deal.id} "
                                f"(closed won: {is_closed_won(deal)})")
    return 'processed'

# --- Routes ---

@bp.route('/webhooks/hubspot', methods=['POST'])
def hubspot_webhook():
    _check_signature()

    body = request.get_json(silent=True)
    if body is None:
        raise ValidationError('Webhook body must be JSON')
    events = body if isinstance(body, list) else [body]

    counts = {'processed': 0, 'skipped': 0, 'duplicates': 0}
    for event in events:
        if not isinstance(event, dict):
            counts['skipped'] += 1
            continue
        try:
            event_id = event.get('eventId')
            if event_id is not None and _already_processed(str(event_id)):
                counts['duplicates'] += 1
                continue
            counts[_process_event(event)] += 1
            db.session.commit()
        except (ValueError, KeyError) as e:
            db.session.rollback()
            current_app.logger.warning(f"Could not apply HubSpot event {event.get('eventId')}: {e}")
            counts['skipped'] += 1

    current_app.logger.info(f"HubSpot webhook: {counts}")
    return success(counts)
