# ==============================================================================
# app/security.py
# ------------------------------------------------------------------------------
# Bearer-token authentication, role decorators, team visibility and CRM
# webhook signature checks.
# ==============================================================================

import hashlib
import hmac
import time
from datetime import datetime, timedelta
from functools import wraps

import jwt
from flask import current_app, g, request

from app import db
from app.errors import ForbiddenError, UnauthorizedError
from app.models import User


def create_access_token(user):
    """Issues a signed JWT for the user."""
    now = datetime.utcnow()
    payload = {
        'sub': str(user.id),
        'email': user.email,
        'role': user.role,
        'is_admin': user.is_admin,
        'is_manager': user.is_manager,
        'company_id': user.company_id,
        'iat': now,
        'exp': now + timedelta(minutes=current_app.config['JWT_EXPIRES_MINUTES']),
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET_KEY'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def decode_access_token(token):
    try:
        return jwt.decode(token, current_app.config['JWT_SECRET_KEY'],
                          algorithms=[current_app.config['JWT_ALGORITHM']])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError('Token has expired')
    except jwt.InvalidTokenError:
        raise UnauthorizedError('Invalid token')


def _current_user_from_request():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        raise UnauthorizedError('Missing bearer token')

    claims = decode_access_token(token.strip())
    try:
        user_id = int(claims['sub'])
    except (KeyError, ValueError):
        raise UnauthorizedError('Invalid token')

    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError('User not found or inactive')
    return user

# --- Decorators ---

def token_required(f):
    """Decorator that resolves the bearer token into `g.current_user`."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = _current_user_from_request()
        return f(*args, **kwargs)
    return decorated_function


def manager_required(f):
    """Decorator for routes limited to managers and admins."""
    @wraps(f)
    @token_required
    def decorated_function(*args, **kwargs):
        if not g.current_user.can_manage_team:
            raise ForbiddenError('Manager access required')
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Decorator for routes limited to company administrators."""
    @wraps(f)
    @token_required
    def decorated_function(*args, **kwargs):
        if not g.current_user.is_admin:
            raise ForbiddenError('Admin access required')
        return f(*args, **kwargs)
    return decorated_function

# --- Team visibility ---

def team_member_ids(user):
    """
    Ids of the users whose data `user` may see: the whole company for an
    admin, the reporting subtree for a manager, and only themselves otherwise.
    """
    if user.is_admin:
        return {uid for (uid,) in db.session.query(User.id).filter(User.company_id == user.company_id)}
    ids = {user.id}
    if not user.can_manage_team:
        return ids

    frontier = [user.id]
    while frontier:
        rows = db.session.query(User.id).filter(User.manager_id.in_(frontier),
                                                User.company_id == user.company_id).all()
        frontier = [uid for (uid,) in rows if uid not in ids]
        ids.update(frontier)
    return ids


def can_access_user(user, other_user_id):
    return other_user_id in team_member_ids(user)


def would_create_cycle(user, new_manager_id):
    """True if making `new_manager_id` the manager of `user` loops the reporting tree."""
    seen = set()
    current_id = new_manager_id
    while current_id is not None and current_id not in seen:
        if current_id == user.id:
            return True
        seen.add(current_id)
        manager = db.session.get(User, current_id)
        current_id = manager.manager_id if manager else None
    return False

# --- Webhooks ---

def hubspot_signature(secret, method, url, body, timestamp):
    """v3 signature: HMAC-SHA256 over method + url + body + timestamp, hex encoded."""
    if isinstance(body, bytes):
        body = body.decode('utf-8')
    message = f"{method}{url}{body}{timestamp}"
    digest = hmac.new(secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).hexdigest()
    return f"v3={digest}"


def verify_hubspot_signature(secret, method, url, body, signature, timestamp, max_age_seconds=300, now=None):
    """
    Validates a HubSpot v3 webhook signature and its timestamp.

    Args:
        timestamp (str): Milliseconds since the epoch, as sent in the header.

    Raises:
        UnauthorizedError: Missing header, stale timestamp or signature mismatch.
    """
    if not signature or not timestamp:
        raise UnauthorizedError('Missing webhook signature headers')
    try:
        sent_ms = int(timestamp)
    except ValueError:
        raise UnauthorizedError('Invalid webhook timestamp')

    now_ms = int((now if now is not None else time.time()) * 1000)
    if abs(now_ms - sent_ms) > max_age_seconds * 1000:
        raise UnauthorizedError('Webhook timestamp is too old')

    expected = hubspot_signature(secret, method, url, body, timestamp)
    if not hmac.compare_digest(expected, signature):
        raise UnauthorizedError('Invalid webhook signature')
    return True
