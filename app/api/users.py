# ==============================================================================
# app/api/users.py
# ------------------------------------------------------------------------------
# Team listing and user administration.
# ==============================================================================

from flask import current_app, g

from app import db
from app.api import bp
from app.api.forms import UserForm
from app.api.utils import get_payload, success, validate_form
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import User
from app.security import admin_required, team_member_ids, token_required, would_create_cycle


def _company_user(user_id):
    user = db.session.get(User, user_id)
    if user is None or user.company_id != g.current_user.company_id:
        raise NotFoundError('User')
    return user


def _check_manager(manager_id):
    if manager_id is None:
        return None
    manager = db.session.get(User, manager_id)
    if manager is None or manager.company_id != g.current_user.company_id:
        raise ValidationError('Manager not found in this company')
    return manager


@bp.route('/users', methods=['GET'])
@token_required
def list_users():
    """Lists the users visible to the caller."""
    ids = team_member_ids(g.current_user)
    users = User.query.filter(User.id.in_(ids)).order_by(User.last_name, User.first_name).all()
    return success([u.to_dict() for u in users])


@bp.route('/users/<int:user_id>', methods=['GET'])
@token_required
def get_user(user_id):
    if user_id not in team_member_ids(g.current_user):
        raise NotFoundError('User')
    return success(_company_user(user_id).to_dict())


@bp.route('/users', methods=['POST'])
@admin_required
def create_user():
    payload = get_payload()
    form = UserForm.from_json(payload)
    data = validate_form(form)
    if not data['password']:
        raise ValidationError('Invalid request data', details={'password': ['Password is required.']})

    email = data['email'].strip().lower()
    if User.query.filter_by(email=email).first():
        raise ConflictError('A user with this email already exists')
    _check_manager(data['manager_id'])

    user = User(email=email, first_name=data['first_name'].strip(), last_name=data['last_name'].strip(),
                role=data['role'] or 'sales_rep', sub_role=data['sub_role'] or None,
                is_admin=data['is_admin'], is_manager=data['is_manager'], is_active=True,
                manager_id=data['manager_id'], company_id=g.current_user.company_id)
    user.set_password(data['password'])
    db.session.add(user)
    db.session.commit()

    current_app.logger.info(f"User {user.email} created by {g.current_user.email}")
    return success(user.to_dict(), status=201)


@bp.route('/users/<int:user_id>', methods=['PUT'])
@admin_required
def update_user(user_id):
    user = _company_user(user_id)
    payload = get_payload()
    data = validate_form(UserForm.from_json(payload, partial=True))

    if 'email' in data:
        email = data['email'].strip().lower()
        if email != user.email and User.query.filter_by(email=email).first():
            raise ConflictError('A user with this email already exists')
        user.email = email
    if 'manager_id' in data:
        if data['manager_id'] is not None:
            _check_manager(data['manager_id'])
            if would_create_cycle(user, data['manager_id']):
                raise ValidationError('This manager assignment would create a reporting cycle')
        user.manager_id = data['manager_id']
    if data.get('password'):
        user.set_password(data['password'])

    for field in ('first_name', 'last_name', 'role'):
        if data.get(field):
            setattr(user, field, data[field])
    if 'sub_role' in data:
        user.sub_role = data['sub_role'] or None
    for field in ('is_admin', 'is_manager', 'is_active'):
        if field in data:
            setattr(user, field, data[field])

    db.session.commit()
    current_app.logger.info(f"User {user.id} updated by {g.current_user.email}")
    return success(user.to_dict())


@bp.route('/users/<int:user_id>', methods=['DELETE'])
@admin_required
def deactivate_user(user_id):
    """Users are deactivated rather than deleted so their commissions stay attributable."""
    user = _company_user(user_id)
    if user.id == g.current_user.id:
        raise ValidationError('You cannot deactivate your own account')
    user.is_active = False
    db.session.commit()
    current_app.logger.info(f"User {user.id} deactivated by {g.current_user.email}")
    return success(user.to_dict())
