# ==============================================================================
# app/api/auth.py
# ------------------------------------------------------------------------------
# Registration, login and the current-user endpoint.
# ==============================================================================

from flask import current_app, g

from app import db
from app.api import bp
from app.api.forms import LoginForm, RegisterForm
from app.api.utils import get_payload, success, validate_form
from app.errors import ConflictError, ForbiddenError, UnauthorizedError
from app.models import Company, User
from app.security import create_access_token, token_required


@bp.route('/auth/register', methods=['POST'])
def register():
    """Creates a company and its first user, who manages and administers it."""
    data = validate_form(RegisterForm.from_json(get_payload()))
    email = data['email'].strip().lower()
    if User.query.filter_by(email=email).first():
        raise ConflictError('A user with this email already exists')

    company = Company(name=data['company_name'].strip())
    db.session.add(company)
    db.session.flush()

    user = User(email=email, first_name=data['first_name'].strip(), last_name=data['last_name'].strip(),
                role='manager', is_admin=True, is_manager=True, company_id=company.id)
    user.set_password(data['password'])
    db.session.add(user)
    db.session.commit()

    current_app.logger.info(f"Registered company {company.id} with admin {user.email}")
    return success({'token': create_access_token(user), 'user': user.to_dict(),
                    'company': company.to_dict()}, status=201)


@bp.route('/auth/login', methods=['POST'])
def login():
    data = validate_form(LoginForm.from_json(get_payload()))
    user = User.query.filter(db.func.lower(User.email) == data['email'].strip().lower()).first()
    if user is None or not user.check_password(data['password']):
        current_app.logger.warning(f"Failed login attempt for {data['email']}")
        raise UnauthorizedError('Invalid email or password')
    if not user.is_active:
        raise ForbiddenError('This account has been deactivated')

    return success({'token': create_access_token(user), 'user': user.to_dict()})


@bp.route('/auth/me', methods=['GET'])
@token_required
def me():
    user = g.current_user
    payload = user.to_dict()
    payload['company'] = user.company.to_dict()
    payload['can_manage_team'] = user.can_manage_team
    return success(payload)
