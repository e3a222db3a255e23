# ==============================================================================
# app/api/targets.py
# ------------------------------------------------------------------------------
# Target management routes.
# ==============================================================================

from flask import current_app, g, request

from app import db
from app.api import bp
from app.api.forms import TargetForm
from app.api.utils import bool_arg, get_payload, success, validate_form
from app.calculator.engine import recalculate_for_target
from app.calculator.targets import create_target, deactivate_target, update_target
from app.errors import NotFoundError
from app.models import Target
from app.security import manager_required, team_member_ids, token_required


def _company_target(target_id):
    target = db.session.get(Target, target_id)
    if target is None or target.company_id != g.current_user.company_id:
        raise NotFoundError('Target')
    return target


def _target_payload(form_data):
    data = dict(form_data)
    for key in ('name', 'currency', 'role', 'commission_payment_schedule'):
        if key in data and not data[key]:
            data[key] = None
    return data


@bp.route('/targets', methods=['GET'])
@token_required
def list_targets():
    user = g.current_user
    visible = team_member_ids(user)
    query = Target.query.filter(Target.company_id == user.company_id)

    user_id = request.args.get('user_id', type=int)
    if user_id:
        query = query.filter(Target.user_id == user_id)
    if not user.is_admin:
        query = query.filter(db.or_(Target.user_id.in_(visible), Target.user_id.is_(None)))
    if bool_arg('active_only', default=True):
        query = query.filter(Target.is_active.is_(True))

    targets = query.order_by(Target.period_start.desc(), Target.id.desc()).all()
    return success([t.to_dict() for t in targets])


@bp.route('/targets/<int:target_id>', methods=['GET'])
@token_required
def get_target(target_id):
    target = _company_target(target_id)
    user = g.current_user
    if not user.is_admin and target.user_id is not None and target.user_id not in team_member_ids(user):
        raise NotFoundError('Target')
    payload = target.to_dict()
    payload['children'] = [c.to_dict() for c in target.children.order_by(Target.period_start)]
    return success(payload)


@bp.route('/targets', methods=['POST'])
@manager_required
def add_target():
    data = _target_payload(validate_form(TargetForm.from_json(get_payload())))
    try:
        target = create_target(data, g.current_user, g.current_user.company_id)
        calculated = recalculate_for_target(target, performed_by=g.current_user.id, commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(f"Target {target.id} created by {g.current_user.email}; {calculated} deals calculated")
    return success(target.to_dict(), status=201, deals_calculated=calculated)


@bp.route('/targets/<int:target_id>', methods=['PUT'])
@manager_required
def edit_target(target_id):
    target = _company_target(target_id)
    data = _target_payload(validate_form(TargetForm.from_json(get_payload(), partial=True)))
    try:
        update_target(target, data)
        calculated = recalculate_for_target(target, performed_by=g.current_user.id, commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(f"Target {target.id} updated by {g.current_user.email}")
    return success(target.to_dict(), deals_calculated=calculated)


@bp.route('/targets/<int:target_id>/deactivate', methods=['PATCH'])
@manager_required
def deactivate(target_id):
    target = _company_target(target_id)
    try:
        ids = deactivate_target(target)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(f"Targets {ids} deactivated by {g.current_user.email}")
    return success({'deactivated_ids': ids})
