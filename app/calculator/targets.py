# ==============================================================================
# app/calculator/targets.py
# ------------------------------------------------------------------------------
# Target lifecycle: creation and update checks, cascading deactivation and the
# integrity reports behind the maintenance commands.
# ==============================================================================

import logging
from datetime import date

from app import db
from app.errors import ConflictError, ValidationError
from app.models import PERIOD_TYPES, Target, User
from app.calculator.money import to_decimal
from app.calculator.periods import generate_target_name, periods_overlap

TARGET_FIELDS = ('user_id', 'role', 'period_type', 'period_start', 'period_end', 'quota_amount',
                 'commission_rate', 'commission_payment_schedule', 'currency', 'parent_target_id')


def _ancestor_ids(target):
    """Ids of `target` and every target above it in the parent chain."""
    ids = []
    current = target
    while current is not None and current.id not in ids:
        ids.append(current.id)
        current = db.session.get(Target, current.parent_target_id) if current.parent_target_id else None
    return ids


def _check_target(values, company_id, exclude_id=None):
    """Raises ValidationError/ConflictError when `values` would make an invalid or overlapping target."""
    start, end = values['period_start'], values['period_end']
    if not isinstance(start, date) or not isinstance(end, date):
        raise ValidationError('period_start and period_end are required')
    if start > end:
        raise ValidationError('period_start must be on or before period_end')
    if values['period_type'] not in PERIOD_TYPES:
        raise ValidationError(f"period_type must be one of: {', '.join(PERIOD_TYPES)}")

    rate = to_decimal(values['commission_rate'])
    if not 0 <= rate <= 1:
        raise ValidationError('commission_rate must be between 0 and 1')
    if to_decimal(values['quota_amount']) < 0:
        raise ValidationError('quota_amount cannot be negative')
    if values['user_id'] is None and not values.get('role'):
        raise ValidationError('A target needs either a user_id or a role')

    if values['user_id'] is not None:
        user = db.session.get(User, values['user_id'])
        if user is None or user.company_id != company_id:
            raise ValidationError('Target user not found in this company')

    parent_id = values.get('parent_target_id')
    if parent_id is not None:
        parent = db.session.get(Target, parent_id)
        if parent is None or parent.company_id != company_id:
            raise ValidationError('Parent target not found')
        if exclude_id is not None and exclude_id in _ancestor_ids(parent):
            raise ValidationError('A target cannot be its own parent or ancestor')
        if start < parent.period_start or end > parent.period_end:
            raise ValidationError("A child target's period must lie within its parent's period")

    if exclude_id is not None:
        children = Target.query.filter(Target.parent_target_id == exclude_id, Target.is_active.is_(True)).all()
        outside = [c.id for c in children if c.period_start < start or c.period_end > end]
        if outside:
            raise ValidationError("Child targets must stay within this target's period",
                                  details={'child_target_ids': outside})

    query = Target.query.filter(Target.company_id == company_id,
                                Target.is_active.is_(True),
                                Target.period_type == values['period_type'],
                                Target.period_start <= end,
                                Target.period_end >= start)
    if values['user_id'] is not None:
        query = query.filter(Target.user_id == values['user_id'])
    else:
        query = query.filter(Target.user_id.is_(None), Target.role == values['role'])
    if exclude_id is not None:
        query = query.filter(Target.id != exclude_id)

    clash = query.first()
    if clash is not None:
        raise ConflictError('An active target already exists for this period',
                            details={'conflicting_target_id': clash.id, 'conflicting_target_name': clash.name})


def _name_for(values):
    user = db.session.get(User, values['user_id']) if values['user_id'] is not None else None
    return generate_target_name(user, values['period_type'], values['period_start'],
                                values['period_end'], role=values.get('role'))


def create_target(data, created_by, company_id):
    """
    Creates an active target after validation.

    Args:
        data (dict): Target fields (dates as `date`, amounts as numbers or strings).
        created_by (User): The acting user.
        company_id (int): The company the target belongs to.
    """
    values = {field: data.get(field) for field in TARGET_FIELDS}
    values['commission_payment_schedule'] = values['commission_payment_schedule'] or 'monthly'
    if values['user_id'] is not None:
        values['role'] = None
    _check_target(values, company_id)

    target = Target(
        name=data.get('name') or _name_for(values),
        user_id=values['user_id'], role=values['role'], company_id=company_id,
        period_type=values['period_type'], period_start=values['period_start'], period_end=values['period_end'],
        quota_amount=to_decimal(values['quota_amount']), commission_rate=to_decimal(values['commission_rate']),
        commission_payment_schedule=values['commission_payment_schedule'],
        currency=values['currency'] or 'GBP', parent_target_id=values['parent_target_id'],
        is_active=True, created_by=created_by.id if created_by else None
    )
    db.session.add(target)
    db.session.flush()
    logging.info(f"Target {target.id} '{target.name}' created")
    return target


def update_target(target, data):
    """Applies the given fields to a target, re-running the creation checks against the others."""
    values = {field: getattr(target, field) for field in TARGET_FIELDS}
    values.update({k: v for k, v in data.items() if k in TARGET_FIELDS and v is not None})
    _check_target(values, target.company_id, exclude_id=target.id)

    for field, value in values.items():
        if field in ('quota_amount', 'commission_rate'):
            value = to_decimal(value)
        setattr(target, field, value)
    if data.get('name'):
        target.name = data['name']
    elif any(field in data for field in ('period_type', 'period_start', 'period_end', 'user_id', 'role')):
        target.name = _name_for(values)
    db.session.flush()
    logging.info(f"Target {target.id} '{target.name}' updated")
    return target


def deactivate_target(target):
    """
    Deactivates a target and every active descendant.

    Returns:
        list: Ids of all targets that were deactivated.
    """
    deactivated = []
    pending = [target]
    seen = set()
    while pending:
        current = pending.pop()
        if current.id in seen:
            continue
        seen.add(current.id)
        if current.is_active:
            current.is_active = False
            deactivated.append(current.id)
        pending.extend(current.children.filter(Target.is_active.is_(True)).all())
    db.session.flush()
    logging.info(f"Deactivated targets {deactivated}")
    return deactivated


def find_orphaned_targets(company_id=None):
    """Active child targets whose parent is missing or inactive."""
    query = Target.query.filter(Target.is_active.is_(True), Target.parent_target_id.isnot(None))
    if company_id is not None:
        query = query.filter(Target.company_id == company_id)
    orphans = []
    for target in query.order_by(Target.id).all():
        parent = db.session.get(Target, target.parent_target_id)
        if parent is None or not parent.is_active:
            orphans.append(target)
    return orphans


def find_duplicate_targets(company_id=None):
    """
    Groups of active targets of the same type that overlap for the same user
    (or the same role). Each group is ordered newest first; the first entry is
    the one to keep.
    """
    query = Target.query.filter(Target.is_active.is_(True))
    if company_id is not None:
        query = query.filter(Target.company_id == company_id)

    buckets = {}
    for target in query.all():
        owner = ('user', target.user_id) if target.user_id is not None else ('role', target.role)
        buckets.setdefault((target.company_id, owner, target.period_type), []).append(target)

    groups = []
    for targets in buckets.values():
        if len(targets) < 2:
            continue
        targets.sort(key=lambda t: (t.period_start, t.id))
        cluster = [targets[0]]
        cluster_end = targets[0].period_end
        for target in targets[1:]:
            if periods_overlap(target.period_start, target.period_end, cluster[0].period_start, cluster_end):
                cluster.append(target)
                cluster_end = max(cluster_end, target.period_end)
            else:
                if len(cluster) > 1:
                    groups.append(cluster)
                cluster = [target]
                cluster_end = target.period_end
        if len(cluster) > 1:
            groups.append(cluster)

    return [sorted(group, key=lambda t: (t.created_at, t.id), reverse=True) for group in groups]
