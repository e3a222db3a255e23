# tests/test_targets.py

from datetime import date, datetime
from decimal import Decimal

import pytest

from app.calculator.targets import (create_target, deactivate_target, find_duplicate_targets,
                                    find_orphaned_targets, update_target)
from app.errors import ConflictError, ValidationError
from app.models import Target


def _data(user=None, **overrides):
    data = {
        'user_id': user.id if user else None,
        'period_type': 'quarterly',
        'period_start': date(2025, 1, 1),
        'period_end': date(2025, 3, 31),
        'quota_amount': '30000',
        'commission_rate': '0.10',
    }
    data.update(overrides)
    return data


def test_create_target_generates_name(session, rep, manager):
    target = create_target(_data(rep), manager, rep.company_id)
    session.commit()
    assert target.name == 'AF-Q1-2025'
    assert target.is_active
    assert target.commission_payment_schedule == 'monthly'
    assert target.created_by == manager.id


def test_overlapping_target_of_same_type_conflicts(session, rep, manager):
    create_target(_data(rep), manager, rep.company_id)
    session.commit()
    with pytest.raises(ConflictError):
        create_target(_data(rep, period_start=date(2025, 3, 1), period_end=date(2025, 5, 31)),
                      manager, rep.company_id)


def test_nested_target_of_another_type_is_allowed(session, rep, manager):
    parent = create_target(_data(rep, period_type='annual', period_end=date(2025, 12, 31), quota_amount='120000'),
                           manager, rep.company_id)
    child = create_target(_data(rep, parent_target_id=parent.id), manager, rep.company_id)
    session.commit()
    assert child.parent == parent


def test_child_must_fit_inside_parent(session, rep, manager):
    parent = create_target(_data(rep), manager, rep.company_id)
    with pytest.raises(ValidationError):
        create_target(_data(rep, period_type='monthly', period_start=date(2025, 3, 1),
                            period_end=date(2025, 4, 30), parent_target_id=parent.id),
                      manager, rep.company_id)


@pytest.mark.parametrize('overrides', [
    {'commission_rate': '1.5'},
    {'period_start': date(2025, 4, 1), 'period_end': date(2025, 1, 1)},
    {'user_id': None},
    {'period_type': 'weekly'},
])
def test_invalid_targets_are_rejected(rep, manager, overrides):
    with pytest.raises(ValidationError):
        create_target(_data(rep, **overrides), manager, rep.company_id)


def test_role_target(session, rep, manager):
    target = create_target(_data(None, role='sales_rep'), manager, rep.company_id)
    session.commit()
    assert target.user_id is None
    assert target.name == 'SALES_REP-Q1-2025'


def test_update_target_does_not_conflict_with_itself(session, rep, manager):
    target = create_target(_data(rep), manager, rep.company_id)
    session.commit()
    update_target(target, {'quota_amount': '36000'})
    assert target.quota_amount == Decimal('36000')


def test_deactivate_cascades_to_descendants(session, rep, make_target):
    annual = make_target(rep, period_type='annual', period_end=date(2025, 12, 31), quota_amount='120000')
    quarter = make_target(rep, parent=annual)
    month = make_target(rep, period_type='monthly', period_end=date(2025, 1, 31), parent=quarter)

    ids = deactivate_target(annual)
    session.commit()
    assert sorted(ids) == sorted([annual.id, quarter.id, month.id])
    assert Target.query.filter_by(is_active=True).count() == 0


def test_find_orphaned_targets(session, rep, make_target):
    annual = make_target(rep, period_type='annual', period_end=date(2025, 12, 31), quota_amount='120000')
    quarter = make_target(rep, parent=annual)
    annual.is_active = False
    session.commit()

    assert find_orphaned_targets() == [quarter]


def test_find_duplicate_targets_keeps_newest_first(session, rep, make_target):
    older = make_target(rep)
    newer = make_target(rep, period_start=date(2025, 2, 1), period_end=date(2025, 4, 30))
    older.created_at = datetime(2024, 1, 1)
    newer.created_at = datetime(2024, 2, 1)
    make_target(rep, period_start=date(2025, 7, 1), period_end=date(2025, 9, 30))
    session.commit()

    assert find_duplicate_targets() == [[newer, older]]


def test_shrinking_parent_must_keep_children_inside(session, rep, make_target):
    annual = make_target(rep, period_type='annual', period_end=date(2025, 12, 31), quota_amount='120000')
    make_target(rep, period_start=date(2025, 10, 1), period_end=date(2025, 12, 31), parent=annual)

    with pytest.raises(ValidationError):
        update_target(annual, {'period_end': date(2025, 6, 30)})


def test_descendant_cannot_become_parent(session, rep, make_target):
    annual = make_target(rep, period_type='annual', period_end=date(2025, 12, 31), quota_amount='120000')
    quarter = make_target(rep, parent=annual)
    month = make_target(rep, period_type='monthly', period_end=date(2025, 1, 31), parent=quarter)

    with pytest.raises(ValidationError):
        update_target(annual, {'parent_target_id': month.id})
