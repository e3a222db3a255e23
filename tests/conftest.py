# tests/conftest.py

from datetime import date
from decimal import Decimal

import pytest


@pytest.fixture
def app():
    """
    Creates a new app instance for each test with an in-memory database,
    seeded with the default settings, and yields it inside an app context.
    """
    from app import create_app, db
    from app.calculator.engine import CalculationConfig
    from app.seed import seed_data
    from config import TestConfig

    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        seed_data()
        CalculationConfig._instance = None
        yield app
        db.session.remove()
        db.drop_all()
    CalculationConfig._instance = None


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    from app import db
    return db.session


@pytest.fixture
def company(session):
    from app.models import Company
    company = Company(name='Acme Ltd')
    session.add(company)
    session.commit()
    return company


@pytest.fixture
def make_user(session, company):
    from app.models import User

    def _make_user(email, first_name='Alice', last_name='Foster', role='sales_rep', manager=None,
                   is_admin=False, is_manager=False, password='password123', company_id=None):
        user = User(email=email, first_name=first_name, last_name=last_name, role=role,
                    is_admin=is_admin, is_manager=is_manager, company_id=company_id or company.id,
                    manager_id=manager.id if manager else None)
        user.set_password(password)
        session.add(user)
        session.commit()
        return user
    return _make_user


@pytest.fixture
def admin(make_user):
    return make_user('boss@acme.test', first_name='Bea', last_name='Oss', role='manager',
                     is_admin=True, is_manager=True)


@pytest.fixture
def manager(make_user, admin):
    return make_user('manager@acme.test', first_name='Mark', last_name='Green', role='manager',
                     is_manager=True, manager=admin)


@pytest.fixture
def rep(make_user, manager):
    return make_user('alice@acme.test', first_name='Alice', last_name='Foster', manager=manager)


@pytest.fixture
def make_target(session, company):
    from app.models import Target

    def _make_target(user=None, period_type='quarterly', period_start=date(2025, 1, 1),
                     period_end=date(2025, 3, 31), quota_amount='30000', commission_rate='0.10',
                     schedule='monthly', role=None, parent=None, is_active=True, name=None):
        target = Target(user_id=user.id if user else None, role=role, company_id=company.id,
                        period_type=period_type, period_start=period_start, period_end=period_end,
                        quota_amount=Decimal(quota_amount), commission_rate=Decimal(commission_rate),
                        commission_payment_schedule=schedule, parent_target_id=parent.id if parent else None,
                        is_active=is_active, name=name)
        session.add(target)
        session.commit()
        return target
    return _make_target


@pytest.fixture
def make_deal(session, company):
    from app.models import Deal

    def _make_deal(user, amount='10000', close_date=date(2025, 1, 15), status='closed_won', stage=None,
                   category=None, name='Widget deal', crm_id=None, crm_type='manual'):
        deal = Deal(user_id=user.id, company_id=company.id, deal_name=name, amount=Decimal(amount),
                    close_date=close_date, status=status, stage=stage, category=category,
                    crm_id=crm_id, crm_type=crm_type)
        session.add(deal)
        session.commit()
        return deal
    return _make_deal


@pytest.fixture
def auth_headers(app):
    from app.security import create_access_token

    def _auth_headers(user):
        return {'Authorization': f'Bearer {create_access_token(user)}'}
    return _auth_headers
