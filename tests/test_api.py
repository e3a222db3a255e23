# tests/test_api.py

import io
from datetime import date
from decimal import Decimal

import pytest

from app import db
from app.calculator.engine import CalculationConfig, handle_deal_change
from app.models import Commission, Company, Deal, PeriodCommission


@pytest.fixture
def rep_commission(rep, make_target, make_deal):
    make_target(rep)
    return handle_deal_change(make_deal(rep, amount='10000'))


# --- auth ---

def test_register_creates_company_admin(client):
    response = client.post('/api/auth/register', json={
        'company_name': 'Initech', 'email': 'Peter@Initech.test', 'password': 'tps-reports',
        'first_name': 'Peter', 'last_name': 'Gibbons'})

    assert response.status_code == 201
    body = response.get_json()['data']
    assert body['token']
    assert body['user']['email'] == 'peter@initech.test'
    assert body['user']['is_admin'] and body['user']['is_manager']
    assert body['user']['role'] == 'manager'
    assert Company.query.filter_by(name='Initech').count() == 1


def test_register_validates_payload(client):
    response = client.post('/api/auth/register', json={'email': 'not-an-email', 'password': 'short'})
    assert response.status_code == 400
    error = response.get_json()['error']
    assert error['code'] == 'VALIDATION_ERROR'
    assert {'company_name', 'email', 'password', 'first_name', 'last_name'} <= set(error['details'])


def test_login_is_case_insensitive(client, rep):
    response = client.post('/api/auth/login', json={'email': 'ALICE@acme.test', 'password': 'password123'})
    assert response.status_code == 200
    assert response.get_json()['data']['user']['id'] == rep.id


def test_login_rejects_bad_password_and_inactive_users(client, session, rep):
    assert client.post('/api/auth/login', json={'email': rep.email, 'password': 'nope'}).status_code == 401
    rep.is_active = False
    session.commit()
    assert client.post('/api/auth/login', json={'email': rep.email, 'password': 'password123'}).status_code == 403


def test_me_requires_token(client, rep, auth_headers):
    response = client.get('/api/auth/me')
    assert response.status_code == 401
    assert response.get_json() == {'success': False, 'error': response.get_json()['error']}
    assert response.get_json()['error']['path'] == '/api/auth/me'

    response = client.get('/api/auth/me', headers=auth_headers(rep))
    assert response.get_json()['data']['email'] == rep.email
    assert response.get_json()['data']['can_manage_team'] is False


def test_garbage_token_is_rejected(client):
    response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not.a.jwt'})
    assert response.status_code == 401


# --- users ---

def test_team_visibility(client, admin, manager, rep, make_user, auth_headers):
    other = make_user('bob@acme.test', first_name='Bob', last_name='Smith')

    def visible(user):
        response = client.get('/api/users', headers=auth_headers(user))
        return {u['id'] for u in response.get_json()['data']}

    assert visible(admin) == {admin.id, manager.id, rep.id, other.id}
    assert visible(manager) == {manager.id, rep.id}
    assert visible(rep) == {rep.id}


def test_admin_creates_and_deactivates_user(client, admin, manager, auth_headers):
    response = client.post('/api/users', headers=auth_headers(admin), json={
        'email': 'New.Rep@acme.test', 'first_name': 'New', 'last_name': 'Rep',
        'password': 'password123', 'manager_id': manager.id})
    assert response.status_code == 201
    user_id = response.get_json()['data']['id']
    assert response.get_json()['data']['role'] == 'sales_rep'

    response = client.delete(f'/api/users/{user_id}', headers=auth_headers(admin))
    assert response.get_json()['data']['is_active'] is False


def test_non_admin_cannot_create_users(client, manager, auth_headers):
    response = client.post('/api/users', headers=auth_headers(manager), json={
        'email': 'x@acme.test', 'first_name': 'X', 'last_name': 'Y', 'password': 'password123'})
    assert response.status_code == 403


def test_manager_from_another_company_is_refused(client, session, admin, auth_headers, make_user):
    elsewhere = Company(name='Elsewhere')
    session.add(elsewhere)
    session.commit()
    outsider = make_user('out@elsewhere.test', company_id=elsewhere.id)

    response = client.post('/api/users', headers=auth_headers(admin), json={
        'email': 'y@acme.test', 'first_name': 'Y', 'last_name': 'Z', 'password': 'password123',
        'manager_id': outsider.id})
    assert response.status_code == 400


def test_reporting_cycle_is_refused(client, admin, manager, rep, auth_headers):
    response = client.put(f'/api/users/{manager.id}', headers=auth_headers(admin), json={'manager_id': rep.id})
    assert response.status_code == 400
    assert 'cycle' in response.get_json()['error']['message']


def test_partial_user_update(client, admin, rep, auth_headers):
    response = client.put(f'/api/users/{rep.id}', headers=auth_headers(admin), json={'sub_role': 'Enterprise'})
    assert response.status_code == 200
    data = response.get_json()['data']
    assert data['sub_role'] == 'Enterprise'
    assert data['first_name'] == 'Alice'
    assert data['is_active'] is True


# --- deals ---

def test_create_deal_calculates_commission(client, rep, make_target, auth_headers):
    make_target(rep)
    response = client.post('/api/deals', headers=auth_headers(rep), json={
        'deal_name': 'Globex expansion', 'amount': 10000, 'close_date': '2025-01-20', 'status': 'closed_won'})

    assert response.status_code == 201
    data = response.get_json()['data']
    assert data['commission_amount'] == '1000.00'
    assert data['user_id'] == rep.id
    assert Commission.query.filter_by(deal_id=data['id']).count() == 1


def test_create_deal_validation(client, rep, auth_headers):
    response = client.post('/api/deals', headers=auth_headers(rep), json={
        'deal_name': 'Bad', 'amount': -5, 'close_date': '20/01/2025', 'category': 'maybe'})
    assert response.status_code == 400
    assert {'amount', 'close_date', 'category'} <= set(response.get_json()['error']['details'])


def test_rep_cannot_assign_deals_to_others(client, rep, manager, auth_headers):
    response = client.post('/api/deals', headers=auth_headers(rep), json={
        'deal_name': 'Sneaky', 'amount': 100, 'close_date': '2025-01-20', 'user_id': manager.id})
    assert response.status_code == 403


def test_duplicate_crm_id_conflicts(client, rep, make_deal, auth_headers):
    make_deal(rep, crm_id='HS-100', crm_type='hubspot')
    response = client.post('/api/deals', headers=auth_headers(rep), json={
        'deal_name': 'Again', 'amount': 100, 'close_date': '2025-01-20', 'crm_id': 'HS-100'})
    assert response.status_code == 409


def test_update_deal_to_lost_rejects_commission(client, rep, rep_commission, auth_headers):
    deal_id = rep_commission.deal_id
    response = client.put(f'/api/deals/{deal_id}', headers=auth_headers(rep), json={'status': 'closed_lost'})

    assert response.status_code == 200
    assert response.get_json()['data']['commission_amount'] is None
    assert db.session.get(Commission, rep_commission.id).status == 'rejected'


def test_reassigning_deal_moves_commission(client, manager, rep, make_user, make_target, rep_commission,
                                           auth_headers):
    bob = make_user('bob@acme.test', first_name='Bob', last_name='Stone', manager=manager)
    make_target(bob)
    response = client.put(f'/api/deals/{rep_commission.deal_id}', headers=auth_headers(manager),
                          json={'user_id': bob.id})

    assert response.status_code == 200
    assert response.get_json()['data']['user_id'] == bob.id
    assert db.session.get(Commission, rep_commission.id).user_id == bob.id

    def january_actual(user):
        return PeriodCommission.query.filter_by(user_id=user.id, period_start=date(2025, 1, 1),
                                                commission_type='actual').one().actual_amount

    assert january_actual(rep) == Decimal('0.00')
    assert january_actual(bob) == Decimal('10000.00')


def test_list_deals_filters(client, rep, make_deal, auth_headers):
    make_deal(rep, status='open', category='commit', close_date=date(2025, 2, 1))
    make_deal(rep, status='closed_won', close_date=date(2025, 3, 1))

    response = client.get('/api/deals?status=open', headers=auth_headers(rep))
    assert [d['category'] for d in response.get_json()['data']] == ['commit']
    response = client.get('/api/deals?from_date=2025-02-15', headers=auth_headers(rep))
    assert len(response.get_json()['data']) == 1
    assert response.get_json()['pagination']['total'] == 1


def test_delete_deal(client, rep, rep_commission, auth_headers):
    deal_id = rep_commission.deal_id
    response = client.delete(f'/api/deals/{deal_id}', headers=auth_headers(rep))
    assert response.status_code == 200
    assert db.session.get(Deal, deal_id) is None
    commission = db.session.get(Commission, rep_commission.id)
    assert commission.status == 'rejected'
    assert commission.deal_id is None


def test_other_teams_deals_are_hidden(client, rep, make_user, make_deal, auth_headers):
    bob = make_user('bob@acme.test', first_name='Bob', last_name='Smith')
    deal = make_deal(bob)
    assert client.get(f'/api/deals/{deal.id}', headers=auth_headers(rep)).status_code == 404


def test_import_deals(client, rep, manager, make_target, auth_headers):
    make_target(rep)
    csv = (
        "deal_name,amount,close_date,owner_email,status,crm_id\n"
        "Imported A,4000,2025-01-10,alice@acme.test,closed_won,SH-1\n"
        "Imported B,6000,2025-01-12,ALICE@acme.test,open,SH-2\n"
        "Unknown owner,100,2025-01-12,ghost@acme.test,open,SH-3\n"
    )
    response = client.post('/api/deals/import', headers=auth_headers(manager),
                           data={'file': (io.BytesIO(csv.encode()), 'deals.csv')},
                           content_type='multipart/form-data')

    assert response.status_code == 200
    data = response.get_json()['data']
    assert (data['created'], data['updated'], data['skipped']) == (2, 0, 1)
    assert Deal.query.filter_by(crm_id='SH-1').one().commission_amount == Decimal('400.00')

    # Re-importing updates by CRM id
    response = client.post('/api/deals/import', headers=auth_headers(manager),
                           data={'file': (io.BytesIO(csv.encode()), 'deals.csv')},
                           content_type='multipart/form-data')
    assert response.get_json()['data']['updated'] == 2


def test_import_rejects_invalid_file(client, rep, auth_headers):
    response = client.post('/api/deals/import', headers=auth_headers(rep),
                           data={'file': (io.BytesIO(b"deal_name\nx\n"), 'deals.csv')},
                           content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.get_json()['error']['details']['errors']

    response = client.post('/api/deals/import', headers=auth_headers(rep),
                           data={'file': (io.BytesIO(b"x"), 'deals.pdf')},
                           content_type='multipart/form-data')
    assert response.status_code == 400


# --- targets ---

def test_create_target_calculates_existing_deals(client, rep, manager, make_deal, auth_headers):
    deal = make_deal(rep, amount='5000')
    response = client.post('/api/targets', headers=auth_headers(manager), json={
        'user_id': rep.id, 'period_type': 'quarterly', 'period_start': '2025-01-01',
        'period_end': '2025-03-31', 'quota_amount': 30000, 'commission_rate': 0.08})

    assert response.status_code == 201
    body = response.get_json()
    assert body['data']['name'] == 'AF-Q1-2025'
    assert body['deals_calculated'] == 1
    assert db.session.get(Deal, deal.id).commission_amount == Decimal('400.00')


def test_rep_cannot_create_targets(client, rep, auth_headers):
    response = client.post('/api/targets', headers=auth_headers(rep), json={
        'user_id': rep.id, 'period_type': 'quarterly', 'period_start': '2025-01-01',
        'period_end': '2025-03-31', 'quota_amount': 30000, 'commission_rate': 0.08})
    assert response.status_code == 403


def test_overlapping_target_returns_conflict(client, rep, manager, make_target, auth_headers):
    make_target(rep)
    response = client.post('/api/targets', headers=auth_headers(manager), json={
        'user_id': rep.id, 'period_type': 'quarterly', 'period_start': '2025-02-01',
        'period_end': '2025-04-30', 'quota_amount': 30000, 'commission_rate': 0.08})
    assert response.status_code == 409


def test_target_detail_follows_team_visibility(client, rep, manager, make_user, make_target, auth_headers):
    teammate = make_user('bob@acme.test', first_name='Bob', last_name='Stone', manager=manager)
    theirs = make_target(teammate)
    role_target = make_target(role='sales_rep')

    assert client.get(f'/api/targets/{theirs.id}', headers=auth_headers(rep)).status_code == 404
    assert client.get(f'/api/targets/{theirs.id}', headers=auth_headers(manager)).status_code == 200
    assert client.get(f'/api/targets/{role_target.id}', headers=auth_headers(rep)).status_code == 200


def test_deactivate_target_cascades(client, rep, manager, make_target, auth_headers):
    annual = make_target(rep, period_type='annual', period_end=date(2025, 12, 31), quota_amount='120000')
    child = make_target(rep, parent=annual)

    response = client.patch(f'/api/targets/{annual.id}/deactivate', headers=auth_headers(manager))
    assert sorted(response.get_json()['data']['deactivated_ids']) == sorted([annual.id, child.id])

    response = client.get('/api/targets', headers=auth_headers(manager))
    assert response.get_json()['data'] == []
    response = client.get('/api/targets?active_only=false', headers=auth_headers(manager))
    assert len(response.get_json()['data']) == 2


def test_update_target_rate(client, rep, manager, make_target, auth_headers):
    target = make_target(rep)
    response = client.put(f'/api/targets/{target.id}', headers=auth_headers(manager),
                          json={'commission_rate': 0.12})
    assert response.status_code == 200
    assert response.get_json()['data']['commission_rate'] == '0.1200'


# --- commissions ---

def test_list_commissions_with_breakdown(client, manager, rep_commission, auth_headers):
    response = client.get('/api/commissions', headers=auth_headers(manager))
    body = response.get_json()
    assert [c['id'] for c in body['data']] == [rep_commission.id]
    assert body['data'][0]['deal_name'] == 'Widget deal'
    assert body['summary']['status_breakdown']['calculated'] == {'count': 1, 'amount': '1000.00'}

    response = client.get('/api/commissions?status=approved', headers=auth_headers(manager))
    assert response.get_json()['data'] == []


def test_commission_detail_flags(client, manager, admin, rep_commission, auth_headers):
    response = client.get(f'/api/commissions/{rep_commission.id}', headers=auth_headers(manager))
    data = response.get_json()['data']
    assert data['can_approve'] is True
    assert data['can_pay'] is False
    assert [h['action'] for h in data['history']] == ['calculated']


def test_commission_actions(client, manager, admin, rep_commission, auth_headers):
    url = f'/api/commissions/{rep_commission.id}/action'

    response = client.post(url, headers=auth_headers(manager), json={'action': 'approve'})
    assert response.get_json()['data']['status'] == 'approved'

    response = client.post(url, headers=auth_headers(manager), json={'action': 'pay', 'payment_reference': 'P-1'})
    assert response.status_code == 403

    response = client.post(url, headers=auth_headers(admin), json={'action': 'pay'})
    assert response.status_code == 400

    response = client.post(url, headers=auth_headers(admin), json={'action': 'pay', 'payment_reference': 'P-1'})
    assert response.get_json()['data']['status'] == 'paid'

    response = client.post(url, headers=auth_headers(admin), json={'action': 'reject'})
    assert response.status_code == 400
    assert response.get_json()['error']['code'] == 'INVALID_TRANSITION'


def test_rep_cannot_approve(client, rep, rep_commission, auth_headers):
    response = client.post(f'/api/commissions/{rep_commission.id}/action', headers=auth_headers(rep),
                           json={'action': 'approve'})
    assert response.status_code == 403


def test_bulk_action_and_pending_count(client, manager, rep, make_deal, rep_commission, auth_headers):
    second = handle_deal_change(make_deal(rep, amount='2000', name='Second'))

    response = client.get('/api/commissions/pending-count', headers=auth_headers(manager))
    assert response.get_json()['data']['count'] == 2

    response = client.post('/api/commissions/bulk-action', headers=auth_headers(manager),
                           json={'commission_ids': [rep_commission.id, second.id], 'action': 'approve'})
    assert response.get_json()['data']['processed_count'] == 2

    response = client.get('/api/commissions/pending-count', headers=auth_headers(manager))
    assert response.get_json()['data']['count'] == 0

    response = client.post('/api/commissions/bulk-action', headers=auth_headers(manager),
                           json={'commission_ids': [rep_commission.id], 'action': 'reject'})
    assert response.status_code == 400


def test_recalculate_endpoint(client, session, manager, rep_commission, auth_headers):
    rep_commission.target.commission_rate = Decimal('0.05')
    session.commit()
    response = client.post(f'/api/commissions/{rep_commission.id}/recalculate', headers=auth_headers(manager))
    assert response.get_json()['data']['commission_amount'] == '500.00'


def test_summary_and_periods(client, rep, rep_commission, auth_headers):
    response = client.get('/api/commissions/summary?period_start=2025-01-01&period_end=2025-03-31',
                          headers=auth_headers(rep))
    data = response.get_json()['data']
    assert data['total_commission'] == '1000.00'
    assert data['user_id'] == rep.id

    response = client.get('/api/commissions/summary', headers=auth_headers(rep))
    assert response.status_code == 400

    response = client.get('/api/commissions/periods', headers=auth_headers(rep))
    types = sorted(p['commission_type'] for p in response.get_json()['data'])
    assert types == ['actual', 'projected']


def test_export_csv(client, manager, rep_commission, auth_headers):
    response = client.post('/api/commissions/export', headers=auth_headers(manager), json={'format': 'detailed_csv'})
    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert 'attachment' in response.headers['Content-Disposition']
    lines = response.get_data(as_text=True).strip().splitlines()
    assert lines[0].startswith('commission_id,deal_id,deal_name')
    assert 'Alice Foster' in lines[1]

    response = client.post('/api/commissions/export', headers=auth_headers(manager), json={})
    assert response.get_data(as_text=True).splitlines()[0] == \
        'commission_id,deal_name,rep_name,deal_amount,commission_amount,status,period_end'


# --- settings & health ---

def test_update_setting_resets_config(client, admin, auth_headers):
    assert CalculationConfig().CATEGORY_WEIGHTS['commit'] == 0.75
    response = client.put('/api/settings/CATEGORY_WEIGHTS', headers=auth_headers(admin),
                          json={'value': {'pipeline': 0.1, 'best_case': 0.3, 'commit': 0.8}})
    assert response.status_code == 200
    assert CalculationConfig._instance is None
    assert CalculationConfig().CATEGORY_WEIGHTS['commit'] == 0.8


def test_invalid_setting_value(client, admin, manager, auth_headers):
    response = client.put('/api/settings/DEFAULT_CATEGORY_WEIGHT', headers=auth_headers(admin),
                          json={'value': 'a lot'})
    assert response.status_code == 400
    response = client.put('/api/settings/DEFAULT_CATEGORY_WEIGHT', headers=auth_headers(manager),
                          json={'value': '0.2'})
    assert response.status_code == 403
    response = client.put('/api/settings/NOPE', headers=auth_headers(admin), json={'value': '1'})
    assert response.status_code == 404


@pytest.mark.parametrize('key,value', [
    ('CATEGORY_WEIGHTS', [0.1, 0.2]),
    ('CATEGORY_WEIGHTS', {'commit': 1.5}),
    ('CATEGORY_WEIGHTS', {'commit': 'high'}),
    ('CLOSED_WON_STAGES', '"closed won"'),
    ('CLOSED_WON_STAGES', [1, 2]),
    ('DEFAULT_CATEGORY_WEIGHT', '2'),
    ('DEFAULT_PAYMENT_SCHEDULE', 'fortnightly'),
])
def test_setting_with_wrong_shape_is_refused(client, admin, rep, make_target, auth_headers, key, value):
    response = client.put(f'/api/settings/{key}', headers=auth_headers(admin), json={'value': value})
    assert response.status_code == 400

    make_target(rep)
    response = client.post('/api/deals', headers=auth_headers(rep), json={
        'deal_name': 'Still works', 'amount': 100, 'close_date': '2025-01-20', 'status': 'open'})
    assert response.status_code == 201


def test_admin_sets_hubspot_portal(client, admin, rep, auth_headers):
    response = client.put('/api/company', headers=auth_headers(admin), json={'hubspot_portal_id': '424242'})
    assert response.status_code == 200
    assert response.get_json()['data']['hubspot_portal_id'] == '424242'
    assert response.get_json()['data']['name'] == 'Acme Ltd'

    assert client.put('/api/company', headers=auth_headers(rep), json={'name': 'Mine'}).status_code == 403
    assert client.get('/api/company', headers=auth_headers(rep)).get_json()['data']['hubspot_portal_id'] == '424242'


def test_hubspot_portal_belongs_to_one_company(client, session, admin, auth_headers):
    session.add(Company(name='Globex', hubspot_portal_id='424242'))
    session.commit()
    response = client.put('/api/company', headers=auth_headers(admin), json={'hubspot_portal_id': '424242'})
    assert response.status_code == 409


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()['data']['status'] == 'ok'


def test_unknown_route_uses_error_shape(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json()['success'] is False
