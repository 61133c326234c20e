from decimal import Decimal

from app import create_app, read_identity_token
from database import Campaign, Order, User, db


def seed_campaign(test_app):
    with test_app.app_context():
        db.session.add(Campaign(
            id='campanha-teste', price_per_cota=Decimal('0.99'), min_purchase_quantity=1,
            number_start=1, number_end=1000,
        ))
        db.session.commit()


def make_admin(test_app, uid='admin-1'):
    with test_app.app_context():
        db.session.add(User(id=uid, name='Admin', role='admin'))
        db.session.commit()


def test_public_operation_without_login(client, test_app):
    seed_campaign(test_app)

    response = client.post('/api/getNumberWindow', json={'pageSize': 10})

    assert response.status_code == 200
    body = response.get_json()
    assert body['result']['pageEnd'] == 10
    assert len(body['result']['numbers']) == 10


def test_callable_envelope_is_accepted(client, test_app):
    seed_campaign(test_app)
    response = client.post('/api/getNumberWindow', json={'data': {'pageSize': 5}})
    assert response.get_json()['result']['pageSize'] == 5


def test_protected_operation_requires_token(client, test_app):
    seed_campaign(test_app)

    response = client.post('/api/reserveNumbers', json={'numbers': [1, 2]})
    assert response.status_code == 401
    assert response.get_json()['error']['kind'] == 'unauthenticated'

    response = client.post(
        '/api/reserveNumbers', json={'numbers': [1, 2]}, headers={'Authorization': 'Bearer forged.token'},
    )
    assert response.status_code == 401


def test_reserve_numbers_over_http(client, test_app, auth_header):
    seed_campaign(test_app)

    response = client.post('/api/reserveNumbers', json={'numbers': [3, 1, 2]}, headers=auth_header('buyer-1'))

    assert response.status_code == 200
    assert response.get_json()['result']['numbers'] == [1, 2, 3]

    conflict = client.post('/api/reserveNumbers', json={'numbers': [2]}, headers=auth_header('buyer-2'))
    assert conflict.status_code == 400
    assert conflict.get_json()['error']['kind'] == 'failed-precondition'


def test_invalid_argument_maps_to_400(client, test_app, auth_header):
    seed_campaign(test_app)
    response = client.post('/api/reserveNumbers', json={'numbers': 'todos'}, headers=auth_header('buyer-1'))
    assert response.status_code == 400
    assert response.get_json()['error'] == {'kind': 'invalid-argument', 'message': 'numbers deve ser uma lista.'}


def test_admin_operations_check_role(client, test_app, auth_header):
    make_admin(test_app)

    response = client.post('/api/getDashboardSummary', json={}, headers=auth_header('buyer-1'))
    assert response.status_code == 403
    assert response.get_json()['error']['kind'] == 'permission-denied'

    response = client.post('/api/upsertCampaignSettings', json={'title': 'Rifa'}, headers=auth_header('admin-1'))
    assert response.status_code == 200
    assert response.get_json()['result']['title'] == 'Rifa'


def test_deposit_flow_over_http(client, test_app, auth_header, fake_gateway):
    seed_campaign(test_app)
    test_app.extensions['payment_gateway'] = fake_gateway
    fake_gateway.orders = [{'external_id': 'ext-1', 'copy_past': 'PIXCOPY'}]
    headers = auth_header('buyer-1')

    client.post('/api/reserveNumbers', json={'numbers': [1, 2, 3]}, headers=headers)
    response = client.post('/api/createPixDeposit', json={'payerName': 'Maria Souza'}, headers=headers)

    assert response.status_code == 200
    assert response.get_json()['result']['externalId'] == 'ext-1'

    webhook = client.post('/webhook/pix?token=webhook-test-token', json={'external_id': 'ext-1', 'status': 'paid'})
    assert webhook.get_json() == {'ok': True}

    snapshot = client.post('/api/getPublicSalesSnapshot', json={}).get_json()['result']
    assert snapshot['soldNumbers'] == 3
    assert snapshot['paidOrders'] == 1

    window = client.post('/api/getNumberWindow', json={'pageSize': 5}).get_json()['result']
    assert window['smallestAvailableNumber'] == 4

    ranking = client.post('/api/getChampionsRanking', json={}).get_json()['result']
    assert ranking['items'][0]['cotas'] == 3


def test_unexpected_error_is_hidden(client, test_app, auth_header, fake_gateway):
    test_app.extensions['payment_gateway'] = fake_gateway

    def broken(token):
        raise RuntimeError('segredo interno')

    fake_gateway.balance = broken
    response = client.post('/api/getBalance', json={}, headers=auth_header('buyer-1'))

    assert response.status_code == 500
    error = response.get_json()['error']
    assert error['kind'] == 'internal'
    assert 'segredo' not in error['message']


def test_unknown_route_returns_json_404(client):
    response = client.post('/api/naoExiste', json={})
    assert response.status_code == 404
    assert response.get_json()['error']['kind'] == 'not-found'


def test_security_headers(client):
    response = client.post('/api/getLatestTopBuyersDraw', json={})
    assert response.status_code == 200
    assert 'Content-Security-Policy' in response.headers
    assert response.headers['X-Frame-Options'] == 'SAMEORIGIN'


def test_create_admin_cli(test_app):
    test_app.config['ADMIN_UID'] = 'admin-uid'

    result = test_app.test_cli_runner().invoke(args=['create-admin'])

    assert result.exit_code == 0
    with test_app.app_context():
        assert db.session.get(User, 'admin-uid').role == 'admin'


def test_create_admin_cli_requires_uid(test_app):
    test_app.config['ADMIN_UID'] = ''
    result = test_app.test_cli_runner().invoke(args=['create-admin'])
    assert result.exit_code != 0


def test_issue_token_cli(test_app):
    result = test_app.test_cli_runner().invoke(args=['issue-token', 'buyer-9'])

    assert result.exit_code == 0
    with test_app.test_request_context():
        assert read_identity_token(result.output.strip()) == 'buyer-9'


def test_rate_limit_on_withdraw(tmp_path):
    app = create_app({
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'limit.db'}",
        'TESTING': True,
        'LOG_FILE': str(tmp_path / 'limit.log'),
        'RATELIMIT_ENABLED': True,
        'RATELIMIT_STORAGE_URI': 'memory://',
    })
    client = app.test_client()

    statuses = [client.post('/api/requestWithdraw', json={}).status_code for _ in range(6)]

    assert statuses[:5] == [401] * 5
    assert statuses[5] == 429
    assert client.post('/api/requestWithdraw', json={}).get_json()['error']['kind'] == 'resource-exhausted'
    with app.app_context():
        assert Order.query.count() == 0
        db.session.remove()
        db.engine.dispose()
