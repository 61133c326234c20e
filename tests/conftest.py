import os
import sys
import tempfile
from decimal import Decimal

import pytest
import requests

# Ensure project root is on sys.path for module resolution
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from app import create_app, issue_identity_token
from database import Campaign, CampaignCoupon, NumberState, db
from pagamentos_gateway import BaseGateway


class FakeResponse:
    """Resposta mínima no formato de requests.Response."""

    def __init__(self, status_code=200, data=None, text=''):
        self.status_code = status_code
        self._data = data
        self.text = text
        self.content = b'{}' if data is not None else text.encode('utf-8')

    def json(self):
        if self._data is None:
            raise ValueError('no json')
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} Error', response=self)


class FakeSession:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.calls.append({'method': method, 'url': url, 'json': json, 'headers': headers, 'timeout': timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeGateway(BaseGateway):
    """Gateway controlado pelo teste: devolve as respostas enfileiradas em orders."""

    def __init__(self):
        self.orders = []
        self.created = []
        self.withdrawals = []
        self.authenticated = 0

    def authenticate(self):
        self.authenticated += 1
        return 'fake-token'

    def create_order(self, token, body):
        self.created.append(body)
        response = self.orders.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def withdraw(self, token, body):
        self.withdrawals.append(body)
        return {'external_id': 'wd-1', 'status': 'pending', 'amount': body.get('amount')}

    def balance(self, token):
        return {'balance': 12.5, 'currency': 'BRL'}


@pytest.fixture
def test_app(tmp_path):
    # Create a temporary sqlite database for tests
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    app = create_app({
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{db_path}',
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'LOG_FILE': str(tmp_path / 'test.log'),
        'RATELIMIT_ENABLED': False,
        'FORCE_HTTPS': False,
        'GATEWAY_PROVIDER': 'sandbox',
        'HORSEPAY_WEBHOOK_TOKEN': 'webhook-test-token',
        'WEBHOOK_PUBLIC_URL': 'https://rifa.example.com/webhook/pix',
        'DEFAULT_CAMPAIGN_ID': 'campanha-teste',
        'DEPOSIT_RETRY_DELAY_SECONDS': 0,
    })

    yield app

    # Cleanup
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    os.close(db_fd)
    os.remove(db_path)


@pytest.fixture
def client(test_app):
    return test_app.test_client()


@pytest.fixture
def ctx(test_app):
    with test_app.app_context():
        yield test_app


@pytest.fixture
def campaign(ctx):
    """Campanha pequena (1..1000, mínimo 1) com cupons ativos e um inativo."""
    row = Campaign(
        id='campanha-teste',
        title='Rifa Teste',
        price_per_cota=Decimal('0.99'),
        min_purchase_quantity=1,
        number_start=1,
        number_end=1000,
        status='active',
    )
    row.coupons = [
        CampaignCoupon(code='PROMO10', position=0, discount_type='percent', discount_value=Decimal('10'), active=True),
        CampaignCoupon(code='FIXO10', position=1, discount_type='fixed', discount_value=Decimal('10'), active=True),
        CampaignCoupon(code='OFF50', position=2, discount_type='percent', discount_value=Decimal('50'), active=False),
    ]
    db.session.add(row)
    db.session.commit()
    return row


@pytest.fixture
def number_state(ctx):
    def _write(number, status, reserved_by=None, expires_at_ms=None, owner_uid=None):
        db.session.add(NumberState(
            campaign_id='campanha-teste',
            number=number,
            status=status,
            reserved_by=reserved_by,
            reservation_expires_at_ms=expires_at_ms,
            owner_uid=owner_uid,
        ))
        db.session.commit()
    return _write


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def auth_header(test_app):
    def _header(uid):
        with test_app.app_context():
            token = issue_identity_token(uid)
        return {'Authorization': f'Bearer {token}'}
    return _header
