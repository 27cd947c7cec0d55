"""Shared test fixtures for the eKameti API tests."""

import shutil
from datetime import date

import pytest

from app import create_app
from app.extensions import db
from app.services.payfast_service import generate_signature
from config import TestConfig


@pytest.fixture
def app():
    """Application with a fresh in-memory database."""
    app = create_app(TestConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
    shutil.rmtree(app.config['UPLOAD_FOLDER'], ignore_errors=True)


@pytest.fixture
def make_client(app):
    """Register a user and return a test client logged in as that user."""
    def _make(full_name='Ali Khan', email=None, password='secret123', **extra):
        email = email or f"{full_name.split()[0].lower()}@example.com"
        client = app.test_client()
        response = client.post('/api/auth/register', json={
            'full_name': full_name, 'email': email, 'password': password, **extra
        })
        assert response.status_code == 201, response.get_json()

        response = client.post('/api/auth/login', json={'email': email, 'password': password})
        assert response.status_code == 200
        client.user_id = response.get_json()['user']['id']
        return client
    return _make


def kameti_payload(**overrides):
    data = {
        'name': 'Office Committee',
        'description': 'Monthly savings among office colleagues',
        'amount': 5000,
        'members_count': 3,
        'start_date': date.today().isoformat(),
        'contribution_frequency': 'monthly',
        'payout_order': 'sequential',
    }
    data.update(overrides)
    return data


@pytest.fixture
def create_kameti():
    def _create(client, **overrides):
        response = client.post('/api/kametis', json=kameti_payload(**overrides))
        assert response.status_code == 201, response.get_json()
        return response.get_json()['kameti']
    return _create


@pytest.fixture
def full_kameti(make_client, create_kameti):
    """An Active three-member kameti: (kameti, admin, [member clients])."""
    admin = make_client('Ayesha Malik')
    members = [make_client('Bilal Ahmed'), make_client('Sana Riaz')]
    kameti = create_kameti(admin)
    for member in members:
        response = member.post(f"/api/kametis/{kameti['id']}/join")
        assert response.status_code == 200, response.get_json()
    return kameti, admin, members


def sign_ipn(params):
    signed = dict(params)
    signed['signature'] = generate_signature(signed, TestConfig.PAYFAST_PASSPHRASE)
    return signed


@pytest.fixture
def send_ipn(app):
    """Post a signed PayFast IPN for a payment returned by an initiate call."""
    gateway = app.test_client()

    def _send(payment, status='COMPLETE', amount=None):
        params = sign_ipn({
            'm_payment_id': payment['transaction_id'],
            'pf_payment_id': f"PF{payment['id']}",
            'payment_status': status,
            'amount_gross': f"{amount if amount is not None else payment['amount']:.2f}",
        })
        return gateway.post('/api/payments/notify', data=params)
    return _send


@pytest.fixture
def pay(send_ipn):
    """Initiate a contribution for the client and complete it through the IPN."""
    def _pay(client, kameti_id):
        response = client.post('/api/payments/initiate', json={'kameti_id': kameti_id})
        assert response.status_code == 200, response.get_json()
        payment = response.get_json()['payment']
        response = send_ipn(payment)
        assert response.status_code == 200, response.get_json()
        return payment
    return _pay


@pytest.fixture
def kameti_data():
    return kameti_payload
