"""Tests for PayFast request signing and IPN verification."""

import hashlib
from types import SimpleNamespace

import pytest

from app.services.payfast_service import (
    SignatureError, build_payment_request, generate_signature, validate_notification,
    verify_signature
)


def test_signature_matches_manual_md5():
    params = {'merchant_id': '10000100', 'amount': '5000.00', 'item_name': 'Kameti Round 1'}
    expected = hashlib.md5(
        b'amount=5000.00&item_name=Kameti%20Round%201&merchant_id=10000100'
        b'&passphrase=secret%20phrase'
    ).hexdigest()
    assert generate_signature(params, 'secret phrase') == expected


def test_signature_ignores_order_empty_values_and_signature():
    first = {'b': '2', 'a': '1', 'empty': '', 'none': None}
    second = {'a': '1', 'b': '2', 'signature': 'whatever'}
    assert generate_signature(first) == generate_signature(second)
    assert generate_signature(first) == hashlib.md5(b'a=1&b=2').hexdigest()


def test_passphrase_changes_signature():
    params = {'a': '1'}
    assert generate_signature(params) != generate_signature(params, 'pass')


def test_verify_signature():
    params = {'m_payment_id': 'KAMETI-X', 'amount_gross': '10.00'}
    params['signature'] = generate_signature(params, 'pass')

    assert verify_signature(params, 'pass')
    assert not verify_signature(params, 'other')
    assert not verify_signature({'m_payment_id': 'KAMETI-X'}, 'pass')


def test_build_payment_request(app):
    payer = SimpleNamespace(first_name='Ayesha', last_name='', email='ayesha@example.com')
    with app.test_request_context():
        url, params = build_payment_request('KAMETI-TEST-1', 1500, payer,
                                            item_name='Kameti Test - Round 1',
                                            item_description='Contribution')

    assert 'name_last' not in params
    assert params['amount'] == '1500.00'
    assert params['return_url'].endswith('/payment-success?transaction_id=KAMETI-TEST-1')
    assert verify_signature(params, app.config['PAYFAST_PASSPHRASE'])
    assert url.startswith(app.config['PAYFAST_PROCESS_URL'])
    assert 'item_name=Kameti%20Test%20-%20Round%201' in url


def test_validate_notification(app):
    unsigned = {'m_payment_id': 'KAMETI-X', 'payment_status': 'COMPLETE'}

    with app.app_context():
        with pytest.raises(SignatureError):
            validate_notification(unsigned)

        app.config['PAYFAST_VERIFY_SIGNATURE'] = False
        assert validate_notification(unsigned) is True


def test_signature_keeps_surrounding_spaces():
    padded = {'item_name': ' Kameti '}
    assert generate_signature(padded) == hashlib.md5(b'item_name=%20Kameti%20').hexdigest()
    assert generate_signature(padded) != generate_signature({'item_name': 'Kameti'})
