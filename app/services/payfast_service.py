"""
PAYFAST GATEWAY
===============

Builds signed redirect parameters and verifies IPN callbacks.

Signature: drop `signature` and empty values, sort the keys, join
`key=urlencoded(value)` with '&', append the passphrase when one is
configured, then MD5.
"""

import hashlib
import logging
from urllib.parse import quote

from flask import current_app

logger = logging.getLogger(__name__)

# encodeURIComponent-compatible: spaces as %20
SAFE_CHARS = "-_.!~*'()"


class GatewayError(Exception):
    """Base exception for gateway operations"""
    pass


class SignatureError(GatewayError):
    """Raised when an IPN signature does not match"""
    pass


def _encode(value):
    return quote(str(value), safe=SAFE_CHARS)


def generate_signature(params, passphrase=None):
    filtered = {
        key: value for key, value in params.items()
        if key != 'signature' and value not in (None, '')
    }
    query = '&'.join(f"{key}={_encode(filtered[key])}" for key in sorted(filtered))
    if passphrase:
        query += f"&passphrase={_encode(passphrase)}"
    return hashlib.md5(query.encode('utf-8')).hexdigest()


def verify_signature(params, passphrase=None):
    received = params.get('signature')
    if not received:
        return False
    return received == generate_signature(params, passphrase)


def build_payment_request(transaction_id, amount, user, item_name, item_description,
                          custom_fields=None):
    """
    Return (payment_url, params) for redirecting the payer to PayFast.

    custom_fields maps custom_str1..custom_str5 to values.
    """
    config = current_app.config
    frontend = config['FRONTEND_URL'].rstrip('/')
    backend = config['BACKEND_URL'].rstrip('/')

    params = {
        'merchant_id': config['PAYFAST_MERCHANT_ID'],
        'merchant_key': config['PAYFAST_MERCHANT_KEY'],
        'return_url': f"{frontend}/payment-success?transaction_id={transaction_id}",
        'cancel_url': f"{frontend}/payment-cancelled?transaction_id={transaction_id}",
        'notify_url': f"{backend}/api/payments/notify",
        'name_first': user.first_name,
        'name_last': user.last_name,
        'email_address': user.email,
        'm_payment_id': transaction_id,
        'amount': f"{amount:.2f}",
        'item_name': item_name[:100],
        'item_description': item_description[:255],
    }
    params.update(custom_fields or {})
    params = {key: value for key, value in params.items() if value not in (None, '')}
    params['signature'] = generate_signature(params, config.get('PAYFAST_PASSPHRASE'))

    query = '&'.join(f"{key}={_encode(value)}" for key, value in params.items())
    payment_url = f"{config['PAYFAST_PROCESS_URL']}?{query}"

    logger.info("PayFast request built for %s (amount %.2f)", transaction_id, amount)
    return payment_url, params


def validate_notification(params):
    """Raise SignatureError when signature checking is on and the IPN is not signed by us."""
    config = current_app.config
    if not config.get('PAYFAST_VERIFY_SIGNATURE', True):
        return True

    if not verify_signature(params, config.get('PAYFAST_PASSPHRASE')):
        logger.warning("Rejected PayFast IPN with invalid signature for %s",
                       params.get('m_payment_id'))
        raise SignatureError("Invalid signature")
    return True
