"""
PAYMENT ROUTES
==============

Contributions through PayFast, the gateway IPN callback and
admin-recorded offline payments.
"""

import logging

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.routes.responses import success, error, request_data
from app.services.authorization_service import AuthorizationError
from app.services.payfast_service import SignatureError
from app.services.payment_service import (
    PaymentError, PaymentNotFoundError, initiate_payment, handle_notification,
    record_manual_payment, get_user_payments, get_kameti_payments, get_payment_statistics,
    get_payment_records, get_overdue_payments, get_payment_by_code, get_payment_by_transaction
)

payments_bp = Blueprint('payments', __name__, url_prefix='/api/payments')

logger = logging.getLogger(__name__)


def _payment_error(e):
    if isinstance(e, PaymentNotFoundError):
        return error(str(e), 404)
    if isinstance(e, AuthorizationError):
        return error(str(e), 403)
    return error(str(e), 400)


# ============== INITIATE ==============
@payments_bp.route('/initiate', methods=['POST'])
@login_required
def initiate():
    try:
        kameti_id = int(request_data().get('kameti_id'))
    except (TypeError, ValueError):
        return error('kameti_id is required')

    try:
        result = initiate_payment(kameti_id, current_user.id)
        return success(
            message='Redirect to PayFast to complete the payment',
            payment=result['payment'].to_dict(),
            record=result['record'].to_dict(),
            payment_url=result['payment_url'],
            params=result['params']
        )
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)


# ============== GATEWAY CALLBACK ==============
@payments_bp.route('/notify', methods=['POST'])
def notify():
    """PayFast IPN. Form-encoded, no session."""
    params = request.form.to_dict()
    logger.info("PayFast IPN received for %s (%s)", params.get('m_payment_id'),
                params.get('payment_status'))

    try:
        result = handle_notification(params)
    except SignatureError as e:
        return error(str(e), 400)
    except PaymentError as e:
        return _payment_error(e)

    return success(status=result['status'], transaction_id=result['payment'].transaction_id)


# ============== MANUAL PAYMENTS ==============
@payments_bp.route('/manual', methods=['POST'])
@login_required
def manual():
    data = request_data()
    try:
        kameti_id = int(data.get('kameti_id'))
        member_user_id = int(data.get('user_id'))
    except (TypeError, ValueError):
        return error('kameti_id and user_id are required')

    try:
        payment = record_manual_payment(kameti_id, current_user.id, member_user_id,
                                        data.get('method'), notes=data.get('notes'))
        return success(201, message='Payment recorded', payment=payment.to_dict())
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)


# ============== QUERIES ==============
@payments_bp.route('/history')
@login_required
def history():
    return success(payments=[p.to_dict() for p in get_user_payments(current_user.id)])


@payments_bp.route('/kameti/<int:kameti_id>')
@login_required
def kameti_payments(kameti_id):
    try:
        payments = get_kameti_payments(kameti_id, current_user.id)
        return success(payments=[p.to_dict() for p in payments])
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)


@payments_bp.route('/statistics')
@login_required
def statistics():
    try:
        stats = get_payment_statistics(current_user.id,
                                       kameti_id=request.args.get('kameti_id', type=int))
        return success(statistics=stats)
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)


@payments_bp.route('/records')
@login_required
def records():
    try:
        result = get_payment_records(current_user.id,
                                     kameti_id=request.args.get('kameti_id', type=int))
        return success(records=[r.to_dict() for r in result])
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)


@payments_bp.route('/overdue')
@login_required
def overdue():
    return success(overdue=get_overdue_payments(current_user.id))


@payments_bp.route('/transaction/<transaction_id>')
@login_required
def by_transaction(transaction_id):
    try:
        payment = get_payment_by_transaction(transaction_id, current_user.id)
        return success(payment=payment.to_dict())
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)


@payments_bp.route('/<payment_code>')
@login_required
def by_code(payment_code):
    try:
        payment = get_payment_by_code(payment_code, current_user.id)
        return success(payment=payment.to_dict())
    except (PaymentError, AuthorizationError) as e:
        return _payment_error(e)
