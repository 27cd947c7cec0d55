"""
LOAN ROUTES
===========

Uses loan_service for all operations.
Implements strict state machine.
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.routes.responses import success, error, request_data
from app.services.authorization_service import AuthorizationError
from app.services.loan_service import (
    LoanError, LoanNotFoundError, create_loan_request, list_loans, get_loan, pledge_to_loan,
    activate_loan, repay_installment, get_repayments, process_loan_transfers
)

loans_bp = Blueprint('loans', __name__, url_prefix='/api/loans')


def _loan_error(e):
    if isinstance(e, LoanNotFoundError):
        return error(str(e), 404)
    if isinstance(e, AuthorizationError):
        return error(str(e), 403)
    return error(str(e), 400)


def _int_field(data, name):
    try:
        return int(data.get(name))
    except (TypeError, ValueError):
        raise LoanError(f"{name} is required")


# ============== CREATE LOAN REQUEST ==============
@loans_bp.route('', methods=['POST'])
@login_required
def create():
    data = request_data()
    try:
        loan = create_loan_request(_int_field(data, 'kameti_id'), current_user.id, data)
        return success(201, message='Loan request submitted successfully',
                       loan=loan.to_dict(include_details=True))
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


@loans_bp.route('', methods=['GET'])
@login_required
def list_all():
    try:
        loans = list_loans(
            current_user.id,
            _int_field(request.args, 'kameti_id'),
            status=request.args.get('status'),
            min_amount=request.args.get('min_amount', type=float),
            max_amount=request.args.get('max_amount', type=float),
            risk_level=request.args.get('risk_level')
        )
        return success(loans=[loan.to_dict() for loan in loans])
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


# ============== VIEW LOAN DETAILS ==============
@loans_bp.route('/<int:loan_id>')
@login_required
def details(loan_id):
    try:
        loan = get_loan(loan_id, current_user.id)
        return success(loan=loan.to_dict(include_details=True))
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


# ============== PLEDGE ==============
@loans_bp.route('/<int:loan_id>/pledge', methods=['POST'])
@login_required
def pledge(loan_id):
    try:
        result = pledge_to_loan(loan_id, current_user.id, request_data().get('amount'))
        return success(
            201,
            message='Redirect to PayFast to complete your pledge',
            pledge=result['pledge'].to_dict(),
            payment=result['payment'].to_dict(),
            payment_url=result['payment_url'],
            params=result['params']
        )
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


# ============== ACTIVATE ==============
@loans_bp.route('/<int:loan_id>/activate', methods=['POST'])
@login_required
def activate(loan_id):
    try:
        loan = activate_loan(loan_id, current_user.id)
        return success(message='Loan activated', loan=loan.to_dict(include_details=True))
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


# ============== REPAYMENT ==============
@loans_bp.route('/<int:loan_id>/repay', methods=['POST'])
@login_required
def repay(loan_id):
    data = request_data()
    try:
        repayment = repay_installment(loan_id, current_user.id,
                                      _int_field(data, 'repayment_id'),
                                      amount=data.get('amount'),
                                      tx_id=data.get('tx_id'))
        return success(message=f'Installment {repayment.installment} paid',
                       repayment=repayment.to_dict(),
                       loan=repayment.loan.to_dict())
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


@loans_bp.route('/<int:loan_id>/repayments')
@login_required
def repayments(loan_id):
    try:
        return success(repayments=[r.to_dict() for r in get_repayments(loan_id, current_user.id)])
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)


# ============== PLEDGE TRANSFERS ==============
@loans_bp.route('/transfers', methods=['POST'])
@login_required
def transfers():
    data = request_data()
    try:
        payout_round = data.get('round')
        result = process_loan_transfers(_int_field(data, 'kameti_id'), current_user.id,
                                        int(payout_round) if payout_round else None)
        return success(message=f"{result['transferred']} pledge(s) transferred", **result)
    except (LoanError, AuthorizationError) as e:
        return _loan_error(e)
    except ValueError:
        return error('round must be a number')
