"""
PAYOUT ROUTES
=============

Round readiness, recipient selection and payout release.
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.routes.responses import success, error, request_data
from app.services.authorization_service import AuthorizationError
from app.services.payout_service import (
    PayoutError, PayoutNotFoundError, get_readiness, list_eligible_recipients,
    preview_recipient, process_payout, get_payout_history
)
from app.utils import as_bool

payouts_bp = Blueprint('payouts', __name__, url_prefix='/api/payouts')


def _payout_error(e):
    if isinstance(e, PayoutNotFoundError):
        return error(str(e), 404)
    if isinstance(e, AuthorizationError):
        return error(str(e), 403)
    return error(str(e), 400)


def _recipient_id():
    value = request_data().get('recipient_id')
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PayoutError("recipient_id must be a user id")


@payouts_bp.route('/<int:kameti_id>/readiness')
@login_required
def readiness(kameti_id):
    try:
        result = get_readiness(kameti_id, current_user.id,
                               send_reminders=as_bool(request.args.get('send_reminders')))
        return success(readiness=result)
    except (PayoutError, AuthorizationError) as e:
        return _payout_error(e)


@payouts_bp.route('/<int:kameti_id>/eligible')
@login_required
def eligible(kameti_id):
    try:
        members = list_eligible_recipients(kameti_id, current_user.id)
        return success(eligible=[m.to_dict() for m in members])
    except (PayoutError, AuthorizationError) as e:
        return _payout_error(e)


@payouts_bp.route('/<int:kameti_id>/select', methods=['POST'])
@login_required
def select(kameti_id):
    try:
        member, method = preview_recipient(kameti_id, current_user.id, _recipient_id())
        return success(recipient=member.to_dict(), selection_method=method)
    except (PayoutError, AuthorizationError) as e:
        return _payout_error(e)


# ============== PROCESS PAYOUT ==============
@payouts_bp.route('/<int:kameti_id>/process', methods=['POST'])
@login_required
def process(kameti_id):
    try:
        result = process_payout(kameti_id, current_user.id, _recipient_id())
    except (PayoutError, AuthorizationError) as e:
        return _payout_error(e)

    payout = result['payout']
    if result['is_completed']:
        message = 'Final payout processed. The kameti is now closed.'
    else:
        message = f"Payout processed. Round {result['next_round']} has started."

    return success(
        message=message,
        payout=payout.to_dict(),
        next_round=result['next_round'],
        is_completed=result['is_completed'],
        kameti_status=result['kameti_status'],
        transfers=result['transfers']
    )


@payouts_bp.route('/<int:kameti_id>/history')
@login_required
def history(kameti_id):
    try:
        payouts = get_payout_history(kameti_id, current_user.id,
                                     limit=request.args.get('limit', 10, type=int))
        return success(payouts=[p.to_dict() for p in payouts])
    except (PayoutError, AuthorizationError) as e:
        return _payout_error(e)
