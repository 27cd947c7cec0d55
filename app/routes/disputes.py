"""
DISPUTE ROUTES
==============

Members raise and follow their own disputes here. Kameti admins act on
them through the admin blueprint.
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.models import DISPUTE_REASON_LABELS
from app.routes.responses import success, error, request_data
from app.services.authorization_service import AuthorizationError
from app.services.dispute_service import (
    DisputeError, DisputeNotFoundError, raise_dispute, list_user_disputes,
    list_kameti_disputes, get_dispute, can_raise_for_transaction
)

disputes_bp = Blueprint('disputes', __name__, url_prefix='/api/disputes')


def dispute_error(e):
    if isinstance(e, DisputeNotFoundError):
        return error(str(e), 404)
    if isinstance(e, AuthorizationError):
        return error(str(e), 403)
    return error(str(e), 400)


@disputes_bp.route('', methods=['POST'])
@login_required
def create():
    try:
        dispute = raise_dispute(current_user.id, request_data(),
                                files=request.files.getlist('proof'))
        return success(201, message=f'Dispute {dispute.case_id} submitted',
                       dispute=dispute.to_dict())
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)


@disputes_bp.route('/reasons')
def reasons():
    return success(reasons=[{'value': value, 'label': label}
                            for value, label in DISPUTE_REASON_LABELS.items()])


@disputes_bp.route('/mine')
@login_required
def mine():
    return success(disputes=[d.to_dict() for d in list_user_disputes(current_user.id)])


@disputes_bp.route('/can-raise')
@login_required
def can_raise():
    allowed, reason = can_raise_for_transaction(current_user.id,
                                                request.args.get('transaction_id'))
    return success(can_raise=allowed, reason=reason)


@disputes_bp.route('/kameti/<int:kameti_id>')
@login_required
def kameti_disputes(kameti_id):
    try:
        disputes = list_kameti_disputes(kameti_id, current_user.id)
        return success(disputes=[d.to_dict() for d in disputes])
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)


@disputes_bp.route('/<case_id>')
@login_required
def details(case_id):
    try:
        dispute = get_dispute(case_id, current_user.id)
        return success(dispute=dispute.to_dict())
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)
