"""
ADMIN ROUTES
============

Kameti-admin actions on disputes:
- Dispute dashboard and statistics
- Review / resolve / reject
- Priority changes and deletion
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.routes.disputes import dispute_error
from app.routes.responses import success, request_data
from app.services.authorization_service import AuthorizationError
from app.services.dispute_service import (
    DisputeError, list_admin_disputes, get_statistics, review_dispute, resolve_dispute,
    reject_dispute, update_priority, delete_dispute
)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin/disputes')


# ============== DISPUTE DASHBOARD ==============
@admin_bp.route('')
@login_required
def list_disputes():
    disputes = list_admin_disputes(current_user.id,
                                   status=request.args.get('status'),
                                   priority=request.args.get('priority'))
    return success(disputes=[d.to_dict() for d in disputes])


@admin_bp.route('/statistics')
@login_required
def statistics():
    return success(statistics=get_statistics(current_user.id))


# ============== DISPUTE ACTIONS ==============
@admin_bp.route('/<case_id>/review', methods=['PUT'])
@login_required
def review(case_id):
    try:
        dispute = review_dispute(case_id, current_user.id)
        return success(message='Dispute is under review', dispute=dispute.to_dict())
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)


@admin_bp.route('/<case_id>/resolve', methods=['PUT'])
@login_required
def resolve(case_id):
    try:
        dispute = resolve_dispute(case_id, current_user.id, request_data())
        return success(message='Dispute resolved', dispute=dispute.to_dict())
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)


@admin_bp.route('/<case_id>/reject', methods=['PUT'])
@login_required
def reject(case_id):
    try:
        dispute = reject_dispute(case_id, current_user.id,
                                 request_data().get('rejection_notes'))
        return success(message='Dispute rejected', dispute=dispute.to_dict())
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)


@admin_bp.route('/<case_id>/priority', methods=['PUT'])
@login_required
def priority(case_id):
    try:
        dispute = update_priority(case_id, current_user.id, request_data().get('priority'))
        return success(message='Priority updated', dispute=dispute.to_dict())
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)


@admin_bp.route('/<case_id>', methods=['DELETE'])
@login_required
def delete(case_id):
    try:
        delete_dispute(case_id, current_user.id)
        return success(message='Dispute deleted')
    except (DisputeError, AuthorizationError) as e:
        return dispute_error(e)
