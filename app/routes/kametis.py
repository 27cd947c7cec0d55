"""
KAMETI ROUTES
=============

Uses kameti_service for all operations.
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.routes.responses import success, error, request_data
from app.services.authorization_service import (
    AuthorizationError, can_access_kameti_data, can_view_kameti, require_authorization
)
from app.services.kameti_service import (
    KametiError, KametiNotFoundError, get_kameti_or_error, create_kameti, list_kametis,
    list_user_kametis, get_activities, request_to_join, list_join_requests,
    respond_to_join_request, join_kameti, decline_invite, leave_kameti,
    update_payout_policy, get_pending_delete_request, request_deletion, vote_on_deletion,
    cancel_deletion, delete_kameti
)
from app.services.payout_service import check_round_readiness
from app.utils import as_bool

kametis_bp = Blueprint('kametis', __name__, url_prefix='/api/kametis')


def _kameti_error(e):
    if isinstance(e, KametiNotFoundError):
        return error(str(e), 404)
    if isinstance(e, AuthorizationError):
        return error(str(e), 403)
    return error(str(e), 400)


# ============== CREATE / LIST ==============
@kametis_bp.route('', methods=['POST'])
@login_required
def create():
    try:
        kameti = create_kameti(current_user.id, request_data())
        return success(201, message='Kameti created successfully', kameti=kameti.to_dict())
    except KametiError as e:
        return _kameti_error(e)


@kametis_bp.route('', methods=['GET'])
@login_required
def list_all():
    kametis = list_kametis(current_user.id, status=request.args.get('status'))
    return success(kametis=[k.to_dict(include_members=False) for k in kametis])


@kametis_bp.route('/mine')
@login_required
def mine():
    kametis = list_user_kametis(current_user.id)
    return success(kametis=[k.to_dict() for k in kametis])


# ============== DETAILS ==============
@kametis_bp.route('/<int:kameti_id>')
@login_required
def details(kameti_id):
    try:
        kameti = get_kameti_or_error(kameti_id)
        require_authorization(can_view_kameti, current_user.id, kameti_id)
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)

    data = kameti.to_dict()
    data['readiness'] = check_round_readiness(kameti)
    data['is_admin'] = kameti.is_admin(current_user.id)
    data['is_member'] = kameti.is_member(current_user.id)

    if data['is_admin']:
        data['join_requests'] = [r.to_dict() for r in list_join_requests(
            kameti_id, current_user.id, status='pending')]

    pending_delete = get_pending_delete_request(kameti_id)
    data['delete_request'] = pending_delete.to_dict() if pending_delete else None
    return success(kameti=data)


@kametis_bp.route('/<int:kameti_id>/activities')
@login_required
def activities(kameti_id):
    try:
        get_kameti_or_error(kameti_id)
        require_authorization(can_access_kameti_data, current_user.id, kameti_id)
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)

    limit = request.args.get('limit', 50, type=int)
    return success(activities=[a.to_dict() for a in get_activities(kameti_id, limit=limit)])


# ============== JOINING ==============
@kametis_bp.route('/<int:kameti_id>/join-requests', methods=['POST'])
@login_required
def create_join_request(kameti_id):
    try:
        join_request = request_to_join(kameti_id, current_user.id,
                                       message=request_data().get('message'))
        return success(201, message='Join request sent', join_request=join_request.to_dict())
    except KametiError as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/join-requests', methods=['GET'])
@login_required
def join_requests(kameti_id):
    try:
        get_kameti_or_error(kameti_id)
        requests = list_join_requests(kameti_id, current_user.id,
                                      status=request.args.get('status'))
        return success(join_requests=[r.to_dict() for r in requests])
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/join-requests/<int:request_id>/<action>',
                  methods=['POST'])
@login_required
def respond_join_request(kameti_id, request_id, action):
    if action not in ('approve', 'reject'):
        return error('Unknown action', 404)

    try:
        join_request = respond_to_join_request(kameti_id, request_id, current_user.id,
                                               approve=action == 'approve')
        return success(message=f'Join request {join_request.status}',
                       join_request=join_request.to_dict())
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/join', methods=['POST'])
@login_required
def join(kameti_id):
    try:
        member = join_kameti(kameti_id, current_user.id)
        return success(message='You joined the kameti', member=member.to_dict(),
                       kameti=member.kameti.to_dict(include_members=False))
    except KametiError as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/decline', methods=['POST'])
@login_required
def decline(kameti_id):
    try:
        decline_invite(kameti_id, current_user.id)
        return success(message='You declined to join the kameti')
    except KametiError as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/leave', methods=['POST'])
@login_required
def leave(kameti_id):
    try:
        leave_kameti(kameti_id, current_user.id)
        return success(message='You left the kameti')
    except KametiError as e:
        return _kameti_error(e)


# ============== PAYOUT POLICY ==============
@kametis_bp.route('/<int:kameti_id>/policy', methods=['PUT'])
@login_required
def policy(kameti_id):
    try:
        kameti = update_payout_policy(kameti_id, current_user.id, request_data())
        return success(message='Payout policy updated', kameti=kameti.to_dict(),
                       readiness=check_round_readiness(kameti))
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)


# ============== DELETION ==============
@kametis_bp.route('/<int:kameti_id>/delete-request', methods=['POST'])
@login_required
def create_delete_request(kameti_id):
    try:
        delete_request = request_deletion(kameti_id, current_user.id,
                                          reason=request_data().get('reason'))
        return success(201, message='Delete request sent to members',
                       delete_request=delete_request.to_dict())
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/delete-request/vote', methods=['POST'])
@login_required
def vote_delete_request(kameti_id):
    try:
        result = vote_on_deletion(kameti_id, current_user.id,
                                  as_bool(request_data().get('approve')))
        if result['deleted']:
            message = 'All members approved. The kameti has been deleted.'
        elif result['status'] == 'rejected':
            message = 'Delete request rejected'
        else:
            message = f"Vote recorded ({result['progress']} approved)"
        return success(message=message, **result)
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>/delete-request/cancel', methods=['POST'])
@login_required
def cancel_delete_request(kameti_id):
    try:
        delete_request = cancel_deletion(kameti_id, current_user.id)
        return success(message='Delete request cancelled',
                       delete_request=delete_request.to_dict())
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)


@kametis_bp.route('/<int:kameti_id>', methods=['DELETE'])
@login_required
def delete(kameti_id):
    try:
        delete_kameti(kameti_id, current_user.id)
        return success(message='Kameti deleted')
    except (KametiError, AuthorizationError) as e:
        return _kameti_error(e)
