"""
KAMETI SERVICE
==============

Handles:
- Creating kametis (with validation)
- Join requests, direct joins and leaving
- Payout policy overrides
- The member-approved delete flow
- Activity feed

BUSINESS RULES:
1. The creator is the first member and the only admin
2. A kameti never holds more than members_count members
3. Closed kametis accept no new members
4. A kameti becomes Active once it is full
"""

import logging
from datetime import datetime, date, timedelta

from sqlalchemy import or_

from app.extensions import db
from app.models import (
    Kameti, KametiMember, JoinRequest, KametiActivity, DeleteRequest, DeleteApproval,
    Payment, PaymentRecord, LoanPledge, LoanRequest, User, MemberRole, MemberPaymentStatus,
    KametiStatus, ContributionFrequency, PayoutOrder, JoinRequestStatus, ActivityType,
    DeleteRequestStatus, NotificationType,
    FINISHED_STATUSES, enum_values
)
from app.services.authorization_service import (
    AuthorizationError, can_manage_kameti, require_authorization
)
from app.services.notification_service import notify, notify_many
from app.utils import as_bool, parse_iso_date

logger = logging.getLogger(__name__)

NAME_LENGTH = (3, 100)
DESCRIPTION_LENGTH = (10, 500)
AMOUNT_RANGE = (1000, 1000000)
MEMBERS_RANGE = (2, 50)


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class KametiError(Exception):
    """Base exception for kameti operations"""
    pass


class KametiNotFoundError(KametiError):
    pass


class KametiValidationError(KametiError):
    """Raised when submitted kameti data is invalid"""
    pass


class KametiStateError(KametiError):
    """Raised when the operation is invalid for the kameti's current state"""
    pass


# ============================================================
# HELPERS
# ============================================================

def get_kameti_or_error(kameti_id):
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        raise KametiNotFoundError("Kameti not found")
    return kameti


def log_activity(kameti, activity_type, description, user_id=None, amount=None):
    """Append to the kameti activity feed. Committed by the caller."""
    activity = KametiActivity(
        kameti_id=kameti.id,
        activity_type=activity_type,
        user_id=user_id,
        description=description,
        amount=amount
    )
    db.session.add(activity)
    return activity


def activate_if_full(kameti):
    """Pending kametis start once every seat is taken."""
    if kameti.status == KametiStatus.PENDING.value and kameti.is_full:
        kameti.status = KametiStatus.ACTIVE.value
        notify_many(
            [m.user_id for m in kameti.members],
            NotificationType.KAMETI_UPDATE.value,
            'Kameti Started',
            f'"{kameti.name}" is now full and active. Round 1 contributions are due '
            f'on {kameti.due_date_for_round(1).isoformat()}.',
            {'kameti_id': kameti.id}
        )
        logger.info("Kameti %s is now active", kameti.kameti_code)
        return True
    return False


def _add_member(kameti, user_id, role=MemberRole.MEMBER.value):
    member = KametiMember(user_id=user_id, role=role)
    kameti.members.append(member)
    db.session.flush()
    return member


def _ensure_can_join(kameti, user_id):
    if kameti.status in FINISHED_STATUSES:
        raise KametiStateError(f"This kameti is {kameti.status} and not accepting members")

    if kameti.is_member(user_id):
        raise KametiStateError("You are already a member of this kameti")

    if kameti.is_full:
        raise KametiStateError("This kameti is full")


# ============================================================
# VALIDATION
# ============================================================

def _parse_number(value, field, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise KametiValidationError(f"{field} must be a number")


def validate_kameti_data(data, creator_id):
    """
    Validate creation payload and return the cleaned values.

    Rules: name 3-100 chars, description 10-500 chars,
    amount 1,000-1,000,000, members 2-50, start date within the next
    year, late fee between 0 and the amount.
    """
    name = (data.get('name') or '').strip()
    description = (data.get('description') or '').strip()

    if not NAME_LENGTH[0] <= len(name) <= NAME_LENGTH[1]:
        raise KametiValidationError("Name must be between 3 and 100 characters")

    if not DESCRIPTION_LENGTH[0] <= len(description) <= DESCRIPTION_LENGTH[1]:
        raise KametiValidationError("Description must be between 10 and 500 characters")

    amount = _parse_number(data.get('amount'), 'Amount')
    if not AMOUNT_RANGE[0] <= amount <= AMOUNT_RANGE[1]:
        raise KametiValidationError("Amount must be between Rs. 1,000 and Rs. 1,000,000")

    members_count = _parse_number(data.get('members_count'), 'Members count', int)
    if not MEMBERS_RANGE[0] <= members_count <= MEMBERS_RANGE[1]:
        raise KametiValidationError("Members count must be between 2 and 50")

    try:
        start_date = parse_iso_date(data.get('start_date'))
    except ValueError as e:
        raise KametiValidationError(str(e))

    today = date.today()
    if start_date < today:
        raise KametiValidationError("Start date cannot be in the past")
    if start_date > today + timedelta(days=365):
        raise KametiValidationError("Start date cannot be more than 1 year in the future")

    frequency = data.get('contribution_frequency') or ContributionFrequency.MONTHLY.value
    if frequency not in enum_values(ContributionFrequency):
        raise KametiValidationError(f"Invalid contribution frequency: {frequency}")

    payout_order = data.get('payout_order') or PayoutOrder.RANDOM.value
    if payout_order not in enum_values(PayoutOrder):
        raise KametiValidationError(f"Invalid payout order: {payout_order}")

    late_fee = _parse_number(data.get('late_payment_fee') or 0, 'Late payment fee')
    if late_fee < 0:
        raise KametiValidationError("Late payment fee cannot be negative")
    if late_fee > amount:
        raise KametiValidationError("Late payment fee cannot exceed the contribution amount")

    duplicate = Kameti.query.filter(
        Kameti.created_by == creator_id,
        db.func.lower(Kameti.name) == name.lower(),
        Kameti.status.in_([KametiStatus.PENDING.value, KametiStatus.ACTIVE.value])
    ).first()
    if duplicate:
        raise KametiValidationError("You already have an active kameti with this name")

    return {
        'name': name,
        'description': description,
        'amount': amount,
        'members_count': members_count,
        'start_date': start_date,
        'contribution_frequency': frequency,
        'payout_order': payout_order,
        'late_payment_fee': late_fee,
        'is_private': as_bool(data.get('is_private')),
        'auto_reminders': as_bool(data.get('auto_reminders'), default=True),
    }


# ============================================================
# CREATE / READ
# ============================================================

def create_kameti(creator_id, data):
    """
    Create a kameti. The creator joins as the admin member.

    Returns: Kameti
    """
    try:
        values = validate_kameti_data(data, creator_id)

        kameti = Kameti(created_by=creator_id, current_round=1,
                        status=KametiStatus.PENDING.value, **values)
        kameti.update_round_label()
        db.session.add(kameti)
        db.session.flush()

        _add_member(kameti, creator_id, MemberRole.ADMIN.value)
        log_activity(kameti, ActivityType.MEMBER_JOINED.value,
                     "Kameti created", user_id=creator_id)

        db.session.commit()
        logger.info("Kameti %s created by user %s", kameti.kameti_code, creator_id)
        return kameti

    except KametiError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to create kameti: {str(e)}")


def list_kametis(user_id, status=None):
    """Public kametis plus private ones the user belongs to, newest first."""
    member_of = db.session.query(KametiMember.kameti_id).filter_by(user_id=user_id)
    query = Kameti.query.filter(or_(Kameti.is_private.is_(False), Kameti.id.in_(member_of)))
    if status:
        query = query.filter(Kameti.status == status)
    return query.order_by(Kameti.created_at.desc(), Kameti.id.desc()).all()


def list_user_kametis(user_id):
    return Kameti.query.join(KametiMember).filter(
        KametiMember.user_id == user_id
    ).order_by(Kameti.created_at.desc(), Kameti.id.desc()).all()


def get_activities(kameti_id, limit=50):
    return KametiActivity.query.filter_by(kameti_id=kameti_id).order_by(
        KametiActivity.created_at.desc(), KametiActivity.id.desc()
    ).limit(limit).all()


# ============================================================
# JOINING
# ============================================================

def request_to_join(kameti_id, user_id, message=None):
    """Create a pending join request and notify the admin."""
    try:
        kameti = get_kameti_or_error(kameti_id)
        _ensure_can_join(kameti, user_id)

        existing = JoinRequest.query.filter(
            JoinRequest.kameti_id == kameti_id,
            JoinRequest.user_id == user_id,
            JoinRequest.status.in_([JoinRequestStatus.PENDING.value,
                                    JoinRequestStatus.APPROVED.value])
        ).first()
        if existing:
            raise KametiStateError("You already have a join request for this kameti")

        join_request = JoinRequest(kameti_id=kameti_id, user_id=user_id,
                                   message=(message or '').strip()[:500] or None)
        db.session.add(join_request)
        db.session.flush()

        requester = db.session.get(User, user_id)
        notify(
            kameti.created_by,
            NotificationType.JOIN_REQUEST.value,
            'New Join Request',
            f'{requester.full_name} wants to join "{kameti.name}".',
            {'kameti_id': kameti.id, 'request_id': join_request.id, 'user_id': user_id}
        )

        db.session.commit()
        return join_request

    except KametiError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to request join: {str(e)}")


def list_join_requests(kameti_id, admin_id, status=None):
    require_authorization(can_manage_kameti, admin_id, kameti_id)
    query = JoinRequest.query.filter_by(kameti_id=kameti_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(JoinRequest.requested_at.desc()).all()


def respond_to_join_request(kameti_id, request_id, admin_id, approve):
    """
    Approve or reject a pending join request (admin only).

    Approval re-checks capacity and state before adding the member.
    """
    try:
        kameti = get_kameti_or_error(kameti_id)
        require_authorization(can_manage_kameti, admin_id, kameti_id)

        join_request = db.session.get(JoinRequest, request_id)
        if not join_request or join_request.kameti_id != kameti_id:
            raise KametiNotFoundError("Join request not found")

        if join_request.status != JoinRequestStatus.PENDING.value:
            raise KametiStateError(f"Join request is already {join_request.status}")

        join_request.responded_at = datetime.utcnow()

        if approve:
            _ensure_can_join(kameti, join_request.user_id)
            join_request.status = JoinRequestStatus.APPROVED.value
            _add_member(kameti, join_request.user_id)
            log_activity(kameti, ActivityType.MEMBER_JOINED.value,
                         f"{join_request.user.full_name} joined the kameti",
                         user_id=join_request.user_id)
            notify(
                join_request.user_id,
                NotificationType.REQUEST_APPROVED.value,
                'Join Request Approved',
                f'You are now a member of "{kameti.name}".',
                {'kameti_id': kameti.id}
            )
            activate_if_full(kameti)
        else:
            join_request.status = JoinRequestStatus.REJECTED.value
            notify(
                join_request.user_id,
                NotificationType.REQUEST_REJECTED.value,
                'Join Request Rejected',
                f'Your request to join "{kameti.name}" was rejected.',
                {'kameti_id': kameti.id}
            )

        db.session.commit()
        return join_request

    except (KametiError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to respond to join request: {str(e)}")


def join_kameti(kameti_id, user_id):
    """Join a public kameti directly. Private kametis need a join request."""
    try:
        kameti = get_kameti_or_error(kameti_id)
        if kameti.is_private:
            raise KametiStateError("This kameti is private. Send a join request instead.")

        _ensure_can_join(kameti, user_id)
        member = _add_member(kameti, user_id)

        user = db.session.get(User, user_id)
        log_activity(kameti, ActivityType.MEMBER_JOINED.value,
                     f"{user.full_name} joined the kameti", user_id=user_id)
        notify(
            kameti.created_by,
            NotificationType.KAMETI_UPDATE.value,
            'New Member Joined',
            f'{user.full_name} joined "{kameti.name}".',
            {'kameti_id': kameti.id, 'user_id': user_id}
        )
        activate_if_full(kameti)

        db.session.commit()
        return member

    except KametiError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to join kameti: {str(e)}")


def decline_invite(kameti_id, user_id):
    """Turn down an invitation to a kameti; the admin is told."""
    try:
        kameti = get_kameti_or_error(kameti_id)
        if kameti.is_member(user_id):
            raise KametiStateError("You are already a member of this kameti")

        user = db.session.get(User, user_id)
        notify(
            kameti.created_by,
            NotificationType.KAMETI_UPDATE.value,
            'Invite Declined',
            f'{user.full_name} ({user.email}) has declined to join your Kameti "{kameti.name}".',
            {'kameti_id': kameti.id, 'user_id': user_id, 'action': 'declined'}
        )

        db.session.commit()
        logger.info("User %s declined the invite to kameti %s", user_id, kameti.kameti_code)
        return kameti

    except KametiError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to decline invite: {str(e)}")


def leave_kameti(kameti_id, user_id):
    """
    Leave a kameti before it starts.

    The admin cannot leave, and a member who already paid cannot leave.
    """
    try:
        kameti = get_kameti_or_error(kameti_id)
        member = kameti.get_member(user_id)
        if not member:
            raise KametiStateError("You are not a member of this kameti")

        if kameti.created_by == user_id:
            raise KametiStateError("The kameti admin cannot leave. Request deletion instead.")

        if kameti.status != KametiStatus.PENDING.value:
            raise KametiStateError("You can only leave a kameti before it starts")

        if member.payment_status != MemberPaymentStatus.UNPAID.value or member.has_received_payout:
            raise KametiStateError("You cannot leave after paying into this kameti")

        name = member.user.full_name
        kameti.members.remove(member)
        log_activity(kameti, ActivityType.MEMBER_LEFT.value,
                     f"{name} left the kameti", user_id=user_id)
        notify(
            kameti.created_by,
            NotificationType.KAMETI_UPDATE.value,
            'Member Left',
            f'{name} left "{kameti.name}".',
            {'kameti_id': kameti.id, 'user_id': user_id}
        )

        db.session.commit()

    except KametiError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to leave kameti: {str(e)}")


# ============================================================
# PAYOUT POLICY
# ============================================================

def update_payout_policy(kameti_id, admin_id, data):
    """Allow payouts with fewer members and adjust the count or amount used."""
    try:
        kameti = get_kameti_or_error(kameti_id)
        require_authorization(can_manage_kameti, admin_id, kameti_id)

        allow = as_bool(data.get('allow_payout_with_fewer_members'))
        adjusted_count = data.get('adjusted_members_count')
        adjusted_amount = data.get('adjusted_amount')

        if adjusted_count not in (None, ''):
            adjusted_count = _parse_number(adjusted_count, 'Adjusted members count', int)
            if not 1 <= adjusted_count <= kameti.members_count:
                raise KametiValidationError(
                    f"Adjusted members count must be between 1 and {kameti.members_count}")
        else:
            adjusted_count = None

        if adjusted_amount not in (None, ''):
            adjusted_amount = _parse_number(adjusted_amount, 'Adjusted amount')
            if adjusted_amount <= 0:
                raise KametiValidationError("Adjusted amount must be greater than 0")
        else:
            adjusted_amount = None

        kameti.allow_payout_with_fewer_members = allow
        kameti.adjusted_members_count = adjusted_count if allow else None
        kameti.adjusted_amount = adjusted_amount

        db.session.commit()
        logger.info("Payout policy updated for kameti %s", kameti.kameti_code)
        return kameti

    except (KametiError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to update payout policy: {str(e)}")


# ============================================================
# DELETION
# ============================================================

def get_pending_delete_request(kameti_id):
    return DeleteRequest.query.filter_by(
        kameti_id=kameti_id,
        status=DeleteRequestStatus.PENDING.value
    ).first()


def _purge_kameti(kameti):
    """Delete a kameti; payment history is kept without the kameti link."""
    db.session.flush()
    pledge_ids = db.session.query(LoanPledge.id).join(LoanRequest).filter(
        LoanRequest.kameti_id == kameti.id
    )
    Payment.query.filter(Payment.pledge_id.in_(pledge_ids)).update(
        {'pledge_id': None}, synchronize_session=False)
    Payment.query.filter_by(kameti_id=kameti.id).update(
        {'kameti_id': None}, synchronize_session=False)
    PaymentRecord.query.filter_by(kameti_id=kameti.id).update(
        {'kameti_id': None}, synchronize_session=False)
    db.session.expire_all()
    db.session.delete(kameti)


def request_deletion(kameti_id, user_id, reason=None):
    """
    Ask every member to approve deleting the kameti (creator only).

    Every member votes, the creator included. The kameti is deleted once
    all votes are approvals.
    """
    try:
        kameti = get_kameti_or_error(kameti_id)
        require_authorization(can_manage_kameti, user_id, kameti_id)

        if kameti.status == KametiStatus.CLOSED.value:
            raise KametiStateError("Closed kametis can be deleted directly")

        if get_pending_delete_request(kameti_id):
            raise KametiStateError("A delete request is already pending")

        delete_request = DeleteRequest(kameti_id=kameti_id, requested_by=user_id, reason=reason)
        for member in kameti.members:
            delete_request.approvals.append(DeleteApproval(user_id=member.user_id))
        db.session.add(delete_request)
        db.session.flush()

        notify_many(
            [m.user_id for m in kameti.members if m.user_id != user_id],
            NotificationType.DELETE_REQUEST.value,
            'Delete Request',
            f'The admin wants to delete "{kameti.name}". Please approve or reject.',
            {'kameti_id': kameti.id, 'delete_request_id': delete_request.id}
        )

        db.session.commit()
        return delete_request

    except (KametiError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to request deletion: {str(e)}")


def vote_on_deletion(kameti_id, user_id, approve):
    """
    Record a member's vote on the pending delete request.

    Returns: dict with status, progress ("x/y") and whether the kameti was deleted
    """
    try:
        kameti = get_kameti_or_error(kameti_id)
        delete_request = get_pending_delete_request(kameti_id)
        if not delete_request:
            raise KametiStateError("There is no pending delete request")

        approval = next((a for a in delete_request.approvals if a.user_id == user_id), None)
        if not approval:
            raise AuthorizationError("You are not part of this delete request")

        if approval.approved is not None:
            raise KametiStateError("You have already voted on this delete request")

        approval.approved = bool(approve)
        approval.voted_at = datetime.utcnow()

        total = len(delete_request.approvals)
        approved = delete_request.approved_count()
        result = {'status': delete_request.status, 'progress': f"{approved}/{total}",
                  'deleted': False}

        if not approve:
            delete_request.status = DeleteRequestStatus.REJECTED.value
            result['status'] = delete_request.status
            notify(
                kameti.created_by,
                NotificationType.KAMETI_UPDATE.value,
                'Delete Request Rejected',
                f'A member rejected deleting "{kameti.name}".',
                {'kameti_id': kameti.id}
            )
        elif approved == total:
            member_ids = [m.user_id for m in kameti.members]
            name = kameti.name
            delete_request.status = DeleteRequestStatus.APPROVED.value
            _purge_kameti(kameti)
            notify_many(
                member_ids,
                NotificationType.KAMETI_UPDATE.value,
                'Kameti Deleted',
                f'"{name}" was deleted after all members approved.',
                {'kameti_id': kameti_id}
            )
            result.update(status=DeleteRequestStatus.APPROVED.value, deleted=True)
            logger.info("Kameti %s deleted after unanimous approval", kameti_id)

        db.session.commit()
        return result

    except (KametiError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to record vote: {str(e)}")


def cancel_deletion(kameti_id, user_id):
    try:
        get_kameti_or_error(kameti_id)
        require_authorization(can_manage_kameti, user_id, kameti_id)

        delete_request = get_pending_delete_request(kameti_id)
        if not delete_request:
            raise KametiStateError("There is no pending delete request")

        delete_request.status = DeleteRequestStatus.CANCELLED.value
        db.session.commit()
        return delete_request

    except (KametiError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to cancel delete request: {str(e)}")


def delete_kameti(kameti_id, user_id):
    """Delete a closed kameti directly (creator only)."""
    try:
        kameti = get_kameti_or_error(kameti_id)
        require_authorization(can_manage_kameti, user_id, kameti_id)

        if kameti.status != KametiStatus.CLOSED.value:
            raise KametiStateError(
                "Only closed kametis can be deleted directly. Request deletion instead.")

        _purge_kameti(kameti)
        db.session.commit()
        logger.info("Closed kameti %s deleted by user %s", kameti_id, user_id)

    except (KametiError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise KametiError(f"Failed to delete kameti: {str(e)}")
