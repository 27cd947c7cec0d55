"""
PAYOUT SERVICE - ROUND ROTATION
===============================

CRITICAL BUSINESS RULES:
1. A payout is released only when the round is ready (all members paid)
2. Each member receives exactly one payout over the life of the kameti
3. After a payout either the kameti closes (everyone has been paid out,
   or the last round was reached) or every member is reset to unpaid
   and the round counter advances
4. Only the kameti creator releases payouts
"""

import logging
import random

from app.extensions import db
from app.models import (
    Kameti, Payout, PayoutOrder, PayoutStatus, KametiStatus, ActivityType,
    NotificationType, FINISHED_STATUSES
)
from app.services.authorization_service import (
    AuthorizationError, can_access_kameti_data, can_manage_kameti, can_process_payout,
    require_authorization
)
from app.services.kameti_service import log_activity
from app.services.notification_service import notify, notify_many

logger = logging.getLogger(__name__)


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class PayoutError(Exception):
    """Base exception for payout operations"""
    pass


class PayoutNotFoundError(PayoutError):
    pass


class RoundNotReadyError(PayoutError):
    """Raised when members still owe contributions for the round"""
    pass


class InvalidRecipientError(PayoutError):
    pass


def _get_kameti(kameti_id):
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        raise PayoutNotFoundError("Kameti not found")
    return kameti


# ============================================================
# READINESS
# ============================================================

def get_eligible_recipients(kameti):
    """Members who have not received a payout yet, in join order."""
    return [m for m in kameti.members if not m.has_received_payout]


def check_round_readiness(kameti):
    """
    Work out whether the current round can be paid out.

    effective members = adjusted count (or the actual count) when the
    admin allowed payouts with fewer members, otherwise the configured
    count. The round is ready when every actual member has paid, or
    when the paid count reaches the effective count. needs_policy_override
    only flags a kameti that is short of members without the override.
    """
    actual = len(kameti.members)
    configured = kameti.members_count
    if kameti.allow_payout_with_fewer_members:
        effective = kameti.adjusted_members_count or actual
    else:
        effective = configured

    paid = len(kameti.paid_members())
    needs_policy_override = actual < configured and not kameti.allow_payout_with_fewer_members
    eligible = get_eligible_recipients(kameti)

    all_actual_paid = actual > 0 and paid >= actual
    all_effective_paid = effective > 0 and paid >= effective

    if kameti.status in FINISHED_STATUSES:
        ready = False
        reason = f"Kameti is {kameti.status}"
    elif not eligible:
        ready = False
        reason = "Every member has already received a payout"
    elif all_actual_paid or all_effective_paid:
        ready = True
        reason = "All members have paid"
    elif needs_policy_override:
        ready = False
        reason = (f"{paid}/{actual} joined members have paid. Only {actual} of {configured} "
                  f"members joined; the admin can allow payout with fewer members.")
    else:
        ready = False
        reason = f"{paid}/{effective} members have paid"

    return {
        'ready': ready,
        'reason': reason,
        'current_round': kameti.current_round,
        'round': kameti.round_label,
        'actual_members': actual,
        'configured_members': configured,
        'effective_members': effective,
        'paid_members': paid,
        'unpaid_members': actual - paid,
        'needs_policy_override': needs_policy_override,
        'pool_amount': effective * kameti.contribution_amount,
        'eligible_recipients': len(eligible),
    }


def get_readiness(kameti_id, user_id, send_reminders=False):
    """Readiness for the route; admins may trigger reminders at the same time."""
    kameti = _get_kameti(kameti_id)
    require_authorization(can_access_kameti_data, user_id, kameti_id)
    readiness = check_round_readiness(kameti)

    if send_reminders and not readiness['ready']:
        require_authorization(can_manage_kameti, user_id, kameti_id)
        from app.services.reminder_service import send_payment_reminders
        try:
            readiness['reminders_sent'] = send_payment_reminders(kameti)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            raise PayoutError(f"Failed to send reminders: {str(e)}")

    return readiness


def list_eligible_recipients(kameti_id, user_id):
    kameti = _get_kameti(kameti_id)
    require_authorization(can_access_kameti_data, user_id, kameti_id)
    return get_eligible_recipients(kameti)


# ============================================================
# RECIPIENT SELECTION
# ============================================================

def select_recipient(kameti, recipient_id=None):
    """
    Pick the round's recipient.

    Priority: explicit recipient (admin) > first eligible (sequential)
    > random eligible member (random, bidding).

    Returns: (KametiMember, selection_method)
    """
    eligible = get_eligible_recipients(kameti)
    if not eligible:
        raise InvalidRecipientError("No eligible recipients left")

    if recipient_id is not None:
        chosen = next((m for m in eligible if m.user_id == recipient_id), None)
        if not chosen:
            raise InvalidRecipientError(
                "Selected recipient is not a member or has already received a payout")
        return chosen, PayoutOrder.ADMIN.value

    if kameti.payout_order == PayoutOrder.ADMIN.value:
        raise InvalidRecipientError("This kameti requires the admin to choose the recipient")

    if kameti.payout_order == PayoutOrder.SEQUENTIAL.value:
        return eligible[0], PayoutOrder.SEQUENTIAL.value

    return random.choice(eligible), PayoutOrder.RANDOM.value


def preview_recipient(kameti_id, user_id, recipient_id=None):
    kameti = _get_kameti(kameti_id)
    require_authorization(can_manage_kameti, user_id, kameti_id)
    member, method = select_recipient(kameti, recipient_id)
    return member, method


# ============================================================
# PROCESS PAYOUT (ATOMIC)
# ============================================================

def process_payout(kameti_id, user_id, recipient_id=None):
    """
    Release the current round's pool to one member.

    ATOMIC: Payout row, member flags, kameti totals/round and loan
    pledge transfers are committed together.

    Returns: dict(payout, next_round, is_completed, kameti_status, transfers)
    """
    try:
        kameti = _get_kameti(kameti_id)
        require_authorization(can_process_payout, user_id, kameti_id)

        readiness = check_round_readiness(kameti)
        if not readiness['ready']:
            raise RoundNotReadyError(f"Round is not ready for payout: {readiness['reason']}")

        recipient, method = select_recipient(kameti, recipient_id)
        paid_count = readiness['paid_members'] or len(kameti.members) or 1
        amount = kameti.contribution_amount * paid_count
        payout_round = kameti.current_round

        payout = Payout(
            kameti_id=kameti.id,
            recipient_id=recipient.user_id,
            round=payout_round,
            amount=amount,
            paid_members=paid_count,
            selection_method=method,
            status=PayoutStatus.COMPLETED.value,
            processed_by=user_id
        )
        db.session.add(payout)

        recipient.has_received_payout = True
        recipient.payout_round = payout_round
        recipient.reset_payment()
        kameti.total_disbursed = (kameti.total_disbursed or 0.0) + amount

        recipient_name = recipient.user.full_name
        log_activity(kameti, ActivityType.PAYOUT.value,
                     f"Round {payout_round} payout of Rs. {amount:,.0f} to {recipient_name}",
                     user_id=recipient.user_id, amount=amount)

        notify(
            recipient.user_id,
            NotificationType.PAYOUT_RECEIVED.value,
            'Payout Received',
            f'You received the round {payout_round} payout of Rs. {amount:,.0f} '
            f'from "{kameti.name}".',
            {'kameti_id': kameti.id, 'round': payout_round, 'amount': amount}
        )
        notify_many(
            [m.user_id for m in kameti.members if m.user_id != recipient.user_id],
            NotificationType.KAMETI_UPDATE.value,
            'Payout Released',
            f'{recipient_name} received the round {payout_round} payout of "{kameti.name}".',
            {'kameti_id': kameti.id, 'round': payout_round}
        )

        from app.services.loan_service import transfer_pledges_for_payout
        transfers = transfer_pledges_for_payout(kameti, recipient.user_id, payout_round)

        is_completed = _advance_round(kameti)

        db.session.commit()
        logger.info("Payout %s of %.2f for kameti %s round %s to user %s",
                    payout.payout_code, amount, kameti.kameti_code, payout_round,
                    recipient.user_id)

        return {
            'payout': payout,
            'next_round': None if is_completed else kameti.current_round,
            'is_completed': is_completed,
            'kameti_status': kameti.status,
            'transfers': transfers,
        }

    except (PayoutError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise PayoutError(f"Failed to process payout: {str(e)}")


def _advance_round(kameti):
    """Close the kameti after the last round, otherwise start the next one."""
    if rotation_finished(kameti):
        _close(kameti)
        return True

    for member in kameti.members:
        member.reset_payment()
    completed_round = kameti.current_round
    kameti.current_round += 1
    kameti.update_round_label()
    log_activity(kameti, ActivityType.ROUND_COMPLETED.value,
                 f"Round {completed_round} completed. Round {kameti.current_round} started.")
    return False


def rotation_finished(kameti):
    """
    True once every member has received a payout, or once as many rounds
    have been paid out as the kameti has seats.
    """
    all_paid_out = bool(kameti.members) and all(m.has_received_payout for m in kameti.members)
    rounds_paid = Payout.query.filter_by(kameti_id=kameti.id).count()
    return all_paid_out or rounds_paid >= kameti.members_count


def _close(kameti):
    kameti.status = KametiStatus.CLOSED.value
    kameti.current_round = kameti.members_count
    kameti.update_round_label()
    notify_many(
        [m.user_id for m in kameti.members],
        NotificationType.KAMETI_UPDATE.value,
        'Kameti Closed',
        f'"{kameti.name}" has completed all rounds and is now closed.',
        {'kameti_id': kameti.id}
    )
    logger.info("Kameti %s closed after round %s", kameti.kameti_code, kameti.current_round)


def check_and_update_completion_status(kameti):
    """
    Close a kameti whose rotation is finished but whose status was not
    updated. Returns True when the kameti was closed. Committed by the caller.
    """
    if kameti.status == KametiStatus.CLOSED.value:
        return False

    if rotation_finished(kameti):
        _close(kameti)
        return True
    return False


# ============================================================
# HISTORY
# ============================================================

def get_payout_history(kameti_id, user_id, limit=10):
    _get_kameti(kameti_id)
    require_authorization(can_access_kameti_data, user_id, kameti_id)
    return Payout.query.filter_by(kameti_id=kameti_id).order_by(
        Payout.created_at.desc(), Payout.id.desc()
    ).limit(limit).all()
