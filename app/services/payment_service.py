"""
PAYMENT SERVICE - CONTRIBUTIONS
===============================

CRITICAL BUSINESS RULES:
1. One completed contribution per member per round
2. A Payment is created 'pending' before the gateway redirect and
   completed only by a verified gateway notification (or by the admin
   recording an offline payment)
3. Completing a contribution marks the member paid, updates the kameti
   totals and the matching PaymentRecord (with lateness)
4. Gateway notifications are idempotent: a completed payment is never
   applied twice
"""

import logging
import uuid
from datetime import datetime, date

from app.extensions import db
from app.models import (
    Kameti, Payment, PaymentRecord, KametiMember, PaymentStatus, PaymentMethod,
    PaymentPurpose, RecordStatus, MemberPaymentStatus, ActivityType, NotificationType,
    FINISHED_STATUSES
)
from app.services.authorization_service import (
    AuthorizationError, can_access_kameti_data, can_manage_kameti, require_authorization
)
from app.services.kameti_service import log_activity, activate_if_full
from app.services.notification_service import notify
from app.services.payfast_service import build_payment_request, validate_notification
from app.services.payout_service import check_round_readiness
from app.services.reminder_service import send_payment_reminders, notify_admin_round_ready
from app.utils import timestamp_ms

logger = logging.getLogger(__name__)

MANUAL_METHODS = (
    PaymentMethod.CASH.value,
    PaymentMethod.BANK_TRANSFER.value,
    PaymentMethod.JAZZCASH.value,
    PaymentMethod.EASYPAISA.value,
    PaymentMethod.DEMO.value,
)

OPEN_RECORD_STATUSES = (RecordStatus.PENDING.value, RecordStatus.OVERDUE.value)


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class PaymentError(Exception):
    """Base exception for payment operations"""
    pass


class PaymentNotFoundError(PaymentError):
    pass


class PaymentValidationError(PaymentError):
    pass


class PaymentStateError(PaymentError):
    """Raised when the payment or kameti is in the wrong state"""
    pass


# ============================================================
# HELPERS
# ============================================================

def generate_transaction_id(prefix, code):
    """KAMETI-<code>-<ms timestamp>-<random>"""
    return f"{prefix}-{code}-{timestamp_ms()}-{uuid.uuid4().hex[:6].upper()}"


def contribution_due(kameti, on_date=None):
    """
    Amount owed for the current round.

    Returns: (amount, late_fee, due_date)
    """
    on_date = on_date or date.today()
    due_date = kameti.due_date_for_round()
    late_fee = kameti.late_payment_fee if on_date > due_date else 0.0
    return kameti.contribution_amount + late_fee, late_fee, due_date


def _get_kameti(kameti_id):
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        raise PaymentNotFoundError("Kameti not found")
    return kameti


def _ensure_can_pay(kameti, member):
    if kameti.status in FINISHED_STATUSES:
        raise PaymentStateError(f"This kameti is {kameti.status}. Payments are not accepted.")

    if not member:
        raise AuthorizationError("You are not a member of this kameti")

    if member.payment_status == MemberPaymentStatus.PAID.value:
        raise PaymentStateError(f"You have already paid for round {kameti.current_round}")


# ============================================================
# INITIATE (GATEWAY REDIRECT)
# ============================================================

def initiate_payment(kameti_id, user_id):
    """
    Create a pending contribution and the signed PayFast redirect.

    Older pending attempts of the same member and round are cancelled.

    Returns: dict(payment, record, payment_url, params)
    """
    try:
        kameti = _get_kameti(kameti_id)
        member = kameti.get_member(user_id)
        _ensure_can_pay(kameti, member)
        user = member.user

        amount, late_fee, due_date = contribution_due(kameti)
        code = kameti.kameti_code.replace('KAMETI-', '')
        transaction_id = generate_transaction_id('KAMETI', code)

        stale_records = PaymentRecord.query.filter(
            PaymentRecord.kameti_id == kameti.id,
            PaymentRecord.user_id == user_id,
            PaymentRecord.round == kameti.current_round,
            PaymentRecord.status.in_(OPEN_RECORD_STATUSES)
        ).all()
        for stale in stale_records:
            stale.status = RecordStatus.CANCELLED.value
            if stale.payment and stale.payment.status == PaymentStatus.PENDING.value:
                stale.payment.status = PaymentStatus.CANCELLED.value
                stale.payment.add_audit_entry('superseded', {'by': transaction_id})

        payment = Payment(
            user_id=user_id,
            kameti_id=kameti.id,
            amount=amount,
            payment_method=PaymentMethod.PAYFAST.value,
            transaction_id=transaction_id,
            purpose=PaymentPurpose.CONTRIBUTION.value,
            round=kameti.current_round
        )
        payment.add_audit_entry('initiated', {'amount': amount, 'late_fee': late_fee})
        db.session.add(payment)
        db.session.flush()

        record = PaymentRecord(
            kameti_id=kameti.id,
            user_id=user_id,
            round=kameti.current_round,
            total_rounds=kameti.members_count,
            amount=amount,
            payment_method=PaymentMethod.PAYFAST.value,
            transaction_id=transaction_id,
            payment_id=payment.id,
            due_date=due_date,
            late_fee=late_fee
        )
        db.session.add(record)

        payment_url, params = build_payment_request(
            transaction_id,
            amount,
            user,
            item_name=f"Kameti {kameti.name} - Round {kameti.current_round}",
            item_description=f"Contribution for {kameti.kameti_code} ({kameti.round_label})",
            custom_fields={'custom_str1': kameti.kameti_code, 'custom_str2': user.email}
        )

        db.session.commit()
        logger.info("Payment %s initiated by user %s for kameti %s",
                    transaction_id, user_id, kameti.kameti_code)
        return {'payment': payment, 'record': record,
                'payment_url': payment_url, 'params': params}

    except (PaymentError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise PaymentError(f"Failed to initiate payment: {str(e)}")


# ============================================================
# COMPLETION (SHARED BY IPN AND MANUAL RECORDING)
# ============================================================

def complete_contribution(payment, record, paid_at=None):
    """
    Apply a completed contribution to the kameti. Committed by the caller.

    Lateness is judged on paid_at, but the late fee kept on the record is
    the one charged when the payment was initiated.

    Returns: readiness dict after the payment
    """
    kameti = payment.kameti
    member = kameti.get_member(payment.user_id)
    if not member:
        raise PaymentStateError("Payer is no longer a member of this kameti")

    paid_at = paid_at or datetime.utcnow()
    payment.status = PaymentStatus.COMPLETED.value
    payment.completed_at = paid_at

    record.mark_as_paid(payment.transaction_id, paid_at=paid_at, late_fee=record.late_fee)
    record.payment_method = payment.payment_method

    member.payment_status = MemberPaymentStatus.PAID.value
    member.last_payment_date = paid_at
    member.transaction_id = payment.transaction_id

    kameti.total_collected = (kameti.total_collected or 0.0) + payment.amount

    payer = member.user
    log_activity(kameti, ActivityType.PAYMENT.value,
                 f"{payer.full_name} paid for round {record.round}",
                 user_id=payer.id, amount=payment.amount)

    data = {'kameti_id': kameti.id, 'amount': payment.amount,
            'transaction_id': payment.transaction_id, 'round': record.round}
    notify(
        kameti.created_by,
        NotificationType.PAYMENT_RECEIVED.value,
        'Payment Received',
        f'{payer.full_name} ({payer.email}) has made a payment of '
        f'Rs. {payment.amount:,.0f} for Kameti "{kameti.name}"',
        data
    )
    if payer.id != kameti.created_by:
        notify(
            payer.id,
            NotificationType.PAYMENT_RECEIVED.value,
            'Payment Confirmed',
            f'Your payment of Rs. {payment.amount:,.0f} for "{kameti.name}" was received.',
            data
        )

    activate_if_full(kameti)
    db.session.flush()

    readiness = check_round_readiness(kameti)
    if readiness['ready']:
        notify_admin_round_ready(kameti, readiness['pool_amount'])
    elif kameti.auto_reminders:
        send_payment_reminders(kameti)

    logger.info("Contribution %s completed for kameti %s round %s",
                payment.transaction_id, kameti.kameti_code, record.round)
    return readiness


# ============================================================
# GATEWAY NOTIFICATION (IPN)
# ============================================================

def handle_notification(params):
    """
    Process a PayFast IPN.

    Returns: dict(status, payment)
    Raises: SignatureError, PaymentNotFoundError
    """
    validate_notification(params)

    transaction_id = params.get('m_payment_id')
    payment = Payment.query.filter_by(transaction_id=transaction_id).first()
    if not payment:
        logger.warning("IPN for unknown transaction %s", transaction_id)
        raise PaymentNotFoundError("Payment not found")

    if payment.status == PaymentStatus.COMPLETED.value:
        return {'status': 'already_processed', 'payment': payment}

    try:
        payment.gateway_response = dict(params)
        payment.gateway_transaction_id = params.get('pf_payment_id')
        gateway_status = (params.get('payment_status') or '').upper()
        record = PaymentRecord.query.filter_by(payment_id=payment.id).first()

        if gateway_status == 'CANCELLED':
            payment.status = PaymentStatus.CANCELLED.value
            payment.add_audit_entry('cancelled', {'gateway_status': gateway_status})
            if record:
                record.status = RecordStatus.CANCELLED.value
            db.session.commit()
            return {'status': payment.status, 'payment': payment}

        if gateway_status != 'COMPLETE':
            payment.status = PaymentStatus.FAILED.value
            payment.add_audit_entry('failed', {'gateway_status': gateway_status})
            db.session.commit()
            return {'status': payment.status, 'payment': payment}

        try:
            amount_gross = float(params.get('amount_gross', payment.amount))
        except (TypeError, ValueError):
            amount_gross = -1.0
        if abs(amount_gross - payment.amount) > 0.01:
            payment.status = PaymentStatus.FAILED.value
            payment.add_audit_entry('amount_mismatch', {'expected': payment.amount,
                                                        'received': params.get('amount_gross')})
            db.session.commit()
            logger.warning("IPN amount mismatch for %s", transaction_id)
            return {'status': payment.status, 'payment': payment}

        payment.add_audit_entry('completed', {'pf_payment_id': payment.gateway_transaction_id})

        if payment.purpose == PaymentPurpose.LOAN_PLEDGE.value:
            from app.services.loan_service import capture_pledge
            payment.status = PaymentStatus.COMPLETED.value
            payment.completed_at = datetime.utcnow()
            capture_pledge(payment)
        else:
            if not record or record.status == RecordStatus.CANCELLED.value:
                raise PaymentStateError("This payment attempt is no longer valid")
            member = payment.kameti.get_member(payment.user_id) if payment.kameti else None
            if member and member.payment_status == MemberPaymentStatus.PAID.value:
                raise PaymentStateError("Member already paid for this round")
            complete_contribution(payment, record)

        db.session.commit()
        return {'status': payment.status, 'payment': payment}

    except PaymentError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise PaymentError(f"Failed to process notification: {str(e)}")


# ============================================================
# MANUAL (OFFLINE) PAYMENTS
# ============================================================

def record_manual_payment(kameti_id, admin_id, member_user_id, method, notes=None):
    """Admin records a cash / bank transfer contribution for a member."""
    try:
        kameti = _get_kameti(kameti_id)
        require_authorization(can_manage_kameti, admin_id, kameti_id)

        if method not in MANUAL_METHODS:
            raise PaymentValidationError(f"Invalid payment method: {method}")

        member = kameti.get_member(member_user_id)
        if not member:
            raise PaymentValidationError("User is not a member of this kameti")
        _ensure_can_pay(kameti, member)

        amount, late_fee, due_date = contribution_due(kameti)
        code = kameti.kameti_code.replace('KAMETI-', '')
        transaction_id = generate_transaction_id('MANUAL', code)

        payment = Payment(
            user_id=member_user_id,
            kameti_id=kameti.id,
            amount=amount,
            payment_method=method,
            transaction_id=transaction_id,
            purpose=PaymentPurpose.CONTRIBUTION.value,
            round=kameti.current_round
        )
        payment.add_audit_entry('recorded_manually', {'by': admin_id, 'notes': notes})
        db.session.add(payment)
        db.session.flush()

        record = PaymentRecord(
            kameti_id=kameti.id,
            user_id=member_user_id,
            round=kameti.current_round,
            total_rounds=kameti.members_count,
            amount=amount,
            payment_method=method,
            transaction_id=transaction_id,
            payment_id=payment.id,
            due_date=due_date,
            late_fee=late_fee,
            verified_by=admin_id,
            verification_notes=notes
        )
        db.session.add(record)

        complete_contribution(payment, record)

        db.session.commit()
        return payment

    except (PaymentError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise PaymentError(f"Failed to record payment: {str(e)}")


# ============================================================
# QUERIES
# ============================================================

def get_user_payments(user_id):
    return Payment.query.filter_by(user_id=user_id).order_by(
        Payment.initiated_at.desc(), Payment.id.desc()
    ).all()


def get_kameti_payments(kameti_id, user_id):
    _get_kameti(kameti_id)
    require_authorization(can_access_kameti_data, user_id, kameti_id)
    return Payment.query.filter_by(kameti_id=kameti_id).order_by(
        Payment.initiated_at.desc(), Payment.id.desc()
    ).all()


def get_payment_statistics(user_id, kameti_id=None):
    """Count, total and average amount per status."""
    query = db.session.query(
        Payment.status,
        db.func.count(Payment.id),
        db.func.sum(Payment.amount),
        db.func.avg(Payment.amount)
    )
    if kameti_id:
        _get_kameti(kameti_id)
        require_authorization(can_manage_kameti, user_id, kameti_id)
        query = query.filter(Payment.kameti_id == kameti_id)
    else:
        query = query.filter(Payment.user_id == user_id)

    stats = {}
    for status, count, total, average in query.group_by(Payment.status).all():
        stats[status] = {
            'count': count,
            'total': round(total or 0.0, 2),
            'average': round(average or 0.0, 2),
        }
    return stats


def get_payment_records(user_id, kameti_id=None):
    query = PaymentRecord.query
    if kameti_id:
        _get_kameti(kameti_id)
        require_authorization(can_manage_kameti, user_id, kameti_id)
        query = query.filter_by(kameti_id=kameti_id)
    else:
        query = query.filter_by(user_id=user_id)
    return query.order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc()).all()


def get_overdue_payments(user_id, on_date=None):
    """
    Members who have not paid the current round after its due date.

    Covers the user's own memberships and every member of kametis the
    user administers.
    """
    on_date = on_date or date.today()
    kametis = Kameti.query.join(KametiMember).filter(
        KametiMember.user_id == user_id,
        Kameti.status.notin_(FINISHED_STATUSES)
    ).all()

    overdue = []
    for kameti in kametis:
        due_date = kameti.due_date_for_round()
        if due_date >= on_date:
            continue
        for member in kameti.unpaid_members():
            if kameti.created_by != user_id and member.user_id != user_id:
                continue
            overdue.append({
                'kameti_id': kameti.id,
                'kameti_name': kameti.name,
                'user_id': member.user_id,
                'name': member.user.full_name,
                'email': member.user.email,
                'round': kameti.current_round,
                'due_date': due_date.isoformat(),
                'days_overdue': (on_date - due_date).days,
                'amount': kameti.contribution_amount + kameti.late_payment_fee,
            })
    return overdue


def count_overdue_members(kameti, on_date=None):
    on_date = on_date or date.today()
    if kameti.status in FINISHED_STATUSES or kameti.due_date_for_round() >= on_date:
        return 0
    return len(kameti.unpaid_members())


def _get_visible_payment(payment, user_id):
    if not payment:
        raise PaymentNotFoundError("Payment not found")
    if payment.user_id != user_id and not (payment.kameti and payment.kameti.created_by == user_id):
        raise AuthorizationError("You do not have access to this payment")
    return payment


def get_payment_by_code(payment_code, user_id):
    payment = Payment.query.filter_by(payment_code=payment_code).first()
    return _get_visible_payment(payment, user_id)


def get_payment_by_transaction(transaction_id, user_id):
    payment = Payment.query.filter_by(transaction_id=transaction_id).first()
    return _get_visible_payment(payment, user_id)


# ============================================================
# OVERDUE SWEEP
# ============================================================

def mark_overdue_records(on_date=None):
    """
    Move pending contribution records past their due date to overdue.
    They can still be paid. Committed by the caller.

    Returns: number of records marked
    """
    on_date = on_date or date.today()
    records = PaymentRecord.query.filter(
        PaymentRecord.status == RecordStatus.PENDING.value,
        PaymentRecord.due_date < on_date
    ).all()
    for record in records:
        record.status = RecordStatus.OVERDUE.value

    if records:
        logger.info("Marked %s payment record(s) overdue", len(records))
    return len(records)
