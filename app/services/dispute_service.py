"""
DISPUTE SERVICE
===============

Members raise disputes about payments, payouts or other members.
The kameti creator reviews, resolves or rejects them.

Status flow: open -> under_review -> resolved | rejected
"""

import logging
import os
import random
import string
from datetime import datetime

from flask import current_app
from werkzeug.utils import secure_filename

from app.extensions import db
from app.models import (
    Kameti, Dispute, PaymentRecord, Payment, DisputeStatus, DisputePriority, DisputeReason,
    Resolution, ResolutionType, PaymentStatus, ActivityType, NotificationType,
    DISPUTE_REASON_LABELS, enum_values
)
from app.services.authorization_service import (
    AuthorizationError, can_access_kameti_data, can_manage_dispute, can_raise_dispute,
    can_view_dispute, require_authorization
)
from app.services.kameti_service import log_activity
from app.services.notification_service import notify, notify_many
from app.utils import timestamp_ms, to_base36

logger = logging.getLogger(__name__)

EXPLANATION_LENGTH = (10, 2000)
MAX_PROOF_FILES = 5
MAX_PROOF_SIZE = 5 * 1024 * 1024
ALLOWED_PROOF_EXTENSIONS = {'jpeg', 'jpg', 'png', 'pdf', 'gif'}
ACTIVE_STATUSES = (DisputeStatus.OPEN.value, DisputeStatus.UNDER_REVIEW.value)


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class DisputeError(Exception):
    """Base exception for dispute operations"""
    pass


class DisputeNotFoundError(DisputeError):
    pass


class DisputeValidationError(DisputeError):
    pass


class DisputeStateError(DisputeError):
    pass


# ============================================================
# HELPERS
# ============================================================

def generate_case_id():
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"CASE-{to_base36(timestamp_ms()).upper()}-{suffix}"


def _get_by_case_id(case_id):
    dispute = Dispute.query.filter_by(case_id=case_id).first()
    if not dispute:
        raise DisputeNotFoundError("Dispute not found")
    return dispute


def _file_size(storage):
    stream = storage.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def validate_proof_files(files):
    files = [f for f in (files or []) if f and f.filename]
    if len(files) > MAX_PROOF_FILES:
        raise DisputeValidationError(f"You can upload at most {MAX_PROOF_FILES} files")

    for storage in files:
        extension = storage.filename.rsplit('.', 1)[-1].lower() if '.' in storage.filename else ''
        if extension not in ALLOWED_PROOF_EXTENSIONS:
            raise DisputeValidationError(
                "Only images (JPEG, JPG, PNG, GIF) and PDF files are allowed")
        if _file_size(storage) > MAX_PROOF_SIZE:
            raise DisputeValidationError(f"{storage.filename} exceeds the 5MB limit")
    return files


def save_proof_files(case_id, files):
    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], 'disputes')
    os.makedirs(folder, exist_ok=True)

    saved = []
    for index, storage in enumerate(files, start=1):
        original = secure_filename(storage.filename) or f"proof{index}"
        filename = f"{case_id}-{index}-{original}"
        path = os.path.join(folder, filename)
        storage.save(path)
        saved.append({
            'filename': filename,
            'original_name': storage.filename,
            'path': path,
            'size': os.path.getsize(path),
            'uploaded_at': datetime.utcnow().isoformat(),
        })
    return saved


def _remove_files(proof_files):
    for proof in proof_files or []:
        try:
            os.remove(proof['path'])
        except OSError:
            logger.warning("Could not remove proof file %s", proof.get('path'))


# ============================================================
# RAISE
# ============================================================

def can_raise_for_transaction(user_id, transaction_id):
    """A transaction may have only one open or under-review dispute per user."""
    if not transaction_id:
        return True, None

    existing = Dispute.query.filter(
        Dispute.user_id == user_id,
        Dispute.transaction_id == transaction_id,
        Dispute.status.in_(ACTIVE_STATUSES)
    ).first()
    if existing:
        return False, f"An active dispute ({existing.case_id}) already exists for this transaction"
    return True, None


def raise_dispute(user_id, data, files=None):
    """
    Raise a dispute in a kameti the user belongs to.

    Returns: Dispute
    """
    saved_files = []
    try:
        try:
            kameti_id = int(data.get('kameti_id'))
        except (TypeError, ValueError):
            raise DisputeValidationError("kameti_id is required")

        kameti = db.session.get(Kameti, kameti_id)
        if not kameti:
            raise DisputeNotFoundError("Kameti not found")
        require_authorization(can_raise_dispute, user_id, kameti_id)

        reason = data.get('reason')
        if reason not in enum_values(DisputeReason):
            raise DisputeValidationError("Please select a valid dispute reason")

        explanation = (data.get('explanation') or '').strip()
        if not EXPLANATION_LENGTH[0] <= len(explanation) <= EXPLANATION_LENGTH[1]:
            raise DisputeValidationError("Explanation must be between 10 and 2000 characters")

        priority = data.get('priority') or DisputePriority.MEDIUM.value
        if priority not in enum_values(DisputePriority):
            raise DisputeValidationError(f"Invalid priority: {priority}")

        transaction_id = (data.get('transaction_id') or '').strip() or None
        record = None
        if data.get('payment_record_id'):
            record = db.session.get(PaymentRecord, int(data['payment_record_id']))
            if not record or record.user_id != user_id:
                raise DisputeValidationError("Payment record not found for this user")
            transaction_id = transaction_id or record.transaction_id

        if transaction_id:
            payment = Payment.query.filter_by(transaction_id=transaction_id).first()
            if not payment or payment.user_id != user_id:
                raise DisputeValidationError("Transaction not found for this user")

        allowed, reason_text = can_raise_for_transaction(user_id, transaction_id)
        if not allowed:
            raise DisputeStateError(reason_text)

        files = validate_proof_files(files)
        case_id = generate_case_id()
        saved_files = save_proof_files(case_id, files)

        dispute = Dispute(
            case_id=case_id,
            kameti_id=kameti_id,
            user_id=user_id,
            payment_record_id=record.id if record else None,
            transaction_id=transaction_id,
            reason=reason,
            explanation=explanation,
            proof_files=saved_files,
            priority=priority
        )
        db.session.add(dispute)
        db.session.flush()

        raiser = dispute.user
        log_activity(kameti, ActivityType.DISPUTE_RAISED.value,
                     f"{raiser.full_name} raised dispute {case_id}: "
                     f"{DISPUTE_REASON_LABELS[reason]}",
                     user_id=user_id)

        data_payload = {'kameti_id': kameti.id, 'case_id': case_id, 'reason': reason}
        if kameti.created_by != user_id:
            notify(
                kameti.created_by,
                NotificationType.DISPUTE_RAISED.value,
                'New Dispute Raised',
                f'{raiser.full_name} raised a dispute in "{kameti.name}": '
                f'{DISPUTE_REASON_LABELS[reason]} ({case_id}).',
                data_payload
            )
        notify_many(
            [m.user_id for m in kameti.members
             if m.user_id not in (user_id, kameti.created_by)],
            NotificationType.DISPUTE_RAISED.value,
            'Dispute Raised',
            f'A dispute was raised in "{kameti.name}" ({DISPUTE_REASON_LABELS[reason]}).',
            data_payload
        )

        db.session.commit()
        logger.info("Dispute %s raised by user %s in kameti %s", case_id, user_id, kameti_id)
        return dispute

    except (DisputeError, AuthorizationError):
        db.session.rollback()
        _remove_files(saved_files)
        raise
    except Exception as e:
        db.session.rollback()
        _remove_files(saved_files)
        raise DisputeError(f"Failed to raise dispute: {str(e)}")


# ============================================================
# READ
# ============================================================

def list_user_disputes(user_id):
    return Dispute.query.filter_by(user_id=user_id).order_by(
        Dispute.created_at.desc(), Dispute.id.desc()
    ).all()


def list_kameti_disputes(kameti_id, user_id):
    if not db.session.get(Kameti, kameti_id):
        raise DisputeNotFoundError("Kameti not found")
    require_authorization(can_access_kameti_data, user_id, kameti_id)
    return Dispute.query.filter_by(kameti_id=kameti_id).order_by(
        Dispute.created_at.desc(), Dispute.id.desc()
    ).all()


def get_dispute(case_id, user_id):
    dispute = _get_by_case_id(case_id)
    require_authorization(can_view_dispute, user_id, dispute.id)
    return dispute


def _admin_query(admin_id):
    return Dispute.query.join(Kameti).filter(Kameti.created_by == admin_id)


def list_admin_disputes(admin_id, status=None, priority=None):
    query = _admin_query(admin_id)
    if status:
        query = query.filter(Dispute.status == status)
    if priority:
        query = query.filter(Dispute.priority == priority)
    return query.order_by(Dispute.created_at.desc(), Dispute.id.desc()).all()


def get_statistics(admin_id):
    disputes = _admin_query(admin_id).all()

    def _count(attribute, values):
        return {value: sum(1 for d in disputes if getattr(d, attribute) == value)
                for value in values}

    return {
        'total': len(disputes),
        'by_status': _count('status', enum_values(DisputeStatus)),
        'by_priority': _count('priority', enum_values(DisputePriority)),
        'by_reason': _count('reason', enum_values(DisputeReason)),
    }


# ============================================================
# ADMIN ACTIONS
# ============================================================

def _load_for_admin(case_id, admin_id):
    dispute = _get_by_case_id(case_id)
    require_authorization(can_manage_dispute, admin_id, dispute.id)
    return dispute


def _notify_outcome(dispute, title, message):
    notify(
        dispute.user_id,
        NotificationType.DISPUTE_RESOLVED.value,
        title,
        message,
        {'kameti_id': dispute.kameti_id, 'case_id': dispute.case_id,
         'status': dispute.status, 'resolution_type': dispute.resolution_type}
    )


def review_dispute(case_id, admin_id):
    try:
        dispute = _load_for_admin(case_id, admin_id)
        if dispute.status != DisputeStatus.OPEN.value:
            raise DisputeStateError("Only open disputes can be moved to review")

        dispute.status = DisputeStatus.UNDER_REVIEW.value
        dispute.reviewed_by = admin_id
        dispute.reviewed_at = datetime.utcnow()
        notify(
            dispute.user_id,
            NotificationType.DISPUTE_RAISED.value,
            'Dispute Under Review',
            f'Your dispute {dispute.case_id} is now under review.',
            {'kameti_id': dispute.kameti_id, 'case_id': dispute.case_id}
        )

        db.session.commit()
        return dispute

    except (DisputeError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise DisputeError(f"Failed to review dispute: {str(e)}")


def _apply_refund(dispute, admin_id):
    """Refund resolutions mark the linked completed payment refunded."""
    if not dispute.transaction_id:
        return None

    payment = Payment.query.filter_by(transaction_id=dispute.transaction_id).first()
    if not payment or payment.status != PaymentStatus.COMPLETED.value:
        return None

    payment.status = PaymentStatus.REFUNDED.value
    payment.add_audit_entry('refunded', {'case_id': dispute.case_id, 'by': admin_id,
                                         'amount': dispute.resolution_amount or payment.amount})
    logger.info("Payment %s refunded via dispute %s", payment.transaction_id, dispute.case_id)
    return payment


def resolve_dispute(case_id, admin_id, data):
    try:
        dispute = _load_for_admin(case_id, admin_id)
        if dispute.status in (DisputeStatus.RESOLVED.value, DisputeStatus.CLOSED.value):
            raise DisputeStateError(f"Dispute is already {dispute.status}")

        resolution_type = data.get('resolution_type')
        if resolution_type not in enum_values(ResolutionType):
            raise DisputeValidationError("Please select a valid resolution type")

        notes = (data.get('resolution_notes') or '').strip()
        if not notes:
            raise DisputeValidationError("Resolution notes are required")

        amount = data.get('resolution_amount')
        if amount not in (None, ''):
            try:
                amount = float(amount)
            except (TypeError, ValueError):
                raise DisputeValidationError("Resolution amount must be a number")
            if amount < 0:
                raise DisputeValidationError("Resolution amount cannot be negative")
        else:
            amount = None

        now = datetime.utcnow()
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.resolution = Resolution.APPROVED.value
        dispute.resolution_type = resolution_type
        dispute.resolution_amount = amount
        dispute.resolution_notes = notes
        dispute.reviewed_by = admin_id
        dispute.reviewed_at = dispute.reviewed_at or now
        dispute.resolved_at = now

        if resolution_type == ResolutionType.REFUND.value:
            _apply_refund(dispute, admin_id)

        log_activity(dispute.kameti, ActivityType.DISPUTE_RESOLVED.value,
                     f"Dispute {dispute.case_id} resolved ({resolution_type})",
                     user_id=dispute.user_id, amount=amount)
        _notify_outcome(dispute, 'Dispute Resolved',
                        f'Your dispute {dispute.case_id} was resolved: {notes}')

        db.session.commit()
        return dispute

    except (DisputeError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise DisputeError(f"Failed to resolve dispute: {str(e)}")


def reject_dispute(case_id, admin_id, notes):
    try:
        dispute = _load_for_admin(case_id, admin_id)
        if dispute.status not in ACTIVE_STATUSES:
            raise DisputeStateError(f"Dispute is already {dispute.status}")

        notes = (notes or '').strip()
        if not notes:
            raise DisputeValidationError("Rejection notes are required")

        now = datetime.utcnow()
        dispute.status = DisputeStatus.REJECTED.value
        dispute.resolution = Resolution.REJECTED.value
        dispute.resolution_notes = notes
        dispute.reviewed_by = admin_id
        dispute.reviewed_at = dispute.reviewed_at or now
        dispute.resolved_at = now

        log_activity(dispute.kameti, ActivityType.DISPUTE_RESOLVED.value,
                     f"Dispute {dispute.case_id} rejected", user_id=dispute.user_id)
        _notify_outcome(dispute, 'Dispute Rejected',
                        f'Your dispute {dispute.case_id} was rejected: {notes}')

        db.session.commit()
        return dispute

    except (DisputeError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise DisputeError(f"Failed to reject dispute: {str(e)}")


def update_priority(case_id, admin_id, priority):
    try:
        dispute = _load_for_admin(case_id, admin_id)
        if priority not in enum_values(DisputePriority):
            raise DisputeValidationError(f"Invalid priority: {priority}")

        dispute.priority = priority
        db.session.commit()
        return dispute

    except (DisputeError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise DisputeError(f"Failed to update priority: {str(e)}")


def delete_dispute(case_id, admin_id):
    try:
        dispute = _load_for_admin(case_id, admin_id)
        proof_files = list(dispute.proof_files or [])
        db.session.delete(dispute)
        db.session.commit()
        _remove_files(proof_files)
        logger.info("Dispute %s deleted by user %s", case_id, admin_id)

    except (DisputeError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise DisputeError(f"Failed to delete dispute: {str(e)}")
