import enum
import hashlib
import math
import secrets
from datetime import datetime, date, timedelta

from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin

from app.extensions import db
from app.utils import generate_code, iso, round_due_date


# ============================================================
# ENUMS
# ============================================================

class MemberRole(enum.Enum):
    ADMIN = 'admin'
    MEMBER = 'member'


class KametiStatus(enum.Enum):
    PENDING = 'Pending'
    ACTIVE = 'Active'
    CLOSED = 'Closed'


FINISHED_STATUSES = (KametiStatus.CLOSED.value,)


class ContributionFrequency(enum.Enum):
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'
    QUARTERLY = 'quarterly'


class PayoutOrder(enum.Enum):
    RANDOM = 'random'
    SEQUENTIAL = 'sequential'
    BIDDING = 'bidding'
    ADMIN = 'admin'


class MemberPaymentStatus(enum.Enum):
    UNPAID = 'unpaid'
    PAID = 'paid'


class JoinRequestStatus(enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ActivityType(enum.Enum):
    PAYMENT = 'payment'
    MEMBER_JOINED = 'member_joined'
    MEMBER_LEFT = 'member_left'
    DISPUTE_RAISED = 'dispute_raised'
    DISPUTE_RESOLVED = 'dispute_resolved'
    PAYOUT = 'payout'
    ROUND_COMPLETED = 'round_completed'


class DeleteRequestStatus(enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


class PaymentStatus(enum.Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class PaymentMethod(enum.Enum):
    PAYFAST = 'payfast'
    JAZZCASH = 'jazzcash'
    EASYPAISA = 'easypaisa'
    BANK_TRANSFER = 'bank_transfer'
    CASH = 'cash'
    DEMO = 'demo'


class PaymentPurpose(enum.Enum):
    CONTRIBUTION = 'contribution'
    LOAN_PLEDGE = 'loan_pledge'


class RecordStatus(enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    OVERDUE = 'overdue'
    CANCELLED = 'cancelled'


class PayoutStatus(enum.Enum):
    COMPLETED = 'completed'


class DisputeReason(enum.Enum):
    PAYMENT_NOT_RECORDED = 'payment_not_recorded'
    INCORRECT_AMOUNT = 'incorrect_amount'
    DUPLICATE_PAYMENT = 'duplicate_payment'
    REFUND_REQUEST = 'refund_request'
    LATE_FEE_DISPUTE = 'late_fee_dispute'
    INTEREST_DISPUTE = 'interest_dispute'
    PAYOUT_ISSUE = 'payout_issue'
    MEMBER_ISSUE = 'member_issue'
    OTHER = 'other'


DISPUTE_REASON_LABELS = {
    'payment_not_recorded': 'Payment Not Recorded',
    'incorrect_amount': 'Incorrect Amount',
    'duplicate_payment': 'Duplicate Payment',
    'refund_request': 'Refund Request',
    'late_fee_dispute': 'Late Fee Dispute',
    'interest_dispute': 'Interest Rate Dispute',
    'payout_issue': 'Payout Issue',
    'member_issue': 'Member Issue',
    'other': 'Other',
}


class DisputeStatus(enum.Enum):
    OPEN = 'open'
    UNDER_REVIEW = 'under_review'
    RESOLVED = 'resolved'
    REJECTED = 'rejected'
    CLOSED = 'closed'


class DisputePriority(enum.Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    URGENT = 'urgent'


class Resolution(enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ResolutionType(enum.Enum):
    REFUND = 'refund'
    PENALTY = 'penalty'
    ADJUSTMENT = 'adjustment'
    NO_ACTION = 'no_action'
    OTHER = 'other'


class LoanStatus(enum.Enum):
    OPEN = 'open'
    FUNDED = 'funded'
    ACTIVE = 'active'
    REPAYING = 'repaying'
    COMPLETED = 'completed'
    DEFAULTED = 'defaulted'
    CANCELLED = 'cancelled'


LIVE_LOAN_STATUSES = (
    LoanStatus.OPEN.value,
    LoanStatus.FUNDED.value,
    LoanStatus.ACTIVE.value,
    LoanStatus.REPAYING.value,
)


class ScheduleType(enum.Enum):
    AMORTIZED = 'amortized'
    BULLET = 'bullet'


class PledgeStatus(enum.Enum):
    PENDING = 'pending'
    PLEDGED = 'pledged'
    CAPTURED = 'captured'
    REFUNDED = 'refunded'
    TRANSFERRED = 'transferred'


class RepaymentStatus(enum.Enum):
    DUE = 'due'
    PAID = 'paid'
    LATE = 'late'


class NotificationType(enum.Enum):
    PAYMENT_RECEIVED = 'payment_received'
    JOIN_REQUEST = 'join_request'
    REQUEST_APPROVED = 'request_approved'
    REQUEST_REJECTED = 'request_rejected'
    KAMETI_UPDATE = 'kameti_update'
    DISPUTE_RAISED = 'dispute_raised'
    DISPUTE_RESOLVED = 'dispute_resolved'
    PAYMENT_REMINDER = 'payment_reminder'
    ROUND_READY = 'round_ready'
    PAYOUT_RECEIVED = 'payout_received'
    LOAN_FUNDED = 'loan_funded'
    LOAN_TRANSFERRED = 'loan_transferred'
    DELETE_REQUEST = 'delete_request'


def enum_values(enum_class):
    return [item.value for item in enum_class]


RESET_TOKEN_LIFETIME = timedelta(hours=1)


def hash_reset_token(token):
    return hashlib.sha256(token.encode()).hexdigest()


# ============================================================
# USER MODEL
# ============================================================
class User(UserMixin, db.Model):
    """
    A registered user.
    Users create kametis, join them, pay contributions, raise disputes
    and lend to each other.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    phone = db.Column(db.String(20))
    cnic = db.Column(db.String(15))
    cnic_image = db.Column(db.String(255))
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    reset_token_hash = db.Column(db.String(64), index=True)
    reset_token_expires = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    memberships = db.relationship('KametiMember', backref='user', lazy='dynamic',
                                  cascade='all, delete-orphan')
    notifications = db.relationship('Notification', backref='user', lazy='dynamic',
                                    cascade='all, delete-orphan')

    def set_password(self, password):
        """Hash and set the user's password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against stored hash."""
        return check_password_hash(self.password_hash, password)

    def issue_reset_token(self, lifetime=RESET_TOKEN_LIFETIME):
        """Store a hashed reset token and return the raw one for the email link."""
        token = secrets.token_hex(32)
        self.reset_token_hash = hash_reset_token(token)
        self.reset_token_expires = datetime.utcnow() + lifetime
        return token

    def clear_reset_token(self):
        self.reset_token_hash = None
        self.reset_token_expires = None

    @property
    def profile_complete(self):
        return all([self.full_name, self.email, self.phone, self.cnic])

    @property
    def first_name(self):
        parts = (self.full_name or '').split()
        return parts[0] if parts else ''

    @property
    def last_name(self):
        parts = (self.full_name or '').split()
        return ' '.join(parts[1:])

    def to_dict(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'email': self.email,
            'phone': self.phone,
            'cnic': self.cnic,
            'cnic_image': self.cnic_image,
            'is_verified': self.is_verified,
            'profile_complete': self.profile_complete,
            'created_at': iso(self.created_at),
        }

    def __repr__(self):
        return f'<User {self.email}>'


# ============================================================
# KAMETI MODEL
# ============================================================
class Kameti(db.Model):
    """
    A rotating savings group.

    Every round each member contributes `amount`; once the round is
    ready the pooled amount is paid out to one member. After the last
    round the kameti is closed.
    """
    __tablename__ = 'kametis'

    id = db.Column(db.Integer, primary_key=True)
    kameti_code = db.Column(db.String(20), unique=True, nullable=False,
                            default=lambda: generate_code('KAMETI'))
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    contribution_frequency = db.Column(db.String(20), nullable=False,
                                       default=ContributionFrequency.MONTHLY.value)
    start_date = db.Column(db.Date, nullable=False)
    members_count = db.Column(db.Integer, nullable=False)
    current_round = db.Column(db.Integer, default=1, nullable=False)
    round_label = db.Column(db.String(40))
    payout_order = db.Column(db.String(20), default=PayoutOrder.RANDOM.value, nullable=False)
    is_private = db.Column(db.Boolean, default=False, nullable=False)
    auto_reminders = db.Column(db.Boolean, default=True, nullable=False)
    late_payment_fee = db.Column(db.Float, default=0.0, nullable=False)
    status = db.Column(db.String(20), default=KametiStatus.PENDING.value, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    total_collected = db.Column(db.Float, default=0.0, nullable=False)
    total_disbursed = db.Column(db.Float, default=0.0, nullable=False)

    # Payout policy overrides (admin)
    allow_payout_with_fewer_members = db.Column(db.Boolean, default=False, nullable=False)
    adjusted_members_count = db.Column(db.Integer)
    adjusted_amount = db.Column(db.Float)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    creator = db.relationship('User', foreign_keys=[created_by])
    members = db.relationship('KametiMember', backref='kameti', order_by='KametiMember.id',
                              cascade='all, delete-orphan')
    join_requests = db.relationship('JoinRequest', backref='kameti', lazy='dynamic',
                                    cascade='all, delete-orphan')
    activities = db.relationship('KametiActivity', backref='kameti', lazy='dynamic',
                                 cascade='all, delete-orphan')
    delete_requests = db.relationship('DeleteRequest', backref='kameti', lazy='dynamic',
                                      cascade='all, delete-orphan')
    payouts = db.relationship('Payout', backref='kameti', lazy='dynamic',
                              cascade='all, delete-orphan')
    disputes = db.relationship('Dispute', backref='kameti', lazy='dynamic',
                               cascade='all, delete-orphan')
    loans = db.relationship('LoanRequest', backref='kameti', lazy='dynamic',
                            cascade='all, delete-orphan')

    @property
    def is_finished(self):
        return self.status in FINISHED_STATUSES

    @property
    def is_full(self):
        return len(self.members) >= self.members_count

    @property
    def contribution_amount(self):
        """Per-member contribution for a round, honouring the admin override."""
        return self.adjusted_amount or self.amount

    def get_member(self, user_id):
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def is_member(self, user_id):
        return self.get_member(user_id) is not None

    def is_admin(self, user_id):
        return self.created_by == user_id

    def paid_members(self):
        return [m for m in self.members if m.payment_status == MemberPaymentStatus.PAID.value]

    def unpaid_members(self):
        return [m for m in self.members if m.payment_status != MemberPaymentStatus.PAID.value]

    def due_date_for_round(self, round_number=None):
        return round_due_date(self.start_date, self.contribution_frequency,
                              round_number or self.current_round)

    def update_round_label(self):
        if self.status == KametiStatus.CLOSED.value:
            self.round_label = f"Closed ({self.members_count} of {self.members_count})"
        else:
            self.round_label = f"{self.current_round} of {self.members_count}"

    def to_dict(self, include_members=True):
        data = {
            'id': self.id,
            'kameti_code': self.kameti_code,
            'name': self.name,
            'description': self.description,
            'amount': self.amount,
            'contribution_amount': self.contribution_amount,
            'contribution_frequency': self.contribution_frequency,
            'start_date': iso(self.start_date),
            'members_count': self.members_count,
            'current_members': len(self.members),
            'current_round': self.current_round,
            'round': self.round_label,
            'due_date': iso(self.due_date_for_round()),
            'payout_order': self.payout_order,
            'is_private': self.is_private,
            'auto_reminders': self.auto_reminders,
            'late_payment_fee': self.late_payment_fee,
            'status': self.status,
            'created_by': self.created_by,
            'total_collected': self.total_collected,
            'total_disbursed': self.total_disbursed,
            'allow_payout_with_fewer_members': self.allow_payout_with_fewer_members,
            'adjusted_members_count': self.adjusted_members_count,
            'adjusted_amount': self.adjusted_amount,
            'created_at': iso(self.created_at),
        }
        if include_members:
            data['members'] = [m.to_dict() for m in self.members]
        return data

    def __repr__(self):
        return f'<Kameti {self.kameti_code} {self.name}>'


# ============================================================
# KAMETI MEMBER MODEL
# ============================================================
class KametiMember(db.Model):
    """
    Membership of a user in a kameti together with the member's
    payment state for the current round.
    """
    __tablename__ = 'kameti_members'

    id = db.Column(db.Integer, primary_key=True)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), default=MemberRole.MEMBER.value, nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Current round
    payment_status = db.Column(db.String(20), default=MemberPaymentStatus.UNPAID.value,
                               nullable=False)
    last_payment_date = db.Column(db.DateTime)
    transaction_id = db.Column(db.String(100))

    # Rotation
    has_received_payout = db.Column(db.Boolean, default=False, nullable=False)
    payout_round = db.Column(db.Integer)

    __table_args__ = (
        db.UniqueConstraint('kameti_id', 'user_id', name='unique_kameti_member'),
    )

    def reset_payment(self):
        self.payment_status = MemberPaymentStatus.UNPAID.value
        self.last_payment_date = None
        self.transaction_id = None

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'name': self.user.full_name if self.user else None,
            'email': self.user.email if self.user else None,
            'role': self.role,
            'joined_at': iso(self.joined_at),
            'payment_status': self.payment_status,
            'last_payment_date': iso(self.last_payment_date),
            'transaction_id': self.transaction_id,
            'has_received_payout': self.has_received_payout,
            'payout_round': self.payout_round,
        }

    def __repr__(self):
        return f'<KametiMember user={self.user_id} kameti={self.kameti_id}>'


# ============================================================
# JOIN REQUEST MODEL
# ============================================================
class JoinRequest(db.Model):
    """A user's request to join a kameti, answered by the kameti admin."""
    __tablename__ = 'join_requests'

    id = db.Column(db.Integer, primary_key=True)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    message = db.Column(db.String(500))
    status = db.Column(db.String(20), default=JoinRequestStatus.PENDING.value, nullable=False)
    requested_at = db.Column(db.DateTime, default=datetime.utcnow)
    responded_at = db.Column(db.DateTime)

    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'kameti_id': self.kameti_id,
            'user_id': self.user_id,
            'name': self.user.full_name if self.user else None,
            'email': self.user.email if self.user else None,
            'message': self.message,
            'status': self.status,
            'requested_at': iso(self.requested_at),
            'responded_at': iso(self.responded_at),
        }


# ============================================================
# KAMETI ACTIVITY MODEL
# ============================================================
class KametiActivity(db.Model):
    """Audit feed of everything that happened inside a kameti."""
    __tablename__ = 'kameti_activities'

    id = db.Column(db.Integer, primary_key=True)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    activity_type = db.Column(db.String(30), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    description = db.Column(db.String(500))
    amount = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.activity_type,
            'user_id': self.user_id,
            'user_name': self.user.full_name if self.user else None,
            'description': self.description,
            'amount': self.amount,
            'created_at': iso(self.created_at),
        }


# ============================================================
# DELETE REQUEST MODELS
# ============================================================
class DeleteRequest(db.Model):
    """
    Creator's request to delete a running kameti.
    Every member must approve; a single rejection ends the request.
    """
    __tablename__ = 'delete_requests'

    id = db.Column(db.Integer, primary_key=True)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    requested_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    reason = db.Column(db.String(500))
    status = db.Column(db.String(20), default=DeleteRequestStatus.PENDING.value, nullable=False)
    requested_at = db.Column(db.DateTime, default=datetime.utcnow)

    approvals = db.relationship('DeleteApproval', backref='delete_request',
                                order_by='DeleteApproval.id', cascade='all, delete-orphan')

    def approved_count(self):
        return sum(1 for a in self.approvals if a.approved is True)

    def to_dict(self):
        return {
            'id': self.id,
            'kameti_id': self.kameti_id,
            'requested_by': self.requested_by,
            'reason': self.reason,
            'status': self.status,
            'requested_at': iso(self.requested_at),
            'progress': f"{self.approved_count()}/{len(self.approvals)}",
            'approvals': [a.to_dict() for a in self.approvals],
        }


class DeleteApproval(db.Model):
    """One member's vote on a delete request. `approved` is None until voted."""
    __tablename__ = 'delete_approvals'

    id = db.Column(db.Integer, primary_key=True)
    delete_request_id = db.Column(db.Integer, db.ForeignKey('delete_requests.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    approved = db.Column(db.Boolean)
    voted_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'approved': self.approved,
            'voted_at': iso(self.voted_at),
        }


# ============================================================
# PAYMENT MODEL
# ============================================================
class Payment(db.Model):
    """
    A gateway (or manually recorded) payment.

    Created as 'pending' when the payer is redirected to the gateway and
    completed by the gateway notification. `audit_trail` keeps every
    status change.
    """
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    payment_code = db.Column(db.String(30), unique=True, nullable=False,
                             default=lambda: generate_code('PAY', 10))
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'))
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), default='PKR', nullable=False)
    payment_method = db.Column(db.String(20), default=PaymentMethod.PAYFAST.value, nullable=False)
    transaction_id = db.Column(db.String(100), unique=True, nullable=False)
    gateway_transaction_id = db.Column(db.String(100))
    status = db.Column(db.String(20), default=PaymentStatus.PENDING.value, nullable=False)
    purpose = db.Column(db.String(20), default=PaymentPurpose.CONTRIBUTION.value, nullable=False)
    round = db.Column(db.Integer)
    pledge_id = db.Column(db.Integer, db.ForeignKey('loan_pledges.id'))
    gateway_response = db.Column(db.JSON)
    audit_trail = db.Column(db.JSON, default=list)
    initiated_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    user = db.relationship('User')
    kameti = db.relationship('Kameti')

    def add_audit_entry(self, action, details=None):
        # reassign so the JSON column is flagged dirty
        self.audit_trail = list(self.audit_trail or []) + [{
            'action': action,
            'timestamp': datetime.utcnow().isoformat(),
            'details': details or {},
        }]

    def to_dict(self):
        return {
            'id': self.id,
            'payment_code': self.payment_code,
            'user_id': self.user_id,
            'kameti_id': self.kameti_id,
            'kameti_name': self.kameti.name if self.kameti else None,
            'amount': self.amount,
            'currency': self.currency,
            'payment_method': self.payment_method,
            'transaction_id': self.transaction_id,
            'gateway_transaction_id': self.gateway_transaction_id,
            'status': self.status,
            'purpose': self.purpose,
            'round': self.round,
            'audit_trail': self.audit_trail or [],
            'initiated_at': iso(self.initiated_at),
            'completed_at': iso(self.completed_at),
        }

    def __repr__(self):
        return f'<Payment {self.transaction_id} {self.status}>'


# ============================================================
# PAYMENT RECORD MODEL
# ============================================================
class PaymentRecord(db.Model):
    """
    A member's contribution for one round of a kameti, including
    lateness. Used for history, overdue tracking and risk scoring.
    """
    __tablename__ = 'payment_records'

    id = db.Column(db.Integer, primary_key=True)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    round = db.Column(db.Integer, nullable=False)
    total_rounds = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    payment_method = db.Column(db.String(20), default=PaymentMethod.PAYFAST.value)
    transaction_id = db.Column(db.String(100))
    payment_id = db.Column(db.Integer, db.ForeignKey('payments.id'))
    status = db.Column(db.String(20), default=RecordStatus.PENDING.value, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    paid_at = db.Column(db.DateTime)
    is_late = db.Column(db.Boolean, default=False, nullable=False)
    late_fee = db.Column(db.Float, default=0.0, nullable=False)
    days_late = db.Column(db.Integer, default=0, nullable=False)
    verified_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    verification_notes = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', foreign_keys=[user_id])
    kameti = db.relationship('Kameti')
    payment = db.relationship('Payment')

    def mark_as_paid(self, transaction_id, paid_at=None, late_fee=0.0):
        """Mark paid and work out lateness against the due date."""
        self.status = RecordStatus.PAID.value
        self.transaction_id = transaction_id
        self.paid_at = paid_at or datetime.utcnow()
        deadline = datetime.combine(self.due_date + timedelta(days=1), datetime.min.time())
        if self.paid_at >= deadline:
            overdue_days = (self.paid_at - deadline).total_seconds() / 86400
            self.days_late = max(math.ceil(overdue_days), 1)
            self.is_late = True
            self.late_fee = late_fee
        else:
            self.is_late = False
            self.days_late = 0
            self.late_fee = 0.0

    @property
    def is_overdue(self):
        if self.status == RecordStatus.OVERDUE.value:
            return True
        return self.status == RecordStatus.PENDING.value and self.due_date < date.today()

    def to_dict(self):
        return {
            'id': self.id,
            'kameti_id': self.kameti_id,
            'kameti_name': self.kameti.name if self.kameti else None,
            'user_id': self.user_id,
            'round': self.round,
            'total_rounds': self.total_rounds,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'transaction_id': self.transaction_id,
            'status': self.status,
            'due_date': iso(self.due_date),
            'paid_at': iso(self.paid_at),
            'is_late': self.is_late,
            'late_fee': self.late_fee,
            'days_late': self.days_late,
            'is_overdue': self.is_overdue,
            'verified_by': self.verified_by,
        }


# ============================================================
# PAYOUT MODEL
# ============================================================
class Payout(db.Model):
    """The pooled amount of one round released to its recipient."""
    __tablename__ = 'payouts'

    id = db.Column(db.Integer, primary_key=True)
    payout_code = db.Column(db.String(30), unique=True, nullable=False,
                            default=lambda: generate_code('PAYOUT', 10))
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    recipient_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    round = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    paid_members = db.Column(db.Integer, nullable=False)
    selection_method = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), default=PayoutStatus.COMPLETED.value, nullable=False)
    processed_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    recipient = db.relationship('User', foreign_keys=[recipient_id])

    def to_dict(self):
        return {
            'id': self.id,
            'payout_code': self.payout_code,
            'kameti_id': self.kameti_id,
            'recipient_id': self.recipient_id,
            'recipient_name': self.recipient.full_name if self.recipient else None,
            'round': self.round,
            'amount': self.amount,
            'paid_members': self.paid_members,
            'selection_method': self.selection_method,
            'status': self.status,
            'processed_by': self.processed_by,
            'created_at': iso(self.created_at),
        }


# ============================================================
# DISPUTE MODEL
# ============================================================
class Dispute(db.Model):
    """
    A member's complaint about a payment, payout or another member.

    Lifecycle: open -> under_review -> resolved | rejected.
    Only the kameti creator acts on disputes.
    """
    __tablename__ = 'disputes'

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(30), unique=True, nullable=False)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    payment_record_id = db.Column(db.Integer, db.ForeignKey('payment_records.id'))
    transaction_id = db.Column(db.String(100))
    reason = db.Column(db.String(30), nullable=False)
    explanation = db.Column(db.Text, nullable=False)
    proof_files = db.Column(db.JSON, default=list)
    status = db.Column(db.String(20), default=DisputeStatus.OPEN.value, nullable=False)
    priority = db.Column(db.String(10), default=DisputePriority.MEDIUM.value, nullable=False)

    resolution = db.Column(db.String(20), default=Resolution.PENDING.value, nullable=False)
    resolution_type = db.Column(db.String(20))
    resolution_amount = db.Column(db.Float)
    resolution_notes = db.Column(db.Text)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    reviewed_at = db.Column(db.DateTime)
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', foreign_keys=[user_id])
    payment_record = db.relationship('PaymentRecord')

    @property
    def reason_label(self):
        return DISPUTE_REASON_LABELS.get(self.reason, self.reason)

    @property
    def days_open(self):
        end = self.resolved_at or datetime.utcnow()
        return (end - self.created_at).days

    def to_dict(self):
        return {
            'id': self.id,
            'case_id': self.case_id,
            'kameti_id': self.kameti_id,
            'kameti_name': self.kameti.name if self.kameti else None,
            'user_id': self.user_id,
            'user_name': self.user.full_name if self.user else None,
            'payment_record_id': self.payment_record_id,
            'transaction_id': self.transaction_id,
            'reason': self.reason,
            'reason_label': self.reason_label,
            'explanation': self.explanation,
            'proof_files': self.proof_files or [],
            'status': self.status,
            'priority': self.priority,
            'resolution': self.resolution,
            'resolution_type': self.resolution_type,
            'resolution_amount': self.resolution_amount,
            'resolution_notes': self.resolution_notes,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': iso(self.reviewed_at),
            'resolved_at': iso(self.resolved_at),
            'days_open': self.days_open,
            'created_at': iso(self.created_at),
        }


# ============================================================
# P2P LOAN MODELS
# ============================================================
class LoanRequest(db.Model):
    """
    A member's peer-to-peer loan request inside a kameti.

    Lifecycle:
    1. open       - members pledge towards `amount`
    2. funded     - pledges captured reach `amount`
    3. active     - borrower activated; repayment schedule generated
    4. repaying   - at least one installment paid
    5. completed  - every installment paid
    """
    __tablename__ = 'loan_requests'

    id = db.Column(db.Integer, primary_key=True)
    borrower_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    funded_amount = db.Column(db.Float, default=0.0, nullable=False)
    term_months = db.Column(db.Integer, nullable=False)
    interest_rate = db.Column(db.Float, default=0.0, nullable=False)
    purpose = db.Column(db.String(500), nullable=False)
    schedule_type = db.Column(db.String(20), default=ScheduleType.AMORTIZED.value, nullable=False)
    status = db.Column(db.String(20), default=LoanStatus.OPEN.value, nullable=False)
    risk_score = db.Column(db.Integer)
    risk_level = db.Column(db.String(20))
    activation_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    borrower = db.relationship('User', foreign_keys=[borrower_id])
    pledges = db.relationship('LoanPledge', backref='loan', lazy='dynamic',
                              cascade='all, delete-orphan')
    repayments = db.relationship('LoanRepayment', backref='loan',
                                 order_by='LoanRepayment.installment',
                                 cascade='all, delete-orphan')

    @property
    def remaining_amount(self):
        return max(self.amount - self.funded_amount, 0.0)

    @property
    def funding_progress(self):
        if not self.amount:
            return 0
        return round(min(self.funded_amount / self.amount, 1.0) * 100, 1)

    def to_dict(self, include_details=False):
        data = {
            'id': self.id,
            'borrower_id': self.borrower_id,
            'borrower_name': self.borrower.full_name if self.borrower else None,
            'kameti_id': self.kameti_id,
            'amount': self.amount,
            'funded_amount': self.funded_amount,
            'remaining_amount': self.remaining_amount,
            'funding_progress': self.funding_progress,
            'term_months': self.term_months,
            'interest_rate': self.interest_rate,
            'purpose': self.purpose,
            'schedule_type': self.schedule_type,
            'status': self.status,
            'risk_score': self.risk_score,
            'risk_level': self.risk_level,
            'activation_date': iso(self.activation_date),
            'created_at': iso(self.created_at),
        }
        if include_details:
            data['pledges'] = [p.to_dict() for p in self.pledges]
            data['repayments'] = [r.to_dict() for r in self.repayments]
        return data


class LoanPledge(db.Model):
    """A lender's contribution towards a loan request."""
    __tablename__ = 'loan_pledges'

    id = db.Column(db.Integer, primary_key=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loan_requests.id'), nullable=False)
    lender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    kameti_id = db.Column(db.Integer, db.ForeignKey('kametis.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), default=PledgeStatus.PENDING.value, nullable=False)
    tx_id = db.Column(db.String(100))
    transferred_at = db.Column(db.DateTime)
    transfer_round = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    lender = db.relationship('User', foreign_keys=[lender_id])

    def to_dict(self):
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'lender_id': self.lender_id,
            'lender_name': self.lender.full_name if self.lender else None,
            'kameti_id': self.kameti_id,
            'amount': self.amount,
            'status': self.status,
            'tx_id': self.tx_id,
            'transferred_at': iso(self.transferred_at),
            'transfer_round': self.transfer_round,
            'created_at': iso(self.created_at),
        }


class LoanRepayment(db.Model):
    """One installment of an activated loan's repayment schedule."""
    __tablename__ = 'loan_repayments'

    id = db.Column(db.Integer, primary_key=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loan_requests.id'), nullable=False)
    installment = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    amount_due = db.Column(db.Float, nullable=False)
    principal_component = db.Column(db.Float, default=0.0, nullable=False)
    interest_component = db.Column(db.Float, default=0.0, nullable=False)
    amount_paid = db.Column(db.Float, default=0.0, nullable=False)
    status = db.Column(db.String(10), default=RepaymentStatus.DUE.value, nullable=False)
    was_late = db.Column(db.Boolean, default=False, nullable=False)
    paid_at = db.Column(db.DateTime)
    tx_id = db.Column(db.String(100))

    def to_dict(self):
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'installment': self.installment,
            'due_date': iso(self.due_date),
            'amount_due': self.amount_due,
            'principal_component': self.principal_component,
            'interest_component': self.interest_component,
            'amount_paid': self.amount_paid,
            'status': self.status,
            'was_late': self.was_late,
            'paid_at': iso(self.paid_at),
            'tx_id': self.tx_id,
        }


# ============================================================
# NOTIFICATION MODEL
# ============================================================
class Notification(db.Model):
    """In-app notification. Only the newest NOTIFICATION_LIMIT are kept per user."""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    notification_type = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.String(1000), nullable=False)
    data = db.Column(db.JSON, default=dict)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'data': self.data or {},
            'read': self.read,
            'created_at': iso(self.created_at),
        }
