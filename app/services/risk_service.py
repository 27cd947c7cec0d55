"""
RISK SERVICE
============

Rule-of-thumb risk scoring, 0-100 (higher = riskier).

User score = weighted factors:
- payment reliability   35%
- disputes              20%
- profile completeness  15%
- financial load        15%
- behavioral            15%

Kameti summary = overdue members, open disputes and structural signals.
"""

import logging
from datetime import datetime, date

from app.extensions import db
from app.models import (
    User, Kameti, KametiMember, PaymentRecord, Payment, Dispute, RecordStatus, PaymentStatus,
    PaymentPurpose, DisputeStatus, KametiStatus, PayoutOrder, FINISHED_STATUSES
)
from app.services.authorization_service import (
    can_manage_kameti, can_view_kameti, can_view_user_risk, require_authorization
)
from app.services.payment_service import count_overdue_members

logger = logging.getLogger(__name__)

WEIGHTS = {
    'payment_reliability': 0.35,
    'dispute_risk': 0.20,
    'profile_completeness': 0.15,
    'financial_load': 0.15,
    'behavioral': 0.15,
}

HISTORY_LIMIT = 120
NEW_ACCOUNT_DAYS = 30


class RiskError(Exception):
    """Base exception for risk operations"""
    pass


class RiskNotFoundError(RiskError):
    pass


# ============================================================
# DATA COLLECTORS
# ============================================================

def get_payment_behavior(user_id, today=None):
    today = today or date.today()
    records = PaymentRecord.query.filter(
        PaymentRecord.user_id == user_id,
        PaymentRecord.status != RecordStatus.CANCELLED.value
    ).order_by(PaymentRecord.created_at.desc()).limit(HISTORY_LIMIT).all()

    failed_payments = Payment.query.filter_by(
        user_id=user_id,
        purpose=PaymentPurpose.CONTRIBUTION.value,
        status=PaymentStatus.FAILED.value
    ).count()

    on_time = late = failed = 0
    total_days_late = 0
    last_payment = None

    for record in records:
        if record.status == RecordStatus.PAID.value:
            if record.is_late:
                late += 1
                total_days_late += record.days_late
            else:
                on_time += 1
            if record.paid_at and (last_payment is None or record.paid_at > last_payment):
                last_payment = record.paid_at
        elif record.status == RecordStatus.PENDING.value:
            if record.due_date < today:
                late += 1
                total_days_late += (today - record.due_date).days
        elif record.status == RecordStatus.OVERDUE.value:
            failed += 1

    failed += failed_payments
    return {
        'total_payments': len(records) + failed_payments,
        'on_time': on_time,
        'late': late,
        'failed': failed,
        'avg_days_late': total_days_late / late if late else 0,
        'last_payment_date': last_payment,
    }


def get_dispute_history(user_id):
    disputes = Dispute.query.filter_by(user_id=user_id).all()
    return {
        'total': len(disputes),
        'open': sum(1 for d in disputes if d.status == DisputeStatus.OPEN.value),
        'rejected': sum(1 for d in disputes if d.status == DisputeStatus.REJECTED.value),
    }


def get_profile_info(user):
    created_at = user.created_at or datetime.utcnow()
    return {
        'has_cnic': bool(user.cnic),
        'has_phone': bool(user.phone),
        'is_verified': bool(user.is_verified),
        'profile_complete': user.profile_complete,
        'account_age_days': max(1, (datetime.utcnow() - created_at).days),
    }


def count_active_kametis(user_id):
    return Kameti.query.join(KametiMember).filter(
        KametiMember.user_id == user_id,
        Kameti.status.in_([KametiStatus.ACTIVE.value, KametiStatus.PENDING.value])
    ).count()


# ============================================================
# SCORING
# ============================================================

def score_payment_reliability(behavior):
    if behavior['total_payments'] == 0:
        return 50

    total_paid = behavior['on_time'] + behavior['late']
    on_time_rate = behavior['on_time'] / total_paid if total_paid else 0
    late_rate = behavior['late'] / total_paid if total_paid else 0
    failed_rate = behavior['failed'] / behavior['total_payments']

    score = (1 - on_time_rate) * 40
    score += late_rate * 30
    score += min(30, behavior['avg_days_late'] * 2)
    score += failed_rate * 30
    return min(100, max(0, score))


def score_disputes(disputes):
    if not disputes['total']:
        return 0
    return min(100, disputes['open'] * 15 + disputes['rejected'] * 12 + disputes['total'] * 3)


def score_profile(profile):
    risk = 0
    if not profile['has_cnic']:
        risk += 20
    if not profile['has_phone']:
        risk += 10
    if not profile['is_verified']:
        risk += 20
    if not profile['profile_complete']:
        risk += 10
    if profile['account_age_days'] < NEW_ACCOUNT_DAYS:
        risk += 10
    return min(100, risk)


def score_financial_load(behavior, active_kametis):
    total_payments = behavior['total_payments']
    if total_payments == 0 and active_kametis > 0:
        return 60

    ratio = active_kametis / total_payments if total_payments else active_kametis
    if ratio > 0.6:
        return 60
    if ratio > 0.3:
        return 40
    return 20


def score_behavioral(behavior):
    total_paid = behavior['on_time'] + behavior['late']
    if total_paid == 0:
        return 20

    late_rate = behavior['late'] / total_paid
    score = 20
    if late_rate > 0.5:
        score = 70
    elif late_rate > 0.3:
        score = 50
    elif late_rate > 0.1:
        score = 35

    if behavior['avg_days_late'] > 7:
        score += 10
    elif behavior['avg_days_late'] > 3:
        score += 5
    return min(100, score)


def weighted_score(factors):
    return sum(factors[name] * weight for name, weight in WEIGHTS.items())


def level_from_score(score):
    if score < 30:
        return 'low'
    if score < 60:
        return 'medium'
    if score < 80:
        return 'high'
    return 'critical'


def recommendations(factors, score):
    recs = []
    if factors['payment_reliability'] > 60:
        recs.append({'priority': 'high',
                     'message': 'Require advance payment or collateral for this user.'})
    if factors['dispute_risk'] > 40:
        recs.append({'priority': 'medium',
                     'message': 'High dispute involvement; enforce manual review.'})
    if factors['profile_completeness'] > 40:
        recs.append({'priority': 'medium',
                     'message': 'Ask user to complete profile and verify identity.'})
    if score > 70:
        recs.append({'priority': 'critical',
                     'message': 'Flag for admin review before approving payouts/joins.'})
    if not recs:
        recs.append({'priority': 'low',
                     'message': 'User appears low risk. Standard monitoring applies.'})
    return recs


# ============================================================
# USER RISK
# ============================================================

def calculate_user_risk(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise RiskNotFoundError("User not found")

    behavior = get_payment_behavior(user_id)
    disputes = get_dispute_history(user_id)
    profile = get_profile_info(user)
    active_kametis = count_active_kametis(user_id)

    factors = {
        'payment_reliability': round(score_payment_reliability(behavior), 1),
        'dispute_risk': score_disputes(disputes),
        'profile_completeness': score_profile(profile),
        'financial_load': score_financial_load(behavior, active_kametis),
        'behavioral': score_behavioral(behavior),
    }
    score = min(100, max(0, weighted_score(factors)))
    logger.debug("Risk for user %s: %.1f %s", user_id, score, factors)

    return {
        'user_id': user_id,
        'risk_score': round(score),
        'risk_level': level_from_score(score),
        'factors': factors,
        'meta': {
            'last_payment_date': behavior['last_payment_date'].isoformat()
            if behavior['last_payment_date'] else None,
            'total_payments': behavior['total_payments'],
            'account_age_days': profile['account_age_days'],
            'active_kametis': active_kametis,
        },
        'recommendations': recommendations(factors, score),
    }


def get_user_risk(viewer_id, user_id):
    require_authorization(can_view_user_risk, viewer_id, user_id)
    return calculate_user_risk(user_id)


# ============================================================
# KAMETI RISK
# ============================================================

def _plural(count, word):
    return f"{count} {word}{'' if count == 1 else 's'}"


def kameti_summary_message(level, overdue, disputes):
    if level == 'low':
        if overdue == 0 and disputes == 0:
            return 'Low risk: stable payments and no disputes. Safe to join.'
        return 'Low risk: stable payments and few disputes.'
    if level == 'medium':
        return (f"Moderate risk: {_plural(overdue, 'overdue payment')}, "
                f"{_plural(disputes, 'dispute')}. Monitor payments.")
    if level == 'high':
        return (f"High risk: {_plural(overdue, 'overdue payment')} and "
                f"{_plural(disputes, 'dispute')}. Proceed with caution.")
    return (f"Critical risk: {_plural(overdue, 'overdue payment')} and "
            f"{_plural(disputes, 'dispute')}. Recommend admin review before joining.")


def calculate_kameti_risk(kameti):
    overdue = count_overdue_members(kameti)
    pending = 0 if kameti.status in FINISHED_STATUSES else len(kameti.unpaid_members())
    open_disputes = kameti.disputes.filter_by(status=DisputeStatus.OPEN.value).count()
    total_disputes = kameti.disputes.count()
    member_count = len(kameti.members)

    score = min(40, overdue * 5)
    score += min(25, open_disputes * 5)
    if pending > 0 and overdue == 0:
        score += 5
    if member_count > 15:
        score += 10
    if kameti.status == KametiStatus.PENDING.value:
        score += 5
    if kameti.payout_order == PayoutOrder.RANDOM.value:
        score += 5

    level = level_from_score(score)
    return {
        'kameti_id': kameti.id,
        'kameti_name': kameti.name,
        'risk_score': round(score),
        'risk_level': level,
        'signals': {
            'overdue_payments': overdue,
            'pending_payments': pending,
            'open_disputes': open_disputes,
            'total_disputes': total_disputes,
            'member_count': member_count,
            'payout_order': kameti.payout_order,
            'status': kameti.status,
        },
        'message': kameti_summary_message(level, overdue, open_disputes),
    }


def get_kameti_risk_summary(kameti_id, user_id):
    """Kameti-level summary for members and users thinking of joining."""
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        raise RiskNotFoundError("Kameti not found")
    require_authorization(can_view_kameti, user_id, kameti_id)
    return calculate_kameti_risk(kameti)


def get_kameti_risk(kameti_id, user_id):
    """Kameti summary plus each member's risk (creator only)."""
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        raise RiskNotFoundError("Kameti not found")
    require_authorization(can_manage_kameti, user_id, kameti_id)

    summary = calculate_kameti_risk(kameti)
    member_risks = []
    for member in kameti.members:
        risk = calculate_user_risk(member.user_id)
        member_risks.append({
            'user_id': member.user_id,
            'name': member.user.full_name,
            'email': member.user.email,
            'risk_score': risk['risk_score'],
            'risk_level': risk['risk_level'],
            'recommendations': risk['recommendations'],
        })

    summary['member_risks'] = member_risks
    return summary
