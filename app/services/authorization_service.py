"""
CENTRALIZED AUTHORIZATION SERVICE
==================================

All permission checks live here.
Routes and other services call these functions.

Every `can_*` check returns (allowed, reason).
"""

from app.extensions import db
from app.models import (
    Kameti, Dispute, LoanRequest, LoanStatus, KametiMember,
    FINISHED_STATUSES
)


class AuthorizationError(Exception):
    """Raised when authorization fails"""
    pass


# ============================================================
# KAMETI MEMBERSHIP CHECKS
# ============================================================

def get_membership(user_id, kameti_id):
    """Get membership record"""
    return KametiMember.query.filter_by(
        user_id=user_id,
        kameti_id=kameti_id
    ).first()


def is_kameti_member(user_id, kameti_id):
    """Check if user is a member of the kameti"""
    return get_membership(user_id, kameti_id) is not None


def is_kameti_admin(user_id, kameti_id):
    """The creator administers the kameti"""
    kameti = db.session.get(Kameti, kameti_id)
    return kameti is not None and kameti.created_by == user_id


# ============================================================
# KAMETI AUTHORIZATION
# ============================================================

def can_view_kameti(user_id, kameti_id):
    """Public kametis are visible to everyone, private ones to members."""
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        return False, "Kameti not found"

    if kameti.is_private and not kameti.is_member(user_id) and kameti.created_by != user_id:
        return False, "This kameti is private"

    return True, None


def can_access_kameti_data(user_id, kameti_id):
    """Members and the creator may see payments, activities and disputes."""
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        return False, "Kameti not found"

    if kameti.created_by != user_id and not kameti.is_member(user_id):
        return False, "You are not a member of this kameti"

    return True, None


def can_manage_kameti(user_id, kameti_id):
    """
    Check if user can administer the kameti.

    Requirements:
    - User must be the kameti creator
    """
    kameti = db.session.get(Kameti, kameti_id)
    if not kameti:
        return False, "Kameti not found"

    if kameti.created_by != user_id:
        return False, "Only the kameti admin can perform this action"

    return True, None


# ============================================================
# PAYOUT AUTHORIZATION
# ============================================================

def can_process_payout(user_id, kameti_id):
    """
    Check if user can release a payout.

    Requirements:
    - User must be the kameti creator
    - Kameti must still be running
    """
    allowed, reason = can_manage_kameti(user_id, kameti_id)
    if not allowed:
        return False, reason

    kameti = db.session.get(Kameti, kameti_id)
    if kameti.status in FINISHED_STATUSES:
        return False, f"Kameti is {kameti.status}. No further payouts."

    return True, None


# ============================================================
# DISPUTE AUTHORIZATION
# ============================================================

def can_raise_dispute(user_id, kameti_id):
    """Members and the creator can raise disputes."""
    return can_access_kameti_data(user_id, kameti_id)


def can_view_dispute(user_id, dispute_id):
    """The raiser and the kameti admin can view a dispute."""
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return False, "Dispute not found"

    if dispute.user_id == user_id or dispute.kameti.created_by == user_id:
        return True, None

    return False, "You do not have access to this dispute"


def can_manage_dispute(user_id, dispute_id):
    """Only the creator of the dispute's kameti acts on it."""
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return False, "Dispute not found"

    if dispute.kameti.created_by != user_id:
        return False, "Only the kameti admin can manage this dispute"

    return True, None


# ============================================================
# LOAN AUTHORIZATION
# ============================================================

def can_pledge(user_id, loan_id):
    """
    Check if user can pledge towards a loan.

    Requirements:
    - Loan must be OPEN
    - User must be a member of the loan's kameti
    - User cannot fund own loan
    """
    loan = db.session.get(LoanRequest, loan_id)
    if not loan:
        return False, "Loan not found"

    if loan.status != LoanStatus.OPEN.value:
        return False, f"Loan is not open for funding. Status is {loan.status}"

    if not is_kameti_member(user_id, loan.kameti_id):
        return False, "You must be a member of the same kameti to pledge"

    if loan.borrower_id == user_id:
        return False, "You cannot pledge to your own loan"

    return True, None


def can_activate_loan(user_id, loan_id):
    """
    Requirements:
    - User must be the borrower
    - Loan must be FUNDED, or OPEN with some captured funding
    """
    loan = db.session.get(LoanRequest, loan_id)
    if not loan:
        return False, "Loan not found"

    if loan.borrower_id != user_id:
        return False, "Only the borrower can activate this loan"

    if loan.status == LoanStatus.FUNDED.value:
        return True, None

    if loan.status == LoanStatus.OPEN.value and loan.funded_amount > 0:
        return True, None

    return False, f"Loan cannot be activated from status {loan.status}"


def can_repay(user_id, loan_id):
    """
    Check if user can submit repayment.

    Requirements:
    - Loan must be ACTIVE or REPAYING
    - User must be the borrower
    """
    loan = db.session.get(LoanRequest, loan_id)
    if not loan:
        return False, "Loan not found"

    if loan.status not in (LoanStatus.ACTIVE.value, LoanStatus.REPAYING.value):
        if loan.status == LoanStatus.COMPLETED.value:
            return False, "This loan is already fully repaid"
        return False, f"Cannot repay. Loan status is {loan.status}"

    if loan.borrower_id != user_id:
        return False, "Only the borrower can repay this loan"

    return True, None


# ============================================================
# RISK AUTHORIZATION
# ============================================================

def can_view_user_risk(viewer_id, user_id):
    """Users see their own risk; kameti admins see their members' risk."""
    if viewer_id == user_id:
        return True, None

    shared = KametiMember.query.join(Kameti).filter(
        KametiMember.user_id == user_id,
        Kameti.created_by == viewer_id
    ).first()
    if shared:
        return True, None

    return False, "You can only view risk for members of kametis you manage"


# ============================================================
# HELPER
# ============================================================

def require_authorization(check_func, *args, error_class=AuthorizationError):
    """
    Wrapper to raise exception if authorization fails.

    Usage:
        require_authorization(can_manage_kameti, user_id, kameti_id)
    """
    allowed, reason = check_func(*args)
    if not allowed:
        raise error_class(reason)
    return True
