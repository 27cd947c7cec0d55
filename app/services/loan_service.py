"""
P2P LOAN SERVICE
================

Handles:
- Creating loan requests inside a kameti
- Pledges from other members (paid through the gateway)
- Activation with a repayment schedule
- Installment repayments
- Settling captured pledges out of the lender's kameti payout

Lifecycle: open -> funded -> active -> repaying -> completed
"""

import logging
import math
from datetime import datetime, date

from app.extensions import db
from app.models import (
    Kameti, LoanRequest, LoanPledge, LoanRepayment, Payment, LoanStatus, PledgeStatus,
    RepaymentStatus, ScheduleType, PaymentMethod, PaymentPurpose, NotificationType,
    LIVE_LOAN_STATUSES, enum_values
)
from app.services.authorization_service import (
    AuthorizationError, can_access_kameti_data, can_activate_loan, can_pledge, can_repay,
    is_kameti_member, require_authorization
)
from app.services.notification_service import notify
from app.services.payfast_service import build_payment_request
from app.services.payment_service import generate_transaction_id
from app.utils import add_months

logger = logging.getLogger(__name__)

MAX_TERM_MONTHS = 60
MAX_INTEREST_RATE = 100
PURPOSE_MAX_LENGTH = 500


class LoanError(Exception):
    """Base exception for loan operations"""
    pass


class LoanNotFoundError(LoanError):
    pass


class LoanValidationError(LoanError):
    pass


class LoanStateError(LoanError):
    pass


def _get_loan(loan_id):
    loan = db.session.get(LoanRequest, loan_id)
    if not loan:
        raise LoanNotFoundError("Loan not found")
    return loan


def _to_number(value, field, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise LoanValidationError(f"{field} must be a number")


# ============================================================
# CREATE LOAN REQUEST
# ============================================================

def create_loan_request(kameti_id, borrower_id, data):
    """
    Create a new P2P loan request.

    The borrower must be a member of the kameti and may have only one
    live loan per kameti. The borrower's risk score is captured.
    """
    try:
        kameti = db.session.get(Kameti, kameti_id)
        if not kameti:
            raise LoanNotFoundError("Kameti not found")

        if not is_kameti_member(borrower_id, kameti_id):
            raise AuthorizationError("You must be a member of this kameti to request a loan")

        amount = _to_number(data.get('amount'), 'Amount')
        if amount <= 0:
            raise LoanValidationError("Loan amount must be greater than 0")

        term_months = _to_number(data.get('term_months'), 'Term', int)
        if not 1 <= term_months <= MAX_TERM_MONTHS:
            raise LoanValidationError(f"Term must be between 1 and {MAX_TERM_MONTHS} months")

        interest_rate = _to_number(data.get('interest_rate') or 0, 'Interest rate')
        if not 0 <= interest_rate <= MAX_INTEREST_RATE:
            raise LoanValidationError("Interest rate must be between 0 and 100")

        purpose = (data.get('purpose') or '').strip()
        if not purpose:
            raise LoanValidationError("Please provide a purpose for the loan")
        if len(purpose) > PURPOSE_MAX_LENGTH:
            raise LoanValidationError("Purpose cannot exceed 500 characters")

        schedule_type = data.get('schedule_type') or ScheduleType.AMORTIZED.value
        if schedule_type not in enum_values(ScheduleType):
            raise LoanValidationError(f"Invalid schedule type: {schedule_type}")

        existing = LoanRequest.query.filter(
            LoanRequest.kameti_id == kameti_id,
            LoanRequest.borrower_id == borrower_id,
            LoanRequest.status.in_(LIVE_LOAN_STATUSES)
        ).first()
        if existing:
            raise LoanStateError("You already have a loan in progress in this kameti")

        from app.services.risk_service import calculate_user_risk
        risk = calculate_user_risk(borrower_id)

        loan = LoanRequest(
            borrower_id=borrower_id,
            kameti_id=kameti_id,
            amount=amount,
            term_months=term_months,
            interest_rate=interest_rate,
            purpose=purpose,
            schedule_type=schedule_type,
            risk_score=risk['risk_score'],
            risk_level=risk['risk_level']
        )
        db.session.add(loan)
        db.session.commit()

        logger.info("Loan %s requested by user %s in kameti %s", loan.id, borrower_id, kameti_id)
        return loan

    except (LoanError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise LoanError(f"Failed to create loan: {str(e)}")


# ============================================================
# READ
# ============================================================

def list_loans(user_id, kameti_id, status=None, min_amount=None, max_amount=None,
               risk_level=None):
    require_authorization(can_access_kameti_data, user_id, kameti_id)

    query = LoanRequest.query.filter_by(kameti_id=kameti_id)
    if status:
        query = query.filter(LoanRequest.status == status)
    if min_amount is not None:
        query = query.filter(LoanRequest.amount >= min_amount)
    if max_amount is not None:
        query = query.filter(LoanRequest.amount <= max_amount)
    if risk_level:
        query = query.filter(LoanRequest.risk_level == risk_level)
    return query.order_by(LoanRequest.created_at.desc(), LoanRequest.id.desc()).all()


def get_loan(loan_id, user_id):
    loan = _get_loan(loan_id)
    require_authorization(can_access_kameti_data, user_id, loan.kameti_id)
    refresh_late_installments(loan)
    return loan


# ============================================================
# PLEDGES
# ============================================================

def pledge_to_loan(loan_id, lender_id, amount):
    """
    Pledge towards an open loan. Creates a pending pledge and a pending
    gateway payment; the gateway notification captures the pledge.

    Returns: dict(pledge, payment, payment_url, params)
    """
    try:
        loan = _get_loan(loan_id)
        require_authorization(can_pledge, lender_id, loan_id)

        amount = _to_number(amount, 'Amount')
        if amount <= 0:
            raise LoanValidationError("Pledge amount must be greater than 0")
        if amount > loan.remaining_amount + 0.01:
            raise LoanValidationError(
                f"Pledge exceeds the remaining amount of Rs. {loan.remaining_amount:,.0f}")

        pledge = LoanPledge(
            loan_id=loan.id,
            lender_id=lender_id,
            kameti_id=loan.kameti_id,
            amount=amount
        )
        db.session.add(pledge)
        db.session.flush()

        transaction_id = generate_transaction_id('PLEDGE', pledge.id)
        pledge.tx_id = transaction_id

        payment = Payment(
            user_id=lender_id,
            kameti_id=loan.kameti_id,
            amount=amount,
            payment_method=PaymentMethod.PAYFAST.value,
            transaction_id=transaction_id,
            purpose=PaymentPurpose.LOAN_PLEDGE.value,
            pledge_id=pledge.id
        )
        payment.add_audit_entry('initiated', {'loan_id': loan.id, 'pledge_id': pledge.id})
        db.session.add(payment)

        lender = pledge.lender
        payment_url, params = build_payment_request(
            transaction_id,
            amount,
            lender,
            item_name=f"Loan pledge #{loan.id}",
            item_description=f"Pledge towards loan #{loan.id}: {loan.purpose}",
            custom_fields={'custom_str1': loan.kameti.kameti_code,
                           'custom_str2': lender.email,
                           'custom_str3': str(pledge.id)}
        )

        db.session.commit()
        return {'pledge': pledge, 'payment': payment,
                'payment_url': payment_url, 'params': params}

    except (LoanError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise LoanError(f"Failed to pledge: {str(e)}")


def capture_pledge(payment):
    """
    Gateway confirmed a pledge payment. Committed by the caller.
    """
    pledge = db.session.get(LoanPledge, payment.pledge_id) if payment.pledge_id else None
    if not pledge:
        raise LoanNotFoundError("Pledge not found for payment")

    if pledge.status != PledgeStatus.PENDING.value:
        return pledge

    loan = pledge.loan
    pledge.status = PledgeStatus.CAPTURED.value
    loan.funded_amount = (loan.funded_amount or 0.0) + pledge.amount

    if loan.status == LoanStatus.OPEN.value and loan.funded_amount >= loan.amount - 0.01:
        loan.status = LoanStatus.FUNDED.value
        notify(
            loan.borrower_id,
            NotificationType.LOAN_FUNDED.value,
            'Loan Fully Funded',
            f'Your loan request of Rs. {loan.amount:,.0f} is fully funded. '
            f'Activate it to start repayments.',
            {'loan_id': loan.id, 'kameti_id': loan.kameti_id}
        )
    else:
        notify(
            loan.borrower_id,
            NotificationType.LOAN_FUNDED.value,
            'New Pledge',
            f'{pledge.lender.full_name} pledged Rs. {pledge.amount:,.0f} to your loan.',
            {'loan_id': loan.id, 'pledge_id': pledge.id, 'amount': pledge.amount}
        )

    logger.info("Pledge %s captured for loan %s", pledge.id, loan.id)
    return pledge


# ============================================================
# ACTIVATION & SCHEDULE
# ============================================================

def activate_loan(loan_id, user_id):
    """Activate a funded loan and generate its repayment schedule."""
    try:
        loan = _get_loan(loan_id)
        require_authorization(can_activate_loan, user_id, loan_id)

        loan.status = LoanStatus.ACTIVE.value
        loan.activation_date = datetime.utcnow()
        generate_repayment_schedule(loan, loan.activation_date.date())

        db.session.commit()
        logger.info("Loan %s activated with principal %.2f", loan.id, loan.funded_amount)
        return loan

    except (LoanError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise LoanError(f"Failed to activate loan: {str(e)}")


def generate_repayment_schedule(loan, start_date):
    """
    Build installments on the funded principal.

    amortized: reducing balance EMI, monthly rate = annual / 12 / 100
    bullet: principal plus simple interest in one final installment
    """
    principal = float(loan.funded_amount)
    n = loan.term_months
    r = loan.interest_rate / 12 / 100

    for existing in list(loan.repayments):
        loan.repayments.remove(existing)

    if loan.schedule_type == ScheduleType.BULLET.value:
        interest = round(principal * loan.interest_rate / 100 * n / 12, 2)
        loan.repayments.append(LoanRepayment(
            installment=1,
            due_date=add_months(start_date, n),
            amount_due=round(principal + interest, 2),
            principal_component=round(principal, 2),
            interest_component=interest
        ))
        return loan.repayments

    # EMI Formula
    if r > 0:
        emi = principal * r * math.pow(1 + r, n) / (math.pow(1 + r, n) - 1)
    else:
        emi = principal / n
    emi = round(emi, 2)

    balance = principal
    for i in range(1, n + 1):
        interest_component = round(balance * r, 2)
        principal_component = round(emi - interest_component, 2)
        amount_due = emi

        # Last installment clears the remaining balance
        if i == n:
            principal_component = round(balance, 2)
            amount_due = round(principal_component + interest_component, 2)

        loan.repayments.append(LoanRepayment(
            installment=i,
            due_date=add_months(start_date, i),
            amount_due=amount_due,
            principal_component=principal_component,
            interest_component=interest_component
        ))
        balance = max(balance - principal_component, 0.0)

    return loan.repayments


# ============================================================
# REPAYMENT
# ============================================================

def refresh_late_installments(loan, today=None):
    today = today or date.today()
    for repayment in loan.repayments:
        if repayment.status == RepaymentStatus.DUE.value and repayment.due_date < today:
            repayment.status = RepaymentStatus.LATE.value
            repayment.was_late = True


def repay_installment(loan_id, user_id, repayment_id, amount=None, tx_id=None):
    """Pay one installment in full (borrower only)."""
    try:
        loan = _get_loan(loan_id)
        require_authorization(can_repay, user_id, loan_id)
        refresh_late_installments(loan)

        repayment = next((r for r in loan.repayments if r.id == repayment_id), None)
        if not repayment:
            raise LoanNotFoundError("Installment not found")

        if repayment.status == RepaymentStatus.PAID.value:
            raise LoanStateError("This installment is already paid")

        paid_amount = repayment.amount_due if amount in (None, '') else \
            _to_number(amount, 'Amount')
        if paid_amount + 0.01 < repayment.amount_due:
            raise LoanValidationError(
                f"Installment requires Rs. {repayment.amount_due:,.2f}")

        repayment.amount_paid = paid_amount
        repayment.status = RepaymentStatus.PAID.value
        repayment.paid_at = datetime.utcnow()
        repayment.tx_id = tx_id

        if all(r.status == RepaymentStatus.PAID.value for r in loan.repayments):
            loan.status = LoanStatus.COMPLETED.value
            logger.info("Loan %s fully repaid", loan.id)
        else:
            loan.status = LoanStatus.REPAYING.value

        db.session.commit()
        return repayment

    except (LoanError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise LoanError(f"Failed to repay installment: {str(e)}")


def get_repayments(loan_id, user_id):
    loan = get_loan(loan_id, user_id)
    return loan.repayments


# ============================================================
# PLEDGE TRANSFERS ON PAYOUT
# ============================================================

def transfer_pledges_for_payout(kameti, lender_id, payout_round):
    """
    Settle the lender's captured pledges in this kameti from their payout.
    Committed by the caller.

    Returns: dict(transferred, total_amount)
    """
    pledges = LoanPledge.query.filter_by(
        lender_id=lender_id,
        kameti_id=kameti.id,
        status=PledgeStatus.CAPTURED.value
    ).all()

    total = 0.0
    now = datetime.utcnow()
    for pledge in pledges:
        pledge.status = PledgeStatus.TRANSFERRED.value
        pledge.transferred_at = now
        pledge.transfer_round = payout_round
        total += pledge.amount

        notify(
            pledge.loan.borrower_id,
            NotificationType.LOAN_TRANSFERRED.value,
            'Loan Funds Transferred',
            f'Rs. {pledge.amount:,.0f} has been transferred to your loan account '
            f"from the lender's kameti payout.",
            {'loan_id': pledge.loan_id, 'amount': pledge.amount, 'round': payout_round}
        )
        notify(
            lender_id,
            NotificationType.LOAN_TRANSFERRED.value,
            'Pledge Transferred',
            f'Your pledge of Rs. {pledge.amount:,.0f} was settled from your '
            f'round {payout_round} payout.',
            {'loan_id': pledge.loan_id, 'amount': pledge.amount, 'round': payout_round}
        )

    if pledges:
        logger.info("Transferred %d pledges (%.2f) for lender %s in kameti %s",
                    len(pledges), total, lender_id, kameti.kameti_code)
    return {'transferred': len(pledges), 'total_amount': total}


def process_loan_transfers(kameti_id, user_id, payout_round=None):
    try:
        kameti = db.session.get(Kameti, kameti_id)
        if not kameti:
            raise LoanNotFoundError("Kameti not found")
        require_authorization(can_access_kameti_data, user_id, kameti_id)

        member = kameti.get_member(user_id)
        if not member or not member.has_received_payout:
            raise LoanStateError("Pledges are transferred after you receive your kameti payout")

        result = transfer_pledges_for_payout(kameti, user_id,
                                             payout_round or member.payout_round)
        db.session.commit()
        return result

    except (LoanError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise LoanError(f"Failed to transfer pledges: {str(e)}")
