# This makes 'services' a Python package
"""
Services Package
================

Business logic layer for eKameti.

All financial and authorization operations are handled here.
Routes should call these services, not manipulate models directly.
"""

from app.services.authorization_service import (
    can_view_kameti,
    can_access_kameti_data,
    can_manage_kameti,
    can_process_payout,
    can_raise_dispute,
    can_pledge,
    can_repay,
    is_kameti_member,
    is_kameti_admin,
    require_authorization,
    AuthorizationError
)

from app.services.kameti_service import (
    create_kameti,
    request_to_join,
    respond_to_join_request,
    join_kameti,
    leave_kameti,
    KametiError
)

from app.services.payment_service import (
    initiate_payment,
    handle_notification,
    record_manual_payment,
    PaymentError
)

from app.services.payout_service import (
    check_round_readiness,
    process_payout,
    PayoutError,
    RoundNotReadyError
)

from app.services.dispute_service import (
    raise_dispute,
    resolve_dispute,
    reject_dispute,
    DisputeError
)

from app.services.loan_service import (
    create_loan_request,
    pledge_to_loan,
    activate_loan,
    repay_installment,
    LoanError
)

from app.services.risk_service import (
    calculate_user_risk,
    calculate_kameti_risk,
    RiskError
)
