"""
REMINDER SERVICE
================

Payment reminders for unpaid members and the "round ready"
notice for the kameti admin. Callers own the commit.
"""

import logging

from app.models import NotificationType
from app.services.email_service import send_payment_reminder_email, send_round_ready_email
from app.services.notification_service import notify

logger = logging.getLogger(__name__)


def send_payment_reminders(kameti):
    """Email and notify every member who has not paid this round. Returns the count."""
    due_date = kameti.due_date_for_round()
    sent = 0

    for member in kameti.unpaid_members():
        user = member.user
        send_payment_reminder_email(user, kameti, due_date)
        notify(
            user.id,
            NotificationType.PAYMENT_REMINDER.value,
            'Payment Reminder',
            f'Your contribution of Rs. {kameti.contribution_amount:,.0f} for "{kameti.name}" '
            f'is due on {due_date.isoformat()}.',
            {'kameti_id': kameti.id, 'round': kameti.current_round,
             'due_date': due_date.isoformat()}
        )
        sent += 1

    logger.info("Sent %d payment reminders for kameti %s", sent, kameti.kameti_code)
    return sent


def notify_admin_round_ready(kameti, pool_amount):
    admin = kameti.creator
    send_round_ready_email(admin, kameti, pool_amount)
    notify(
        admin.id,
        NotificationType.ROUND_READY.value,
        'Round Ready for Payout',
        f'All members of "{kameti.name}" have paid for round {kameti.current_round}. '
        f'Rs. {pool_amount:,.0f} is ready to be paid out.',
        {'kameti_id': kameti.id, 'round': kameti.current_round, 'pool_amount': pool_amount}
    )
    logger.info("Kameti %s round %s is ready for payout", kameti.kameti_code, kameti.current_round)
