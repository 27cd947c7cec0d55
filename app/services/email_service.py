"""
Email Service

Sends transactional emails over SMTP. When MAIL_SERVER is not
configured the email is only logged ("simulated") and reported as sent.
"""

import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from flask import current_app

logger = logging.getLogger(__name__)


def send_email(to_email, subject, body):
    """
    Send a plain-text email.

    Args:
        to_email (str): Recipient email address
        subject (str): Subject line
        body (str): Plain-text body

    Returns:
        bool: True if the email was sent (or simulated), False on SMTP failure
    """
    config = current_app.config
    server_host = config.get('MAIL_SERVER')

    if not server_host:
        logger.info("[simulated email] to=%s subject=%r", to_email, subject)
        return True

    message = MIMEMultipart()
    message["From"] = config.get('MAIL_DEFAULT_SENDER')
    message["To"] = to_email
    message["Subject"] = subject
    message.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(server_host, config.get('MAIL_PORT', 587)) as server:
            if config.get('MAIL_USE_TLS'):
                server.starttls()
            if config.get('MAIL_USERNAME'):
                server.login(config['MAIL_USERNAME'], config.get('MAIL_PASSWORD'))
            server.send_message(message)

        logger.info("Email sent to %s: %s", to_email, subject)
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP error sending email to %s: %s", to_email, e)
        return False


def send_payment_reminder_email(user, kameti, due_date):
    subject = f"Payment reminder: {kameti.name} (round {kameti.current_round})"
    body = f"""Hello {user.full_name},

This is a reminder that your contribution of Rs. {kameti.contribution_amount:,.0f}
for Kameti "{kameti.name}" ({kameti.kameti_code}) is due on {due_date:%B %d, %Y}.

Round: {kameti.round_label}
"""
    if kameti.late_payment_fee:
        body += f"A late fee of Rs. {kameti.late_payment_fee:,.0f} applies after the due date.\n"

    body += """
---
This is an automated notification. Please do not reply to this email.
"""
    return send_email(user.email, subject, body)


def send_round_ready_email(admin, kameti, pool_amount):
    subject = f"Round {kameti.current_round} ready for payout: {kameti.name}"
    body = f"""Hello {admin.full_name},

All members of Kameti "{kameti.name}" have paid for round {kameti.current_round}.
The pool of Rs. {pool_amount:,.0f} is ready to be paid out.

---
This is an automated notification. Please do not reply to this email.
"""
    return send_email(admin.email, subject, body)


def send_password_reset_email(user, token):
    link = f"{current_app.config['FRONTEND_URL']}/reset-password?token={token}"
    subject = "Reset your eKameti password"
    body = f"""Hello {user.full_name},

We received a request to reset your password. Open the link below to
choose a new one. The link expires in 1 hour.

{link}

If you did not ask for a password reset you can ignore this email.

---
This is an automated notification. Please do not reply to this email.
"""
    return send_email(user.email, subject, body)
