import logging

import click
from flask.cli import with_appcontext

from app.extensions import db
from app.models import Kameti, KametiStatus, FINISHED_STATUSES
from app.services.payment_service import mark_overdue_records
from app.services.payout_service import check_and_update_completion_status
from app.services.reminder_service import send_payment_reminders

logger = logging.getLogger(__name__)


@click.command("init-db")
@with_appcontext
def init_db():
    """Create all database tables."""
    db.create_all()
    click.echo("Database tables created.")


@click.command("send-reminders")
@with_appcontext
def send_reminders():
    """Mark overdue contributions, then remind every active kameti with auto reminders on."""
    overdue = mark_overdue_records()
    kametis = Kameti.query.filter_by(status=KametiStatus.ACTIVE.value, auto_reminders=True).all()
    total = 0
    for kameti in kametis:
        total += send_payment_reminders(kameti)
    db.session.commit()
    click.echo(f"Marked {overdue} payment record(s) overdue.")
    click.echo(f"Sent {total} reminder(s) across {len(kametis)} kameti(s).")


@click.command("close-finished-kametis")
@with_appcontext
def close_finished_kametis():
    """Close kametis whose payout rotation is complete."""
    kametis = Kameti.query.filter(Kameti.status.notin_(FINISHED_STATUSES)).all()
    closed = [k.kameti_code for k in kametis if check_and_update_completion_status(k)]
    db.session.commit()

    for code in closed:
        logger.info("Closed finished kameti %s", code)
    click.echo(f"Closed {len(closed)} kameti(s).")


def register_commands(app):
    app.cli.add_command(init_db)
    app.cli.add_command(send_reminders)
    app.cli.add_command(close_finished_kametis)
