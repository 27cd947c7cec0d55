"""
NOTIFICATION SERVICE
====================

In-app notifications. Each user keeps only the newest
NOTIFICATION_LIMIT entries; older ones are pruned on insert.

Notifications are added to the caller's session and committed with the
caller's unit of work.
"""

import logging

from flask import current_app

from app.extensions import db
from app.models import Notification

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


class NotificationError(Exception):
    """Base exception for notification operations"""
    pass


class NotificationNotFoundError(NotificationError):
    pass


def _limit():
    return current_app.config.get('NOTIFICATION_LIMIT', DEFAULT_LIMIT)


# ============================================================
# CREATE
# ============================================================

def notify(user_id, notification_type, title, message, data=None):
    """Queue a notification for a user and prune the overflow."""
    notification = Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        data=data or {}
    )
    db.session.add(notification)
    db.session.flush()

    _prune(user_id)
    logger.debug("Notification %s queued for user %s", notification_type, user_id)
    return notification


def notify_many(user_ids, notification_type, title, message, data=None):
    return [notify(uid, notification_type, title, message, data) for uid in set(user_ids)]


def _prune(user_id):
    stale = Notification.query.filter_by(user_id=user_id).order_by(
        Notification.created_at.desc(), Notification.id.desc()
    ).offset(_limit()).all()
    for notification in stale:
        db.session.delete(notification)


# ============================================================
# READ / UPDATE
# ============================================================

def list_notifications(user_id, unread_only=False):
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def unread_count(user_id):
    return Notification.query.filter_by(user_id=user_id, read=False).count()


def _get_own(user_id, notification_id):
    notification = db.session.get(Notification, notification_id)
    if not notification or notification.user_id != user_id:
        raise NotificationNotFoundError("Notification not found")
    return notification


def mark_read(user_id, notification_id):
    try:
        notification = _get_own(user_id, notification_id)
        notification.read = True
        db.session.commit()
        return notification
    except NotificationError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise NotificationError(f"Failed to update notification: {str(e)}")


def mark_all_read(user_id):
    try:
        updated = Notification.query.filter_by(user_id=user_id, read=False).update({'read': True})
        db.session.commit()
        return updated
    except Exception as e:
        db.session.rollback()
        raise NotificationError(f"Failed to update notifications: {str(e)}")


def delete_notification(user_id, notification_id):
    try:
        notification = _get_own(user_id, notification_id)
        db.session.delete(notification)
        db.session.commit()
    except NotificationError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise NotificationError(f"Failed to delete notification: {str(e)}")
