"""
NOTIFICATION ROUTES
===================
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

from app.routes.responses import success, error
from app.services.notification_service import (
    NotificationError, NotificationNotFoundError, list_notifications, unread_count,
    mark_read, mark_all_read, delete_notification
)
from app.utils import as_bool

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')


@notifications_bp.route('')
@login_required
def list_all():
    notifications = list_notifications(current_user.id,
                                       unread_only=as_bool(request.args.get('unread')))
    return success(notifications=[n.to_dict() for n in notifications],
                   unread_count=unread_count(current_user.id))


@notifications_bp.route('/<int:notification_id>/read', methods=['PUT'])
@login_required
def read(notification_id):
    try:
        notification = mark_read(current_user.id, notification_id)
        return success(notification=notification.to_dict(),
                       unread_count=unread_count(current_user.id))
    except NotificationNotFoundError as e:
        return error(str(e), 404)
    except NotificationError as e:
        return error(str(e), 400)


@notifications_bp.route('/read-all', methods=['PUT'])
@login_required
def read_all():
    try:
        updated = mark_all_read(current_user.id)
        return success(updated=updated, unread_count=0)
    except NotificationError as e:
        return error(str(e), 400)


@notifications_bp.route('/<int:notification_id>', methods=['DELETE'])
@login_required
def delete(notification_id):
    try:
        delete_notification(current_user.id, notification_id)
        return success(message='Notification deleted')
    except NotificationNotFoundError as e:
        return error(str(e), 404)
    except NotificationError as e:
        return error(str(e), 400)
