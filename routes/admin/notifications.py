"""
Admin notification routes
"""
from flask import Blueprint, request, current_app
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.admin_notification import AdminNotification
from routes.responses import success_response
from utils.auth_utils import admin_required, error_response
from utils.notifications import visible_notifications

admin_notifications_bp = Blueprint('admin_notifications', __name__, url_prefix='/api/admin')


@admin_notifications_bp.route('/notifications')
@admin_required
def get_notifications():
    """Get notifications for current admin"""
    limit = min(request.args.get('limit', 50, type=int), 200)
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'

    query = visible_notifications(current_user)
    if unread_only:
        query = query.filter(AdminNotification.is_read.is_(False))
    notifications = query.order_by(AdminNotification.created_at.desc()).limit(limit).all()

    return success_response([n.to_dict() for n in notifications])


@admin_notifications_bp.route('/notifications/unread-count')
@admin_required
def get_unread_count():
    """Get unread notification count for current admin"""
    unread_count = visible_notifications(current_user).filter(AdminNotification.is_read.is_(False)).count()
    return success_response({'unreadCount': unread_count})


@admin_notifications_bp.route('/notifications/<int:notification_id>/read', methods=['POST'])
@admin_required
def mark_as_read(notification_id):
    """Mark a notification as read"""
    notification = visible_notifications(current_user).filter(AdminNotification.id == notification_id).first()
    if not notification:
        return error_response('NOT_FOUND', 'Notification not found', 404)

    notification.is_read = True
    try:
        db.session.commit()
        return success_response(message='Notification marked as read')
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to mark notification {notification_id} read: {str(e)}", exc_info=True)
        return error_response('INTERNAL_ERROR', 'Internal server error', 500)


@admin_notifications_bp.route('/notifications/mark-all-read', methods=['POST'])
@admin_required
def mark_all_as_read():
    """Mark all notifications as read for current admin"""
    unread = visible_notifications(current_user).filter(AdminNotification.is_read.is_(False)).all()
    try:
        for notification in unread:
            notification.is_read = True
        db.session.commit()
        return success_response(message=f'{len(unread)} notifications marked as read')
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to mark notifications read: {str(e)}", exc_info=True)
        return error_response('INTERNAL_ERROR', 'Internal server error', 500)
