"""
Admin notification utility functions
"""
from models import db
from models.admin_notification import AdminNotification
from flask import current_app


def create_notification(notification_type, title, message, related_id=None, tenant_id=None):
    """
    Create a new admin notification

    Args:
        notification_type: 'payment', 'subscription', or 'system'
        title: Notification title
        message: Notification message
        related_id: Optional ID of related entity (payment_id, subscription_id)
        tenant_id: Tenant whose admins should see it; None for super admins only

    Returns:
        AdminNotification object or None if creation failed
    """
    try:
        notification = AdminNotification(
            tenant_id=tenant_id,
            type=notification_type,
            title=title,
            message=message,
            related_id=related_id,
            is_read=False
        )
        db.session.add(notification)
        db.session.commit()
        return notification
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to create notification: {str(e)}", exc_info=True)
        return None


def notify_payment_submitted(payment):
    """Create notification for a new payment proof awaiting verification"""
    submitter = payment.submitted_by_name or payment.submitted_by_mobile_id or 'Unknown user'
    title = "Payment Submitted"
    message = (
        f"{submitter} submitted a {payment.plan_period} payment of {float(payment.amount):.2f} "
        f"(ref {payment.transaction_id})"
    )
    if not payment.amount_validated:
        message += " - amount not validated, no price configured"
    return create_notification('payment', title, message, related_id=payment.id, tenant_id=payment.tenant_id)


def notify_subscription_update_failed(payment, error_message):
    """Create notification when an approved payment could not update the subscription"""
    title = "Subscription Update Pending Retry"
    message = f"Payment #{payment.id} was approved but the subscription update failed: {error_message}"
    return create_notification('subscription', title, message, related_id=payment.id, tenant_id=payment.tenant_id)


def notify_retry_exhausted(payment):
    """Create notification when the retry sweep gives up on a payment"""
    title = "Subscription Update Failed"
    message = (
        f"Payment #{payment.id} is approved but its subscription could not be updated after "
        f"{payment.retry_count} attempts. Last error: {payment.retry_reason}"
    )
    return create_notification('system', title, message, related_id=payment.id, tenant_id=payment.tenant_id)


def visible_notifications(identity):
    """Notifications an admin may see: super admins see all, tenant admins their tenant's"""
    query = AdminNotification.query
    if not identity.is_super_admin:
        query = query.filter(AdminNotification.tenant_id == identity.tenant_id)
    return query
