"""
Audit trail for admin subscription changes
"""
from flask import current_app

from models import db
from models.audit_log import AuditLog


def record_admin_action(actor, action, subscription_id=None, tenant_id=None, before=None, after=None,
                        success=True, error_message=None):
    """
    Write one audit row for an admin mutation

    Args:
        actor: Identity of the admin performing the action
        action: Action name, e.g. 'subscription.cancel'
        subscription_id: Affected subscription, if any
        tenant_id: Tenant of the affected subscription
        before: Subscription snapshot before the change
        after: Subscription snapshot after the change
        success: Whether the underlying operation succeeded
        error_message: Failure message when it did not

    Returns:
        AuditLog object or None if it could not be written
    """
    try:
        entry = AuditLog(
            actor_id=str(actor.get_id()) if actor.get_id() else None,
            actor_role=actor.role,
            actor_email=actor.email,
            tenant_id=tenant_id,
            action=action,
            subscription_id=subscription_id,
            before=before,
            after=after,
            success=success,
            error_message=error_message[:500] if error_message else None,
        )
        db.session.add(entry)
        db.session.commit()
        return entry
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to write audit log for {action}: {str(e)}", exc_info=True)
        return None
