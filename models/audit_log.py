"""
Audit log model definition
"""
from models import db
from datetime import datetime


class AuditLog(db.Model):
    """One row per admin mutation of a subscription"""
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(64))
    actor_role = db.Column(db.String(20))
    actor_email = db.Column(db.String(120))
    tenant_id = db.Column(db.Integer, index=True)
    action = db.Column(db.String(50), nullable=False)
    subscription_id = db.Column(db.Integer, index=True)
    before = db.Column(db.JSON)
    after = db.Column(db.JSON)
    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'actorId': self.actor_id,
            'actorRole': self.actor_role,
            'actorEmail': self.actor_email,
            'tenantId': self.tenant_id,
            'action': self.action,
            'subscriptionId': self.subscription_id,
            'before': self.before,
            'after': self.after,
            'success': self.success,
            'errorMessage': self.error_message,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<AuditLog {self.action} {self.subscription_id}>'
