"""
Admin Notification model definition
"""
from models import db
from datetime import datetime

class AdminNotification(db.Model):
    """In-app notification shown to the admins of a tenant"""
    __tablename__ = 'admin_notifications'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=True, index=True)  # NULL: visible to super admins only
    type = db.Column(db.String(50), nullable=False)  # payment, subscription, system
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    related_id = db.Column(db.Integer, nullable=True)  # payment_id, subscription_id
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<AdminNotification {self.id}: {self.type}>'

    def to_dict(self):
        """Convert notification to dictionary for JSON responses"""
        return {
            'id': self.id,
            'tenantId': self.tenant_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'relatedId': self.related_id,
            'isRead': self.is_read,
            'createdAt': self.created_at.isoformat() if self.created_at else None
        }
