"""
Mobile user model definition (repo agents and office staff)
"""
from models import db
from datetime import datetime

MOBILE_USER_TYPES = ('repo_agent', 'office_staff')


class MobileUser(db.Model):
    """Field user operating under a tenant"""
    __tablename__ = 'mobile_users'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'user_type', 'external_id', name='uq_mobile_user_identity'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    user_type = db.Column(db.String(20), nullable=False)  # repo_agent, office_staff
    external_id = db.Column(db.String(64), nullable=False)  # agent id / staff id carried in the identity
    name = db.Column(db.String(100), nullable=False)
    phone_number = db.Column(db.String(20))
    email = db.Column(db.String(120))
    role = db.Column(db.String(50))
    status = db.Column(db.String(20), default='active')  # active, inactive, blocked
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def is_active(self):
        return self.status == 'active'

    def __repr__(self):
        return f'<MobileUser {self.user_type}:{self.external_id}>'
