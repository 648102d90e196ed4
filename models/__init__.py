"""
Models package for the field access subscription service
"""
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Import all models here to ensure they're registered
from models.tenant import Tenant
from models.mobile_user import MobileUser
from models.admin import Admin
from models.subscription_plan import SubscriptionPlan
from models.subscription import UserSubscription
from models.payment import Payment, InvoiceSequence
from models.usage_history import UsageHistory
from models.audit_log import AuditLog
from models.admin_notification import AdminNotification

__all__ = [
    'db',
    'Tenant',
    'MobileUser',
    'Admin',
    'SubscriptionPlan',
    'UserSubscription',
    'Payment',
    'InvoiceSequence',
    'UsageHistory',
    'AuditLog',
    'AdminNotification',
]
