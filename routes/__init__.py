"""
Routes package for the field access API
"""
# Export blueprints for registration in app.py
from routes.mobile.payments import mobile_payments_bp
from routes.mobile.subscription import mobile_subscription_bp
from routes.mobile.usage import mobile_usage_bp
from routes.admin.payments import admin_payments_bp
from routes.admin.subscriptions import admin_subscriptions_bp
from routes.admin.notifications import admin_notifications_bp
from routes.admin.usage import admin_usage_bp

__all__ = [
    'mobile_payments_bp',
    'mobile_subscription_bp',
    'mobile_usage_bp',
    'admin_payments_bp',
    'admin_subscriptions_bp',
    'admin_notifications_bp',
    'admin_usage_bp',
]
