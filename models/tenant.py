"""
Tenant model definition
"""
from models import db
from datetime import datetime

PLAN_TIERS = ('basic', 'premium', 'enterprise')


class Tenant(db.Model):
    """Customer organization owning its mobile users and payment settings"""
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    plan_tier = db.Column(db.String(20), nullable=True)  # legacy tier: basic, premium, enterprise
    plan_prices = db.Column(db.JSON, nullable=True)  # {"weekly": 100, "monthly": 340, ...}
    usage_limits = db.Column(db.JSON, nullable=True)  # {"data_downloads": 5000, "api_calls": -1}
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def expected_price(self, plan_period):
        """Configured price for a plan period, or None when not configured"""
        prices = self.plan_prices or {}
        value = prices.get(plan_period)
        if value is None:
            return None
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    def __repr__(self):
        return f'<Tenant {self.name}>'
