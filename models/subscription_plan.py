"""
Legacy subscription plan catalog.

Tenant user billing no longer prices from this table; rows are kept so that
historic plan references on subscriptions still resolve and so their usage
limits can be read.
"""
from models import db
from datetime import datetime


class SubscriptionPlan(db.Model):
    __tablename__ = 'subscription_plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), default='')
    code = db.Column(db.String(50), index=True)
    description = db.Column(db.Text, default='')
    pricing = db.Column(db.JSON, default=dict)
    features = db.Column(db.JSON, default=list)
    limits = db.Column(db.JSON, default=dict)  # max_data_downloads, max_api_calls (-1 unlimited)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def limit_for(self, limit_type):
        limits = self.limits or {}
        if limit_type == 'data_downloads':
            return limits.get('max_data_downloads', 0)
        return limits.get('max_api_calls', 0)

    def __repr__(self):
        return f'<SubscriptionPlan {self.code}>'
