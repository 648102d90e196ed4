"""
User subscription model definition
"""
import math
from datetime import datetime

from sqlalchemy import event, inspect

from models import db

SUBSCRIPTION_STATUSES = ('trial', 'active', 'grace_period', 'past_due', 'expired', 'suspended', 'cancelled')
USER_TYPES = ('repo_agent', 'office_staff', 'other')


def _iso(value):
    return value.isoformat() if value else None


class UserSubscription(db.Model):
    """One time-boxed access subscription per (tenant, mobile user)"""
    __tablename__ = 'user_subscriptions'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'mobile_user_id', name='uq_subscription_tenant_user'),
        db.Index('ix_subscription_status_period_end', 'status', 'current_period_end'),
        db.Index('ix_subscription_status_grace_end', 'status', 'grace_period_end'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    mobile_user_id = db.Column(db.String(64), nullable=False, index=True)
    user_type = db.Column(db.String(20), default='repo_agent')  # repo_agent, office_staff, other
    status = db.Column(db.String(20), default='active', index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('subscription_plans.id'), nullable=True)  # legacy, not used for pricing
    billing_cycle = db.Column(db.String(20), default='monthly')  # weekly, monthly, quarterly, yearly

    start_date = db.Column(db.DateTime, default=datetime.utcnow)
    end_date = db.Column(db.DateTime, nullable=False)  # legacy mirror of current_period_end
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    trial_end = db.Column(db.DateTime)
    grace_period_end = db.Column(db.DateTime)

    auto_renew = db.Column(db.Boolean, default=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False)
    cancelled_at = db.Column(db.DateTime)
    cancel_reason = db.Column(db.String(500))
    suspension_reason = db.Column(db.String(500))
    suspended_at = db.Column(db.DateTime)
    payment_failure_reason = db.Column(db.String(500))
    grace_period_started_at = db.Column(db.DateTime)

    data_downloaded = db.Column(db.Integer, default=0, nullable=False)
    api_calls_count = db.Column(db.Integer, default=0, nullable=False)
    last_usage_reset = db.Column(db.DateTime)

    last_payment_id = db.Column(db.Integer, nullable=True)  # payments.id of the payment that last extended this period
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    plan = db.relationship('SubscriptionPlan', lazy='joined')
    tenant = db.relationship('Tenant', lazy='joined')

    @property
    def effective_end_date(self):
        return self.current_period_end or self.end_date

    def is_active(self):
        return self.status in ('active', 'trial')

    def is_in_grace_period(self, now=None):
        now = now or datetime.utcnow()
        return (
            self.status == 'grace_period'
            and self.grace_period_end is not None
            and self.grace_period_end > now
        )

    def can_access(self, now=None):
        return self.is_active() or self.is_in_grace_period(now)

    def get_remaining_days(self, now=None):
        """Whole days left until the effective end date, rounded up. Negative once expired."""
        end = self.effective_end_date
        if not end:
            return 0
        now = now or datetime.utcnow()
        return math.ceil((end - now).total_seconds() / 86400)

    def is_expiring_soon(self, days_threshold=7, now=None):
        remaining = self.get_remaining_days(now)
        return self.can_access(now) and 0 < remaining <= days_threshold

    def snapshot(self):
        """Compact view of the mutable fields, used by the admin audit log"""
        return {
            'status': self.status,
            'billingCycle': self.billing_cycle,
            'currentPeriodStart': _iso(self.current_period_start),
            'currentPeriodEnd': _iso(self.current_period_end),
            'trialEnd': _iso(self.trial_end),
            'gracePeriodEnd': _iso(self.grace_period_end),
            'cancelAtPeriodEnd': bool(self.cancel_at_period_end),
            'autoRenew': bool(self.auto_renew),
        }

    def to_dict(self):
        return {
            'id': self.id,
            'tenantId': self.tenant_id,
            'mobileUserId': self.mobile_user_id,
            'userType': self.user_type,
            'status': self.status,
            'planId': self.plan_id,
            'billingCycle': self.billing_cycle,
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
            'currentPeriodStart': _iso(self.current_period_start),
            'currentPeriodEnd': _iso(self.current_period_end),
            'trialEnd': _iso(self.trial_end),
            'gracePeriodEnd': _iso(self.grace_period_end),
            'autoRenew': bool(self.auto_renew),
            'cancelAtPeriodEnd': bool(self.cancel_at_period_end),
            'cancelledAt': _iso(self.cancelled_at),
            'cancelReason': self.cancel_reason,
            'suspensionReason': self.suspension_reason,
            'dataDownloaded': self.data_downloaded,
            'apiCallsCount': self.api_calls_count,
            'lastUsageReset': _iso(self.last_usage_reset),
            'lastPaymentId': self.last_payment_id,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<UserSubscription {self.id} {self.status}>'


@event.listens_for(UserSubscription, 'before_insert')
@event.listens_for(UserSubscription, 'before_update')
def _sync_period_fields(mapper, connection, target):
    # end_date always mirrors the authoritative period end
    if target.current_period_end is not None:
        target.end_date = target.current_period_end

    state = inspect(target)
    if state.has_identity and state.attrs.status.history.has_changes() and target.status != 'cancelled':
        target.cancelled_at = None
        target.cancel_reason = None
        target.cancel_at_period_end = False
