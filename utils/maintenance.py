"""
Periodic maintenance sweeps.

Run from run_sweeps.py (cron / scheduler). Each sweep is safe to run
repeatedly; a failure on one row is logged and the sweep moves on.
"""
import logging
from datetime import datetime

from models.subscription import UserSubscription
from services import payment_service, subscription_service
from utils.usage_tracker import purge_expired

logger = logging.getLogger(__name__)

LAPSE_REASON = 'Billing period ended without renewal payment'


def finalize_scheduled_cancellations(now=None):
    now = now or datetime.utcnow()
    due = UserSubscription.query.filter(
        UserSubscription.cancel_at_period_end.is_(True),
        UserSubscription.status.in_(subscription_service.CANCELLABLE_STATUSES),
        UserSubscription.current_period_end <= now,
    ).all()
    done = 0
    for subscription in due:
        result = subscription_service.finalize_period_end_cancellation(subscription.id, now=now)
        if result.success:
            done += 1
        else:
            logger.warning("Could not finalize cancellation of subscription %s: %s", subscription.id, result.error)
    return done


def start_grace_periods(now=None):
    """Active subscriptions past their period end move into the grace period"""
    now = now or datetime.utcnow()
    lapsed = UserSubscription.query.filter(
        UserSubscription.status == 'active',
        UserSubscription.cancel_at_period_end.isnot(True),
        UserSubscription.current_period_end <= now,
    ).all()
    done = 0
    for subscription in lapsed:
        result = subscription_service.enter_grace_period(subscription.id, LAPSE_REASON)
        if result.success:
            done += 1
        else:
            logger.warning("Could not start grace period for subscription %s: %s", subscription.id, result.error)
    return done


def expire_trials(now=None):
    now = now or datetime.utcnow()
    ended = UserSubscription.query.filter(
        UserSubscription.status == 'trial',
        UserSubscription.trial_end <= now,
    ).all()
    done = 0
    for subscription in ended:
        result = subscription_service.expire_subscription(subscription.id)
        if result.success:
            done += 1
        else:
            logger.warning("Could not expire trial subscription %s: %s", subscription.id, result.error)
    return done


def end_grace_periods(now=None):
    """Grace periods that ran out become past due"""
    now = now or datetime.utcnow()
    ended = UserSubscription.query.filter(
        UserSubscription.status == 'grace_period',
        UserSubscription.grace_period_end <= now,
    ).all()
    done = 0
    for subscription in ended:
        result = subscription_service.mark_past_due(subscription.id)
        if result.success:
            done += 1
        else:
            logger.warning("Could not mark subscription %s past due: %s", subscription.id, result.error)
    return done


def retry_payment_checkpoints(now=None):
    """Drain approved payments whose subscription update is still outstanding"""
    now = now or datetime.utcnow()
    reconciled = 0
    for payment in payment_service.find_payments_due_for_retry(now):
        result = payment_service.reconcile_payment(payment.id, now=now)
        if result.success:
            reconciled += 1
    return reconciled


def run_all(now=None):
    now = now or datetime.utcnow()
    summary = {
        'cancellationsFinalized': finalize_scheduled_cancellations(now),
        'gracePeriodsStarted': start_grace_periods(now),
        'trialsExpired': expire_trials(now),
        'gracePeriodsEnded': end_grace_periods(now),
        'paymentsReconciled': retry_payment_checkpoints(now),
        'usageRowsPurged': purge_expired(now),
    }
    logger.info("Maintenance sweep finished: %s", summary)
    return summary
