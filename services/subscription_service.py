"""
Subscription lifecycle service.

Owns every status and period change of a UserSubscription. Status-changing
writes go through a compare-and-swap UPDATE guarded on the status and period
end that were read, so two concurrent renewals each extend from the latest
end instead of both extending from the same one.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.subscription import UserSubscription, USER_TYPES
from services import results
from services.results import ServiceResult
from utils.billing_cycle import is_valid_billing_cycle, next_period_end
from utils.state_machine import validate_status_transition

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 7
DEFAULT_TRIAL_DAYS = 14
CAS_MAX_ATTEMPTS = 5
MAX_REASON_LENGTH = 500

RENEWABLE_STATUSES = ('active', 'grace_period')
REACTIVATABLE_STATUSES = ('cancelled', 'expired', 'suspended')
CANCELLABLE_STATUSES = ('active', 'trial', 'grace_period')
SUSPENDABLE_STATUSES = ('active', 'grace_period', 'past_due')
GRACE_ELIGIBLE_STATUSES = ('active', 'past_due')
EXPIRABLE_STATUSES = ('active', 'trial', 'past_due')


def get_subscription(subscription_id):
    """Fresh read of a subscription, bypassing anything cached in the session"""
    return db.session.get(UserSubscription, subscription_id, populate_existing=True)


def find_subscription(tenant_id, mobile_user_id):
    return UserSubscription.query.filter_by(
        tenant_id=tenant_id, mobile_user_id=mobile_user_id
    ).populate_existing().first()


def _transition(current_status, new_status):
    check = validate_status_transition(current_status, new_status)
    if not check.is_valid:
        return ServiceResult.fail(results.INVALID_TRANSITION, check.message)
    return None


def _clean_reason(reason):
    return reason.strip()[:MAX_REASON_LENGTH]


def _compare_and_swap(subscription_id, expected, values):
    """UPDATE the row only if status and period end still match ``expected``.

    Bulk updates skip the mapper hooks, so the legacy end_date mirror and the
    cancellation cleanup on status change are applied here.
    """
    expected_status, expected_end = expected
    values = dict(values)
    values['updated_at'] = datetime.utcnow()
    if 'current_period_end' in values:
        values['end_date'] = values['current_period_end']
    new_status = values.get('status')
    if new_status and new_status != expected_status and new_status != 'cancelled':
        values.setdefault('cancelled_at', None)
        values.setdefault('cancel_reason', None)
        values.setdefault('cancel_at_period_end', False)

    stmt = (
        update(UserSubscription)
        .where(
            UserSubscription.id == subscription_id,
            UserSubscription.status == expected_status,
            UserSubscription.current_period_end == expected_end,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1


def _mutate(subscription_id, operation, plan_change):
    """Read, plan and conditionally write a subscription change.

    ``plan_change(subscription)`` returns either a failed ServiceResult or a
    ``(values, data)`` pair. A lost race re-reads and re-plans, up to
    CAS_MAX_ATTEMPTS times.
    """
    if not subscription_id:
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Subscription ID is required')

    try:
        for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
            subscription = get_subscription(subscription_id)
            if not subscription:
                return ServiceResult.fail(results.NOT_FOUND, 'Subscription not found')
            expected = (subscription.status, subscription.current_period_end)

            planned = plan_change(subscription)
            if isinstance(planned, ServiceResult):
                return planned
            values, data = planned

            if _compare_and_swap(subscription_id, expected, values):
                db.session.commit()
                subscription = get_subscription(subscription_id)
                logger.info(
                    "Subscription %s %s (tenant=%s user=%s status=%s end=%s)",
                    subscription.id, operation, subscription.tenant_id,
                    subscription.mobile_user_id, subscription.status,
                    subscription.current_period_end,
                )
                return ServiceResult.ok(subscription, message=f'Subscription {operation}', **data)

            db.session.rollback()
            logger.warning(
                "Concurrent update on subscription %s during %s, retrying (attempt %d/%d)",
                subscription_id, operation, attempt, CAS_MAX_ATTEMPTS,
            )

        logger.error("Gave up on %s of subscription %s after %d attempts", operation, subscription_id, CAS_MAX_ATTEMPTS)
        return ServiceResult.fail(results.CONFLICT, 'Subscription was modified concurrently, please retry')
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to %s subscription %s", operation, subscription_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, f'Failed to {operation} subscription')


def create_subscription(tenant_id, mobile_user_id, user_type, billing_cycle, start_date=None,
                        is_trial=False, trial_days=DEFAULT_TRIAL_DAYS, payment_id=None):
    """Create the single subscription of a (tenant, mobile user) pair"""
    if not tenant_id or not mobile_user_id or not user_type or not billing_cycle:
        return ServiceResult.fail(
            results.VALIDATION_ERROR,
            'Missing required parameters: tenant_id, mobile_user_id, user_type, billing_cycle',
        )
    if not is_valid_billing_cycle(billing_cycle):
        return ServiceResult.fail(results.VALIDATION_ERROR, f'Invalid billing cycle: {billing_cycle}')
    if user_type not in USER_TYPES:
        return ServiceResult.fail(results.VALIDATION_ERROR, f'Invalid user type: {user_type}')

    try:
        if find_subscription(tenant_id, mobile_user_id):
            return ServiceResult.fail(results.VALIDATION_ERROR, 'Subscription already exists for this user')

        start = start_date or datetime.utcnow()
        end = next_period_end(start, billing_cycle)
        subscription = UserSubscription(
            tenant_id=tenant_id,
            mobile_user_id=mobile_user_id,
            user_type=user_type,
            billing_cycle=billing_cycle,
            status='active',
            start_date=start,
            current_period_start=start,
            current_period_end=end,
            end_date=end,
            auto_renew=True,
            cancel_at_period_end=False,
            data_downloaded=0,
            api_calls_count=0,
            last_usage_reset=start,
            last_payment_id=payment_id,
        )
        if is_trial:
            subscription.status = 'trial'
            subscription.trial_end = start + timedelta(days=trial_days)

        db.session.add(subscription)
        db.session.commit()
    except IntegrityError:
        # Lost the race against another create for the same pair
        db.session.rollback()
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Subscription already exists for this user')
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to create subscription for %s/%s", tenant_id, mobile_user_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to create subscription')

    logger.info(
        "Subscription %s created (tenant=%s user=%s cycle=%s status=%s end=%s)",
        subscription.id, tenant_id, mobile_user_id, billing_cycle, subscription.status, end,
    )
    return ServiceResult.ok(subscription, message='Subscription created')


def renew_subscription(subscription_id, payment_id=None, new_billing_cycle=None):
    """Extend by one cycle starting at the current period end, never at now"""
    if new_billing_cycle and not is_valid_billing_cycle(new_billing_cycle):
        return ServiceResult.fail(results.VALIDATION_ERROR, f'Invalid billing cycle: {new_billing_cycle}')

    def plan(subscription):
        if subscription.status not in RENEWABLE_STATUSES:
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot renew subscription in {subscription.status} status',
            )
        if subscription.status == 'grace_period':
            failed = _transition(subscription.status, 'active')
            if failed:
                return failed

        new_start = subscription.effective_end_date
        cycle = new_billing_cycle or subscription.billing_cycle
        new_end = next_period_end(new_start, cycle)
        values = {
            'status': 'active',
            'billing_cycle': cycle,
            'current_period_start': new_start,
            'current_period_end': new_end,
            'grace_period_end': None,
            'data_downloaded': 0,
            'api_calls_count': 0,
            'last_usage_reset': new_start,
        }
        if payment_id:
            values['last_payment_id'] = payment_id
        return values, {'previous_period_end': subscription.current_period_end, 'new_period_end': new_end}

    return _mutate(subscription_id, 'renewed', plan)


def reactivate_subscription(subscription_id, billing_cycle, start_date=None, payment_id=None):
    """Start a fresh period for a cancelled, expired or suspended subscription"""
    if not billing_cycle:
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Billing cycle is required')
    if not is_valid_billing_cycle(billing_cycle):
        return ServiceResult.fail(results.VALIDATION_ERROR, f'Invalid billing cycle: {billing_cycle}')

    def plan(subscription):
        if subscription.status not in REACTIVATABLE_STATUSES:
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot reactivate subscription in {subscription.status} status',
            )
        failed = _transition(subscription.status, 'active')
        if failed:
            return failed

        start = start_date or datetime.utcnow()
        end = next_period_end(start, billing_cycle)
        values = {
            'status': 'active',
            'plan_id': None,
            'billing_cycle': billing_cycle,
            'current_period_start': start,
            'current_period_end': end,
            'auto_renew': True,
            'cancel_at_period_end': False,
            'cancelled_at': None,
            'cancel_reason': None,
            'grace_period_end': None,
            'grace_period_started_at': None,
            'suspension_reason': None,
            'suspended_at': None,
            'payment_failure_reason': None,
            'data_downloaded': 0,
            'api_calls_count': 0,
            'last_usage_reset': start,
        }
        if payment_id:
            values['last_payment_id'] = payment_id
        return values, {'previous_status': subscription.status, 'new_period_end': end}

    return _mutate(subscription_id, 'reactivated', plan)


def cancel_subscription(subscription_id, reason, immediate=False):
    """Cancel now, or flag the subscription to lapse at its period end"""
    if not reason or not str(reason).strip():
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Cancellation reason is required')
    reason = _clean_reason(str(reason))

    def plan(subscription):
        if subscription.status not in CANCELLABLE_STATUSES:
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot cancel subscription in {subscription.status} status',
            )
        failed = _transition(subscription.status, 'cancelled')
        if failed:
            return failed

        now = datetime.utcnow()
        values = {
            'cancelled_at': now,
            'cancel_reason': reason,
            'auto_renew': False,
        }
        if immediate:
            values['status'] = 'cancelled'
            values['current_period_end'] = now
            access_until = now
        else:
            values['cancel_at_period_end'] = True
            access_until = subscription.effective_end_date
        return values, {'immediate': bool(immediate), 'access_until': access_until}

    return _mutate(subscription_id, 'cancelled', plan)


def suspend_subscription(subscription_id, reason):
    if not reason or not str(reason).strip():
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Suspension reason is required')
    reason = _clean_reason(str(reason))

    def plan(subscription):
        if subscription.status not in SUSPENDABLE_STATUSES:
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot suspend subscription in {subscription.status} status',
            )
        failed = _transition(subscription.status, 'suspended')
        if failed:
            return failed

        values = {
            'status': 'suspended',
            'suspension_reason': reason,
            'suspended_at': datetime.utcnow(),
            'auto_renew': False,
        }
        return values, {}

    return _mutate(subscription_id, 'suspended', plan)


def extend_trial(subscription_id, additional_days):
    """Push the trial end out by ``additional_days`` and mirror it onto the period end"""
    if isinstance(additional_days, bool) or not isinstance(additional_days, int) or additional_days <= 0:
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Additional days must be a positive integer')

    def plan(subscription):
        if subscription.status != 'trial':
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot extend trial for subscription in {subscription.status} status',
            )
        base = subscription.trial_end or subscription.effective_end_date
        new_trial_end = base + timedelta(days=additional_days)
        values = {
            'trial_end': new_trial_end,
            'current_period_end': new_trial_end,
        }
        return values, {'new_trial_end': new_trial_end}

    return _mutate(subscription_id, 'trial extended', plan)


def enter_grace_period(subscription_id, failure_reason=None):
    """Keep access for GRACE_PERIOD_DAYS past the period end after a payment failure"""

    def plan(subscription):
        if subscription.status not in GRACE_ELIGIBLE_STATUSES:
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot enter grace period from {subscription.status} status',
            )
        failed = _transition(subscription.status, 'grace_period')
        if failed:
            return failed

        grace_end = subscription.effective_end_date + timedelta(days=GRACE_PERIOD_DAYS)
        values = {
            'status': 'grace_period',
            'grace_period_end': grace_end,
            'grace_period_started_at': datetime.utcnow(),
            'payment_failure_reason': _clean_reason(failure_reason) if failure_reason else None,
        }
        return values, {'grace_period_end': grace_end}

    return _mutate(subscription_id, 'entered grace period', plan)


def expire_subscription(subscription_id):
    def plan(subscription):
        if subscription.status not in EXPIRABLE_STATUSES:
            return ServiceResult.fail(
                results.INVALID_STATE,
                f'Cannot expire subscription in {subscription.status} status',
            )
        failed = _transition(subscription.status, 'expired')
        if failed:
            return failed
        return {'status': 'expired', 'auto_renew': False}, {}

    return _mutate(subscription_id, 'expired', plan)


def mark_past_due(subscription_id):
    """Grace period ran out without payment"""

    def plan(subscription):
        failed = _transition(subscription.status, 'past_due')
        if failed:
            return failed
        return {'status': 'past_due'}, {}

    return _mutate(subscription_id, 'marked past due', plan)


def finalize_period_end_cancellation(subscription_id, now=None):
    """Flip a cancel-at-period-end subscription to cancelled once its period is over"""
    now = now or datetime.utcnow()

    def plan(subscription):
        if not subscription.cancel_at_period_end:
            return ServiceResult.fail(results.INVALID_STATE, 'Subscription is not scheduled for cancellation')
        end = subscription.effective_end_date
        if end and end > now:
            return ServiceResult.fail(results.INVALID_STATE, 'Subscription period has not ended yet')
        failed = _transition(subscription.status, 'cancelled')
        if failed:
            return failed
        return {'status': 'cancelled'}, {}

    return _mutate(subscription_id, 'cancelled at period end', plan)
