"""
Usage tracking and limit enforcement for mobile subscriptions.

Counters live on the subscription row and are bumped with an atomic
``col = col + n`` UPDATE. Every tracked event is also appended to
usage_history together with a snapshot of counters and limits.
"""
import logging
from collections import namedtuple
from datetime import datetime

from flask import current_app
from sqlalchemy import distinct, func, update
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.subscription import UserSubscription
from models.usage_history import UsageHistory, USAGE_EVENT_TYPES, USAGE_HISTORY_RETENTION_DAYS

logger = logging.getLogger(__name__)

UNLIMITED = -1
LIMIT_TYPES = ('data_downloads', 'api_calls')
COUNTER_COLUMNS = {
    'data_downloads': 'data_downloaded',
    'api_calls': 'api_calls_count',
}
# Highest threshold first
ALERT_THRESHOLDS = (
    (100, 'exceeded'),
    (90, 'critical'),
    (80, 'warning'),
)

LimitCheck = namedtuple('LimitCheck', ['allowed', 'limit', 'current', 'remaining'])


class UsageEventError(ValueError):
    """Usage event rejected before anything was written"""


def _check_limit_type(limit_type):
    if limit_type not in LIMIT_TYPES:
        raise ValueError(f'Unknown limit type: {limit_type}')


def get_limit(subscription, limit_type):
    """Limit from the legacy plan if referenced, else the tenant's limits, else unlimited"""
    _check_limit_type(limit_type)
    if subscription.plan is not None:
        return int(subscription.plan.limit_for(limit_type))

    tenant_limits = (subscription.tenant.usage_limits if subscription.tenant else None) or {}
    value = tenant_limits.get(limit_type)
    if value is None:
        return UNLIMITED
    return int(value)


def get_current(subscription, limit_type):
    _check_limit_type(limit_type)
    return getattr(subscription, COUNTER_COLUMNS[limit_type]) or 0


def usage_percentage(current, limit):
    if limit == UNLIMITED:
        return 0
    if limit == 0:
        return 100
    return min(100, current / limit * 100)


def alert_level(percentage):
    for threshold, level in ALERT_THRESHOLDS:
        if percentage >= threshold:
            return level
    return None


def _retention_days():
    return current_app.config.get('USAGE_HISTORY_RETENTION_DAYS', USAGE_HISTORY_RETENTION_DAYS)


def validate_event(event_type, metadata):
    if event_type not in USAGE_EVENT_TYPES:
        raise UsageEventError(f'Unknown usage event type: {event_type}')
    missing = UsageHistory.missing_metadata(event_type, metadata)
    if missing:
        raise UsageEventError(f"Missing required metadata for {event_type} event: {', '.join(missing)}")


def log_usage_event(subscription, event_type, metadata=None, commit=True, now=None):
    """Append one usage_history row. Raises UsageEventError on missing metadata."""
    validate_event(event_type, metadata)
    now = now or datetime.utcnow()
    event = UsageHistory(
        tenant_id=subscription.tenant_id,
        mobile_user_id=subscription.mobile_user_id,
        user_type=subscription.user_type,
        event_type=event_type,
        event_metadata=dict(metadata or {}),
        snapshot_data_downloaded=subscription.data_downloaded or 0,
        snapshot_api_calls_count=subscription.api_calls_count or 0,
        snapshot_data_limit=get_limit(subscription, 'data_downloads'),
        snapshot_api_limit=get_limit(subscription, 'api_calls'),
        timestamp=now,
        expires_at=UsageHistory.expiry_for(now, _retention_days()),
    )
    db.session.add(event)
    if commit:
        db.session.commit()
    return event


def _track(subscription, limit_type, amount, event_type, metadata):
    validate_event(event_type, metadata)
    column = COUNTER_COLUMNS[limit_type]
    try:
        stmt = (
            update(UserSubscription)
            .where(UserSubscription.id == subscription.id)
            .values({column: getattr(UserSubscription, column) + amount})
            .execution_options(synchronize_session=False)
        )
        db.session.execute(stmt)
        db.session.refresh(subscription)
        log_usage_event(subscription, event_type, metadata, commit=False)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to track %s for subscription %s", event_type, subscription.id, exc_info=True)
        raise

    alert = check_and_alert(subscription, limit_type)
    return {
        'current': get_current(subscription, limit_type),
        'alert': alert,
    }


def track_download(subscription, record_count, endpoint):
    """Count ``record_count`` downloaded records against the data limit"""
    if isinstance(record_count, bool) or not isinstance(record_count, int) or record_count < 0:
        raise UsageEventError('recordCount must be a non-negative integer')
    metadata = {'recordCount': record_count, 'endpoint': endpoint}
    return _track(subscription, 'data_downloads', record_count, 'download', metadata)


def track_api_call(subscription, endpoint):
    return _track(subscription, 'api_calls', 1, 'api_call', {'endpoint': endpoint})


def check_limit(subscription, limit_type, requested=1):
    """Read-only pre-flight check. A limit of -1 always allows."""
    limit = get_limit(subscription, limit_type)
    current = get_current(subscription, limit_type)
    if limit == UNLIMITED:
        return LimitCheck(True, UNLIMITED, current, UNLIMITED)
    remaining = max(0, limit - current)
    return LimitCheck(current + requested <= limit, limit, current, remaining)


def check_and_alert(subscription, limit_type):
    """Record an alert event when usage sits at or above a threshold"""
    limit = get_limit(subscription, limit_type)
    if limit == UNLIMITED:
        return None

    current = get_current(subscription, limit_type)
    percentage = usage_percentage(current, limit)
    level = alert_level(percentage)
    if not level:
        return None

    alert = {'limitType': limit_type, 'percentage': round(percentage, 2), 'level': level}
    try:
        log_usage_event(subscription, 'alert', alert)
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to record usage alert for subscription %s", subscription.id, exc_info=True)
    logger.warning(
        "Usage %s for subscription %s: %s at %.1f%% (%s/%s)",
        level, subscription.id, limit_type, percentage, current, limit,
    )
    return alert


def reset_usage(subscription, now=None):
    """Zero both counters, keeping the previous values in a reset event"""
    now = now or datetime.utcnow()
    previous = {
        'previousDataDownloaded': subscription.data_downloaded or 0,
        'previousApiCallsCount': subscription.api_calls_count or 0,
    }
    try:
        subscription.data_downloaded = 0
        subscription.api_calls_count = 0
        subscription.last_usage_reset = now
        log_usage_event(subscription, 'reset', previous, commit=False, now=now)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to reset usage for subscription %s", subscription.id, exc_info=True)
        raise

    logger.info(
        "Usage reset for subscription %s (downloads=%s api_calls=%s)",
        subscription.id, previous['previousDataDownloaded'], previous['previousApiCallsCount'],
    )
    return previous


def get_usage_stats(subscription):
    stats = {
        'dataDownloaded': subscription.data_downloaded or 0,
        'apiCallsCount': subscription.api_calls_count or 0,
        'lastUsageReset': subscription.last_usage_reset.isoformat() if subscription.last_usage_reset else None,
        'limits': {},
        'percentages': {},
        'remaining': {},
    }
    for limit_type, key in (('data_downloads', 'dataDownloads'), ('api_calls', 'apiCalls')):
        check = check_limit(subscription, limit_type, requested=0)
        stats['limits'][key] = check.limit
        stats['remaining'][key] = check.remaining
        stats['percentages'][key] = round(usage_percentage(check.current, check.limit), 2)
    return stats


def history_for_user(tenant_id, mobile_user_id, event_type=None, limit=100):
    query = UsageHistory.live().filter_by(tenant_id=tenant_id, mobile_user_id=mobile_user_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return query.order_by(UsageHistory.timestamp.desc(), UsageHistory.id.desc()).limit(limit).all()


def usage_summary_for_tenant(tenant_id, since=None):
    """Event counts and distinct users per event type for a tenant"""
    now = datetime.utcnow()
    query = db.session.query(
        UsageHistory.event_type,
        func.count(UsageHistory.id),
        func.count(distinct(UsageHistory.mobile_user_id)),
    ).filter(
        UsageHistory.tenant_id == tenant_id,
        UsageHistory.expires_at > now,
    )
    if since:
        query = query.filter(UsageHistory.timestamp >= since)

    summary = {}
    for event_type, events, users in query.group_by(UsageHistory.event_type).all():
        summary[event_type] = {'events': events, 'users': users}
    return summary


def purge_expired(now=None):
    """Delete usage rows past their retention window"""
    now = now or datetime.utcnow()
    deleted = UsageHistory.query.filter(UsageHistory.expires_at <= now).delete(synchronize_session=False)
    db.session.commit()
    logger.info("Purged %d expired usage history rows", deleted)
    return deleted
