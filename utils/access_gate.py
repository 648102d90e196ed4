"""
Subscription access gate for mobile routes.

``resolve_access`` turns the caller's subscription into an AccessDecision.
The decorators below apply it to views, attach warning headers and enforce
usage limits.
"""
import logging
import math
from collections import namedtuple
from datetime import datetime
from functools import wraps

from flask import after_this_request, g, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from models import db
from services.subscription_service import find_subscription
from utils.usage_tracker import (
    UNLIMITED,
    UsageEventError,
    check_limit,
    log_usage_event,
    track_api_call,
)

logger = logging.getLogger(__name__)

AccessDecision = namedtuple(
    'AccessDecision',
    ['allowed', 'status_code', 'code', 'message', 'subscription', 'context', 'headers'],
)

DENIALS = {
    'expired': ('SUBSCRIPTION_EXPIRED', 'Your subscription has expired'),
    'suspended': ('SUBSCRIPTION_SUSPENDED', 'Your subscription has been suspended'),
    'cancelled': ('SUBSCRIPTION_CANCELLED', 'Your subscription has been cancelled'),
    'past_due': ('SUBSCRIPTION_PAST_DUE', 'Your subscription payment is past due'),
}
INACTIVE_DENIAL = ('SUBSCRIPTION_INACTIVE', 'Your subscription is not active')

# Warn once fewer than this share of the limit is left
USAGE_WARNING_RATIO = 0.1


def _iso(value):
    return value.isoformat() if value else None


def _allow(subscription, headers=None):
    return AccessDecision(True, 200, None, None, subscription, {}, headers or {})


def _deny(status_code, code, message, subscription=None, context=None):
    return AccessDecision(False, status_code, code, message, subscription, context or {}, {})


def grace_period_headers(subscription, now=None):
    now = now or datetime.utcnow()
    days = math.ceil((subscription.grace_period_end - now).total_seconds() / 86400)
    return {
        'X-Subscription-Warning': 'grace-period',
        'X-Grace-Period-End': subscription.grace_period_end.isoformat(),
        'X-Days-Until-Suspension': str(days),
    }


def denial_for(subscription, now=None):
    """Typed denial for a subscription that cannot access"""
    code, message = DENIALS.get(subscription.status, INACTIVE_DENIAL)
    context = {'status': subscription.status}
    if subscription.status == 'expired':
        context['endDate'] = _iso(subscription.effective_end_date)
        context['remainingDays'] = subscription.get_remaining_days(now)
    elif subscription.status == 'cancelled':
        context['cancelledAt'] = _iso(subscription.cancelled_at)
    return _deny(402, code, message, subscription, context)


def resolve_access(identity, now=None):
    """Allow/deny decision for the caller's current subscription.

    Super admins pass whenever no subscription of their own resolves.
    """
    if identity is None or not identity.is_authenticated:
        return _deny(401, 'UNAUTHORIZED', 'Tenant and mobile user identity required')
    super_admin = identity.role == 'super_admin'
    if not identity.tenant_id or not identity.mobile_user_id:
        if super_admin:
            return _allow(None)
        return _deny(401, 'UNAUTHORIZED', 'Tenant and mobile user identity required')

    now = now or datetime.utcnow()
    subscription = find_subscription(identity.tenant_id, identity.mobile_user_id)
    if subscription is None:
        if super_admin:
            return _allow(None)
        return _deny(404, 'SUBSCRIPTION_NOT_FOUND', 'No subscription found for this user')

    if not subscription.can_access(now):
        return denial_for(subscription, now)

    headers = {}
    if subscription.is_in_grace_period(now):
        headers = grace_period_headers(subscription, now)
    return _allow(subscription, headers)


def decision_response(decision):
    body = {'success': False, 'code': decision.code, 'message': decision.message}
    body.update(decision.context)
    return jsonify(body), decision.status_code


def _add_headers(headers):
    if not headers:
        return

    @after_this_request
    def set_headers(response):
        for name, value in headers.items():
            response.headers[name] = value
        return response


def require_active_subscription(f):
    """Decorator: deny the view unless the caller's subscription grants access"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            decision = resolve_access(current_user)
        except SQLAlchemyError:
            db.session.rollback()
            logger.error("Failed to load subscription for access check", exc_info=True)
            return jsonify({'success': False, 'code': 'INTERNAL_ERROR', 'message': 'Internal server error'}), 500

        if not decision.allowed:
            return decision_response(decision)
        g.subscription = decision.subscription
        _add_headers(decision.headers)
        return f(*args, **kwargs)
    return decorated_function


def _record_limit_exceeded(subscription, limit_type, requested, check):
    try:
        log_usage_event(subscription, 'limit_exceeded', {
            'limitType': limit_type,
            'requested': requested,
            'limit': check.limit,
            'current': check.current,
        })
    except (SQLAlchemyError, UsageEventError):
        db.session.rollback()
        logger.error("Failed to record limit_exceeded event for subscription %s", subscription.id, exc_info=True)


def usage_warning_headers(check):
    """Approaching-limit headers, or an empty dict when there is room left"""
    if check.limit == UNLIMITED or check.limit <= 0:
        return {}
    if 0 < check.remaining < check.limit * USAGE_WARNING_RATIO:
        return {
            'X-Usage-Warning': 'approaching-limit',
            'X-Usage-Remaining': str(check.remaining),
            'X-Usage-Percentage': str(round(check.current / check.limit * 100)),
        }
    return {}


def enforce_usage_limit(limit_type, amount_getter=None):
    """Decorator factory: 429 when the request would exceed ``limit_type``.

    Must sit below require_active_subscription. ``amount_getter`` returns the
    amount the request will consume (default 1).
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            subscription = g.get('subscription')
            if subscription is None:
                # Super admin without a subscription
                return f(*args, **kwargs)

            requested = amount_getter() if amount_getter else 1
            check = check_limit(subscription, limit_type, requested)
            if not check.allowed:
                _record_limit_exceeded(subscription, limit_type, requested, check)
                logger.warning(
                    "Usage limit exceeded for subscription %s: %s %s/%s (requested %s)",
                    subscription.id, limit_type, check.current, check.limit, requested,
                )
                return jsonify({
                    'success': False,
                    'code': 'USAGE_LIMIT_EXCEEDED',
                    'message': f'{limit_type} limit exceeded',
                    'limitType': limit_type,
                    'limit': check.limit,
                    'current': check.current,
                    'remaining': check.remaining,
                    'requested': requested,
                }), 429

            _add_headers(usage_warning_headers(check))
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def track_api_calls(endpoint=None):
    """Decorator factory: count one API call for each successful response"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            subscription = g.get('subscription')
            if subscription is not None:
                @after_this_request
                def count_call(response):
                    if response.status_code < 400:
                        try:
                            track_api_call(subscription, endpoint or request.path)
                        except (SQLAlchemyError, UsageEventError) as e:
                            # Don't fail the request if metering fails
                            logger.error(f"Failed to track API call: {str(e)}", exc_info=True)
                    return response
            return f(*args, **kwargs)
        return decorated_function
    return decorator
