"""
Mobile subscription status routes
"""
from flask import Blueprint, g
from flask_login import current_user

from routes.responses import success_response
from services.subscription_service import find_subscription
from utils.access_gate import require_active_subscription, track_api_calls
from utils.auth_utils import error_response, mobile_user_required
from utils.usage_tracker import get_usage_stats

mobile_subscription_bp = Blueprint('mobile_subscription', __name__, url_prefix='/api/subscription')


def _iso(value):
    return value.isoformat() if value else None


def subscription_status(subscription):
    """Status view returned to the mobile apps"""
    status = {
        'status': subscription.status,
        'isActive': subscription.is_active(),
        'canAccess': subscription.can_access(),
        'isInGracePeriod': subscription.is_in_grace_period(),
        'remainingDays': subscription.get_remaining_days(),
        'currentPeriodStart': _iso(subscription.current_period_start),
        'currentPeriodEnd': _iso(subscription.current_period_end),
        'billingCycle': subscription.billing_cycle,
        'usage': {
            'dataDownloaded': subscription.data_downloaded or 0,
            'apiCallsCount': subscription.api_calls_count or 0,
            'lastUsageReset': _iso(subscription.last_usage_reset),
        },
    }
    if subscription.grace_period_end:
        status['gracePeriodEnd'] = _iso(subscription.grace_period_end)
    if subscription.trial_end:
        status['trialEnd'] = _iso(subscription.trial_end)
    return status


def _own_subscription():
    return find_subscription(current_user.tenant_id, current_user.mobile_user_id)


@mobile_subscription_bp.route('/status')
@mobile_user_required
def status():
    """Current subscription state, reported even when access is denied"""
    subscription = _own_subscription()
    if not subscription:
        return error_response('SUBSCRIPTION_NOT_FOUND', 'No subscription found for this user', 404)
    return success_response(subscription_status(subscription))


@mobile_subscription_bp.route('/remaining-time')
@mobile_user_required
def remaining_time():
    subscription = _own_subscription()
    if not subscription:
        return error_response('SUBSCRIPTION_NOT_FOUND', 'No subscription found for this user', 404)
    return success_response({
        'status': subscription.status,
        'remainingDays': subscription.get_remaining_days(),
        'endDate': _iso(subscription.effective_end_date),
        'isExpiringSoon': subscription.is_expiring_soon(),
        'isInGracePeriod': subscription.is_in_grace_period(),
        'gracePeriodEnd': _iso(subscription.grace_period_end),
    })


@mobile_subscription_bp.route('/usage')
@require_active_subscription
@track_api_calls('subscription.usage')
def usage():
    if g.subscription is None:
        return success_response(None, 'No subscription; super admin access')
    return success_response(get_usage_stats(g.subscription))
