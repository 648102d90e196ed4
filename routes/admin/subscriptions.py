"""
Admin subscription management routes.

Every mutation validates its input first, then checks the admin may act on
the subscription's tenant, then delegates to the lifecycle service and
writes an audit row with before/after snapshots.
"""
from datetime import datetime, timezone

from flask import Blueprint, request, current_app
from flask_login import current_user

from models import db
from models.subscription import UserSubscription, SUBSCRIPTION_STATUSES, USER_TYPES
from models.tenant import Tenant
from routes.responses import json_body, result_error, success_response
from services import subscription_service
from utils.audit import record_admin_action
from utils.auth_utils import admin_required, error_response, tenant_forbidden
from utils.billing_cycle import BILLING_CYCLES, is_valid_billing_cycle

admin_subscriptions_bp = Blueprint('admin_subscriptions', __name__, url_prefix='/api/admin')

BULK_ACTIONS = ('extend', 'suspend', 'cancel', 'reactivate')


def _positive_int(value):
    return not isinstance(value, bool) and isinstance(value, int) and value > 0


def _validate_extend(data):
    if not _positive_int(data.get('additionalDays')):
        return 'additionalDays must be a positive integer'
    return None


def _validate_reason(data):
    reason = data.get('reason')
    if not isinstance(reason, str) or not reason.strip():
        return 'reason is required'
    return None


def _validate_reactivate(data):
    if not is_valid_billing_cycle(data.get('billingCycle')):
        return f"billingCycle must be one of: {', '.join(BILLING_CYCLES)}"
    return None


def _validate_grace(data):
    reason = data.get('reason')
    if reason is not None and not isinstance(reason, str):
        return 'reason must be a string'
    return None


# action -> (validator, operation)
SUBSCRIPTION_ACTIONS = {
    'extend': (
        _validate_extend,
        lambda subscription_id, data: subscription_service.extend_trial(subscription_id, data['additionalDays']),
    ),
    'suspend': (
        _validate_reason,
        lambda subscription_id, data: subscription_service.suspend_subscription(subscription_id, data['reason']),
    ),
    'cancel': (
        _validate_reason,
        lambda subscription_id, data: subscription_service.cancel_subscription(
            subscription_id, data['reason'], immediate=bool(data.get('immediate')),
        ),
    ),
    'reactivate': (
        _validate_reactivate,
        lambda subscription_id, data: subscription_service.reactivate_subscription(
            subscription_id, data['billingCycle'],
        ),
    ),
    'grace-period': (
        _validate_grace,
        lambda subscription_id, data: subscription_service.enter_grace_period(subscription_id, data.get('reason')),
    ),
}


def _audited(subscription, action, operation):
    """Run ``operation`` and write the audit row for it"""
    before = subscription.snapshot()
    result = operation()
    record_admin_action(
        current_user,
        f'subscription.{action}',
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        before=before,
        after=result.subscription.snapshot() if result.success and result.subscription else None,
        success=result.success,
        error_message=result.error,
    )
    return result


def _camel(name):
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def _serialize_result(result):
    data = {'subscription': result.subscription.to_dict()}
    for key, value in result.data.items():
        data[_camel(key)] = value.isoformat() if isinstance(value, datetime) else value
    return data


def _parse_datetime(value):
    if value in (None, ''):
        return None
    if not isinstance(value, str):
        raise ValueError('startDate must be an ISO 8601 string')
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@admin_subscriptions_bp.route('/subscriptions')
@admin_required
def list_subscriptions():
    status_filter = request.args.get('status', '').strip()
    tenant_id = request.args.get('tenantId', type=int)
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('perPage', 20, type=int), 100)

    if status_filter and status_filter not in SUBSCRIPTION_STATUSES:
        return error_response('VALIDATION_ERROR', f"Invalid status. Must be one of: {', '.join(SUBSCRIPTION_STATUSES)}", 400)

    query = UserSubscription.query
    if current_user.is_super_admin:
        if tenant_id:
            query = query.filter_by(tenant_id=tenant_id)
    else:
        query = query.filter_by(tenant_id=current_user.tenant_id)
    if status_filter:
        query = query.filter_by(status=status_filter)

    pagination = query.order_by(UserSubscription.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)
    return success_response({
        'subscriptions': [s.to_dict() for s in pagination.items],
        'total': pagination.total,
        'page': pagination.page,
        'pages': pagination.pages,
    })


@admin_subscriptions_bp.route('/subscriptions/user/<mobile_user_id>')
@admin_required
def user_subscription(mobile_user_id):
    tenant_id = request.args.get('tenantId', type=int) if current_user.is_super_admin else current_user.tenant_id
    if not tenant_id:
        return error_response('VALIDATION_ERROR', 'tenantId is required', 400)

    subscription = subscription_service.find_subscription(tenant_id, mobile_user_id)
    if not subscription:
        return error_response('NOT_FOUND', 'Subscription not found', 404)
    return success_response(subscription.to_dict())


@admin_subscriptions_bp.route('/subscriptions/<int:subscription_id>')
@admin_required
def get_subscription(subscription_id):
    subscription = db.session.get(UserSubscription, subscription_id)
    if not subscription:
        return error_response('NOT_FOUND', 'Subscription not found', 404)
    denied = tenant_forbidden(subscription.tenant_id)
    if denied:
        return denied
    return success_response(subscription.to_dict())


@admin_subscriptions_bp.route('/subscriptions', methods=['POST'])
@admin_required
def create_subscription():
    """Create a subscription for a mobile user without a payment"""
    data = json_body(request)
    mobile_user_id = data.get('mobileUserId')
    user_type = data.get('userType')
    billing_cycle = data.get('billingCycle')
    tenant_id = data.get('tenantId') if current_user.is_super_admin else (data.get('tenantId') or current_user.tenant_id)

    if not isinstance(mobile_user_id, str) or not mobile_user_id.strip():
        return error_response('VALIDATION_ERROR', 'mobileUserId is required', 400)
    if user_type not in USER_TYPES:
        return error_response('VALIDATION_ERROR', f"userType must be one of: {', '.join(USER_TYPES)}", 400)
    if not is_valid_billing_cycle(billing_cycle):
        return error_response('VALIDATION_ERROR', f"billingCycle must be one of: {', '.join(BILLING_CYCLES)}", 400)
    if not _positive_int(tenant_id):
        return error_response('VALIDATION_ERROR', 'tenantId is required', 400)
    trial_days = data.get('trialDays', current_app.config.get('DEFAULT_TRIAL_DAYS', 14))
    if not _positive_int(trial_days):
        return error_response('VALIDATION_ERROR', 'trialDays must be a positive integer', 400)
    try:
        start_date = _parse_datetime(data.get('startDate'))
    except ValueError as e:
        return error_response('VALIDATION_ERROR', f'Invalid startDate: {str(e)}', 400)

    denied = tenant_forbidden(tenant_id)
    if denied:
        return denied
    if not db.session.get(Tenant, tenant_id):
        return error_response('NOT_FOUND', 'Tenant not found', 404)

    result = subscription_service.create_subscription(
        tenant_id,
        mobile_user_id.strip(),
        user_type,
        billing_cycle,
        start_date=start_date,
        is_trial=bool(data.get('isTrial')),
        trial_days=trial_days,
    )
    record_admin_action(
        current_user,
        'subscription.create',
        subscription_id=result.subscription.id if result.success else None,
        tenant_id=tenant_id,
        before=None,
        after=result.subscription.snapshot() if result.success else None,
        success=result.success,
        error_message=result.error,
    )
    if not result.success:
        return result_error(result)
    return success_response(_serialize_result(result), result.message, 201)


@admin_subscriptions_bp.route('/subscriptions/<int:subscription_id>/<action>', methods=['POST'])
@admin_required
def subscription_action(subscription_id, action):
    """Single-subscription lifecycle action: extend, suspend, cancel, reactivate, grace-period"""
    if action not in SUBSCRIPTION_ACTIONS:
        return error_response('NOT_FOUND', f'Unknown action: {action}', 404)
    validate, operation = SUBSCRIPTION_ACTIONS[action]

    data = json_body(request)
    problem = validate(data)
    if problem:
        return error_response('VALIDATION_ERROR', problem, 400)

    subscription = db.session.get(UserSubscription, subscription_id)
    if not subscription:
        return error_response('NOT_FOUND', 'Subscription not found', 404)
    denied = tenant_forbidden(subscription.tenant_id)
    if denied:
        return denied

    result = _audited(subscription, action, lambda: operation(subscription.id, data))
    if not result.success:
        return result_error(result)
    return success_response(_serialize_result(result), result.message)


@admin_subscriptions_bp.route('/subscriptions/bulk/<action>', methods=['POST'])
@admin_required
def bulk_action(action):
    """Apply one lifecycle action to up to BULK_ACTION_LIMIT subscriptions"""
    if action not in BULK_ACTIONS:
        return error_response('NOT_FOUND', f'Unknown bulk action: {action}', 404)
    validate, operation = SUBSCRIPTION_ACTIONS[action]

    data = json_body(request)
    limit = current_app.config.get('BULK_ACTION_LIMIT', 100)
    ids = data.get('subscriptionIds')
    if not isinstance(ids, list) or not ids:
        return error_response('VALIDATION_ERROR', 'subscriptionIds must be a non-empty list', 400)
    if len(ids) > limit:
        return error_response('VALIDATION_ERROR', f'At most {limit} subscriptions per request', 400)
    if not all(_positive_int(i) for i in ids):
        return error_response('VALIDATION_ERROR', 'subscriptionIds must contain subscription ids', 400)
    problem = validate(data)
    if problem:
        return error_response('VALIDATION_ERROR', problem, 400)

    results = []
    for subscription_id in dict.fromkeys(ids):
        subscription = db.session.get(UserSubscription, subscription_id)
        if not subscription:
            results.append({'subscriptionId': subscription_id, 'success': False, 'code': 'NOT_FOUND',
                            'message': 'Subscription not found'})
            continue
        if not current_user.can_manage_tenant(subscription.tenant_id):
            results.append({'subscriptionId': subscription_id, 'success': False, 'code': 'FORBIDDEN',
                            'message': 'Subscription belongs to another tenant'})
            continue

        result = _audited(subscription, f'bulk.{action}', lambda: operation(subscription.id, data))
        entry = {'subscriptionId': subscription_id, 'success': result.success}
        if result.success:
            entry['status'] = result.subscription.status
        else:
            entry.update(result.error_body())
            entry['success'] = False
        results.append(entry)

    succeeded = sum(1 for r in results if r['success'])
    current_app.logger.info(
        f"Bulk {action} by {current_user.get_id()}: {succeeded}/{len(results)} succeeded"
    )
    return success_response({
        'results': results,
        'succeeded': succeeded,
        'failed': len(results) - succeeded,
    })
