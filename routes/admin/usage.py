"""
Admin usage reporting routes
"""
from datetime import datetime

from flask import Blueprint, request
from flask_login import current_user

from models.usage_history import USAGE_EVENT_TYPES
from routes.responses import success_response
from utils.auth_utils import admin_required, error_response
from utils.usage_tracker import history_for_user, usage_summary_for_tenant

admin_usage_bp = Blueprint('admin_usage', __name__, url_prefix='/api/admin/usage')


def _tenant_scope():
    """Tenant the request reports on; super admins must name one"""
    if current_user.is_super_admin:
        return request.args.get('tenantId', type=int)
    return current_user.tenant_id


@admin_usage_bp.route('/users/<mobile_user_id>/history')
@admin_required
def user_history(mobile_user_id):
    """Live usage events of one mobile user, newest first"""
    tenant_id = _tenant_scope()
    if not tenant_id:
        return error_response('VALIDATION_ERROR', 'tenantId is required', 400)
    event_type = request.args.get('eventType', '').strip() or None
    if event_type and event_type not in USAGE_EVENT_TYPES:
        return error_response('VALIDATION_ERROR', f"eventType must be one of: {', '.join(USAGE_EVENT_TYPES)}", 400)
    limit = min(max(request.args.get('limit', 100, type=int), 1), 500)

    events = history_for_user(tenant_id, mobile_user_id, event_type=event_type, limit=limit)
    return success_response([e.to_dict() for e in events])


@admin_usage_bp.route('/summary')
@admin_required
def tenant_summary():
    tenant_id = _tenant_scope()
    if not tenant_id:
        return error_response('VALIDATION_ERROR', 'tenantId is required', 400)
    since = request.args.get('since', '').strip()
    if since:
        try:
            since = datetime.fromisoformat(since)
        except ValueError:
            return error_response('VALIDATION_ERROR', 'since must be an ISO 8601 date', 400)
    else:
        since = None

    return success_response({
        'tenantId': tenant_id,
        'events': usage_summary_for_tenant(tenant_id, since=since),
    })
