"""
Mobile usage metering routes
"""
from flask import Blueprint, g, request, current_app
from sqlalchemy.exc import SQLAlchemyError

from routes.responses import json_body, success_response
from utils.access_gate import enforce_usage_limit, require_active_subscription, track_api_calls
from utils.auth_utils import error_response
from utils.usage_tracker import UsageEventError, check_limit, track_download

mobile_usage_bp = Blueprint('mobile_usage', __name__, url_prefix='/api/usage')


def _record_count():
    """Records the request is about to download; 0 when missing or malformed"""
    value = json_body(request).get('recordCount')
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


@mobile_usage_bp.route('/downloads', methods=['POST'])
@require_active_subscription
@enforce_usage_limit('data_downloads', _record_count)
@track_api_calls('usage.downloads')
def record_download():
    """Record an offline data download against the subscription's data limit"""
    data = json_body(request)
    record_count = data.get('recordCount')
    endpoint = data.get('endpoint') or request.path

    if isinstance(record_count, bool) or not isinstance(record_count, int) or record_count < 0:
        return error_response('VALIDATION_ERROR', 'recordCount must be a non-negative integer', 400)

    subscription = g.subscription
    if subscription is None:
        return success_response({'tracked': False}, 'No subscription; super admin access')

    try:
        tracked = track_download(subscription, record_count, endpoint)
    except UsageEventError as e:
        return error_response('VALIDATION_ERROR', str(e), 400)
    except SQLAlchemyError as e:
        current_app.logger.error(f"Error recording download: {str(e)}", exc_info=True)
        return error_response('INTERNAL_ERROR', 'Internal server error', 500)

    check = check_limit(subscription, 'data_downloads', requested=0)
    return success_response({
        'tracked': True,
        'dataDownloaded': tracked['current'],
        'limit': check.limit,
        'remaining': check.remaining,
        'alert': tracked['alert'],
    })
