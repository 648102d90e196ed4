"""
JSON envelope helpers shared by the API blueprints
"""
from flask import jsonify


def success_response(data=None, message=None, status=200):
    body = {'success': True}
    if message:
        body['message'] = message
    if data is not None:
        body['data'] = data
    return jsonify(body), status


def result_error(result):
    """Error envelope and HTTP status for a failed ServiceResult"""
    return jsonify(result.error_body()), result.http_status


def json_body(req):
    """Request JSON object, or an empty dict for a missing or non-object body"""
    data = req.get_json(silent=True)
    return data if isinstance(data, dict) else {}
