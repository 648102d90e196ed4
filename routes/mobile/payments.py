"""
Mobile payment proof routes
"""
from flask import Blueprint, request, current_app
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.payment import Payment
from routes.responses import json_body, result_error, success_response
from services.payment_service import submit_payment
from utils.auth_utils import error_response, mobile_user_required

mobile_payments_bp = Blueprint('mobile_payments', __name__, url_prefix='/api/payments')


@mobile_payments_bp.route('/submit', methods=['POST'])
@mobile_user_required
def submit():
    """Submit a bank transfer reference for admin verification"""
    result = submit_payment(current_user, json_body(request))
    if not result.success:
        return result_error(result)
    return success_response(result.payment.to_dict(), result.message, 201)


@mobile_payments_bp.route('/my-payments')
@mobile_user_required
def my_payments():
    """Payments submitted by the calling user, newest first"""
    limit = min(request.args.get('limit', 50, type=int), 200)
    try:
        payments = Payment.query.filter_by(
            tenant_id=current_user.tenant_id,
            submitted_by_mobile_id=str(current_user.mobile_user_id),
        ).order_by(Payment.created_at.desc()).limit(limit).all()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Error loading payments: {str(e)}", exc_info=True)
        return error_response('INTERNAL_ERROR', 'Internal server error', 500)

    return success_response([p.to_dict() for p in payments])
