"""
Admin payment verification routes
"""
from flask import Blueprint, request, current_app
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.payment import Payment, PAYMENT_STATUSES
from routes.responses import json_body, result_error, success_response
from services.payment_service import approve_payment, reconcile_payment, reject_payment
from utils.auth_utils import admin_required, error_response, tenant_forbidden

admin_payments_bp = Blueprint('admin_payments', __name__, url_prefix='/api/admin')


@admin_payments_bp.route('/payments')
@admin_required
def list_payments():
    """Payments of the admin's tenant (any tenant for super admins)"""
    status_filter = request.args.get('status', '').strip()
    tenant_id = request.args.get('tenantId', type=int)
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('perPage', 20, type=int), 100)

    if status_filter and status_filter not in PAYMENT_STATUSES:
        return error_response('VALIDATION_ERROR', f"Invalid status. Must be one of: {', '.join(PAYMENT_STATUSES)}", 400)

    query = Payment.query
    if current_user.is_super_admin:
        if tenant_id:
            query = query.filter_by(tenant_id=tenant_id)
    else:
        query = query.filter_by(tenant_id=current_user.tenant_id)
    if status_filter:
        query = query.filter_by(status=status_filter)

    try:
        pagination = query.order_by(Payment.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Error loading payments: {str(e)}", exc_info=True)
        return error_response('INTERNAL_ERROR', 'Internal server error', 500)

    return success_response({
        'payments': [p.to_dict() for p in pagination.items],
        'total': pagination.total,
        'page': pagination.page,
        'pages': pagination.pages,
    })


@admin_payments_bp.route('/payments/<int:payment_id>')
@admin_required
def get_payment(payment_id):
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return error_response('NOT_FOUND', 'Payment not found', 404)
    denied = tenant_forbidden(payment.tenant_id)
    if denied:
        return denied
    return success_response(payment.to_dict())


@admin_payments_bp.route('/payments/<int:payment_id>/approve', methods=['POST'])
@admin_required
def approve(payment_id):
    """Approve a payment and create, renew or reactivate the user's subscription"""
    data = json_body(request)
    result = approve_payment(
        payment_id,
        current_user,
        mobile_user_id=data.get('mobileUserId'),
        approval_notes=data.get('approvalNotes'),
        user_type=data.get('userType'),
    )
    if not result.success:
        return result_error(result)
    return success_response(result.data, result.message)


@admin_payments_bp.route('/payments/<int:payment_id>/reject', methods=['POST'])
@admin_required
def reject(payment_id):
    data = json_body(request)
    result = reject_payment(payment_id, current_user, data.get('rejectionReason'))
    if not result.success:
        return result_error(result)
    return success_response({'payment': result.payment.to_dict()}, result.message)


@admin_payments_bp.route('/payments/<int:payment_id>/reconcile', methods=['POST'])
@admin_required
def reconcile(payment_id):
    """Retry the subscription update of an approved payment now"""
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return error_response('NOT_FOUND', 'Payment not found', 404)
    denied = tenant_forbidden(payment.tenant_id)
    if denied:
        return denied

    result = reconcile_payment(payment_id)
    if not result.success:
        return result_error(result)
    return success_response({
        'payment': result.payment.to_dict(),
        'subscription': result.subscription.to_dict() if result.subscription else None,
        'action': result.data.get('action'),
    }, result.message)
