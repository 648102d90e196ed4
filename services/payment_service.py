"""
Payment submission and approval workflows.

Approval is a small saga. The payment is first claimed (pending -> approved)
together with a retry checkpoint, then the subscription is created, renewed
or reactivated, and a final write clears the checkpoint or records why the
subscription step failed. The retry sweep drains whatever checkpoints are
left behind.
"""
import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.mobile_user import MOBILE_USER_TYPES
from models.payment import Payment, PLAN_PERIODS
from models.tenant import Tenant, PLAN_TIERS
from services import results
from services import subscription_service
from services.results import ServiceResult
from utils.invoice import next_invoice_number
from utils.mail import send_payment_notification
from utils.notifications import (
    notify_payment_submitted,
    notify_retry_exhausted,
    notify_subscription_update_failed,
)
from utils.user_store import find_user

logger = logging.getLogger(__name__)

TRANSACTION_ID_PATTERN = re.compile(r'^[A-Za-z0-9]{6,}$')
AMOUNT_TOLERANCE_FLOOR = Decimal('5')
AMOUNT_TOLERANCE_RATE = Decimal('0.02')

DEFAULT_PLAN_TIER = 'basic'
CHECKPOINT_PENDING = 'subscription update pending'
MAX_RETRIES = 10
MAX_RETRY_BACKOFF = timedelta(hours=24)
MAX_REASON_LENGTH = 500

ACTION_CREATE = 'CREATE'
ACTION_RENEW = 'RENEW'
ACTION_REACTIVATE = 'REACTIVATE'

SUCCESS_MESSAGE = 'Payment approved and subscription updated'
RETRY_MESSAGE = 'Payment approved but subscription update failed (will retry)'


def _retry_delay():
    return timedelta(minutes=current_app.config.get('PAYMENT_RETRY_DELAY_MINUTES', 5))


def _screenshot_retention():
    return timedelta(days=current_app.config.get('SCREENSHOT_RETENTION_DAYS', 2))


def retry_backoff(retry_count):
    """Delay before the next reconcile attempt: base * 2^n, capped at 24h"""
    return min(_retry_delay() * (2 ** retry_count), MAX_RETRY_BACKOFF)


def amount_tolerance(expected):
    return max(AMOUNT_TOLERANCE_FLOOR, expected * AMOUNT_TOLERANCE_RATE)


def _parse_amount(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _optional_text(value, max_length=None):
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value:
        return None
    return value[:max_length] if max_length else value


def submit_payment(identity, payload):
    """Validate and persist a pending payment proof for the calling mobile user"""
    if (
        identity is None
        or identity.user_type not in MOBILE_USER_TYPES
        or not identity.tenant_id
        or not identity.mobile_user_id
    ):
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Only repo agents and office staff can submit payments')

    payload = payload or {}
    plan_period = payload.get('planPeriod')
    if plan_period not in PLAN_PERIODS:
        return ServiceResult.fail(
            results.INVALID_PLAN_PERIOD,
            f"Invalid plan period. Must be one of: {', '.join(PLAN_PERIODS)}",
        )

    transaction_id = payload.get('transactionId')
    transaction_id = transaction_id.strip() if isinstance(transaction_id, str) else ''
    if not TRANSACTION_ID_PATTERN.match(transaction_id):
        return ServiceResult.fail(
            results.INVALID_TRANSACTION_ID,
            'Transaction ID must be at least 6 letters or digits',
        )

    amount = _parse_amount(payload.get('amount'))
    if amount is None or amount < 0:
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Amount must be a non-negative number')

    try:
        tenant = db.session.get(Tenant, identity.tenant_id)
        if not tenant:
            return ServiceResult.fail(results.NOT_FOUND, 'Tenant not found')

        user = find_user(tenant.id, identity.user_type, identity.mobile_user_id)
        if not user:
            return ServiceResult.fail(results.USER_NOT_FOUND, 'User not found')
        if not user.is_active:
            return ServiceResult.fail(results.USER_NOT_ACTIVE, 'User account is not active')

        if Payment.query.filter_by(transaction_id=transaction_id).first():
            return ServiceResult.fail(results.DUPLICATE_TRANSACTION, 'This transaction ID has already been submitted')

        expected = tenant.expected_price(plan_period)
        expected_amount = None
        if expected is not None:
            expected_amount = Decimal(str(expected))
            tolerance = amount_tolerance(expected_amount)
            if abs(amount - expected_amount) > tolerance:
                return ServiceResult.fail(
                    results.AMOUNT_MISMATCH,
                    f'Amount {amount} does not match the {plan_period} price of {expected_amount} '
                    f'(allowed difference {tolerance})',
                )
        else:
            logger.warning(
                "No %s price configured for tenant %s; accepting payment %s unvalidated",
                plan_period, tenant.id, transaction_id,
            )

        payment = Payment(
            tenant_id=tenant.id,
            submitted_by_mobile_id=str(identity.mobile_user_id),
            submitted_by_name=user.name,
            submitted_by_phone=user.phone_number,
            submitted_by_email=user.email,
            submitted_by_role=user.role,
            submitted_by_user_type=user.user_type,
            plan_period=plan_period,
            amount=amount,
            transaction_id=transaction_id,
            notes=_optional_text(payload.get('notes'), 1000),
            screenshot_url=_optional_text(payload.get('screenshotUrl'), 500),
            status='pending',
            amount_validated=expected_amount is not None,
            expected_amount=expected_amount,
            retry_count=0,
        )
        db.session.add(payment)
        db.session.commit()
    except IntegrityError:
        # Unique constraint caught a duplicate that slipped past the pre-check
        db.session.rollback()
        return ServiceResult.fail(results.DUPLICATE_TRANSACTION, 'This transaction ID has already been submitted')
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to submit payment for user %s", identity.mobile_user_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to submit payment')

    logger.info(
        "Payment %s submitted (tenant=%s user=%s period=%s amount=%s validated=%s)",
        payment.id, payment.tenant_id, payment.submitted_by_mobile_id,
        plan_period, amount, payment.amount_validated,
    )

    # Don't fail the submission if notification fails
    notify_payment_submitted(payment)
    try:
        send_payment_notification(payment)
    except Exception as e:
        logger.error(f"Failed to email payment notification: {str(e)}", exc_info=True)

    return ServiceResult.ok(payment=payment, message='Payment submitted successfully. Awaiting admin verification.')


def resolve_plan_tier(tenant):
    """Legacy tier of the tenant; almost always unset, so usually the default"""
    if tenant.plan_tier in PLAN_TIERS:
        return tenant.plan_tier
    return DEFAULT_PLAN_TIER


def choose_action(subscription):
    if subscription is None:
        return ACTION_CREATE
    if subscription.status in subscription_service.REACTIVATABLE_STATUSES:
        return ACTION_REACTIVATE
    # active and grace_period renew; anything else fails renewal and is retried
    return ACTION_RENEW


def _revalidate_submitter(payment):
    """Failed result if the submitter is gone or inactive, else None"""
    if not payment.has_submitter_snapshot:
        logger.warning(
            "Payment %s predates submitter snapshots; skipping submitter validation",
            payment.id,
        )
        return None
    try:
        user = find_user(payment.tenant_id, payment.submitted_by_user_type, payment.submitted_by_mobile_id)
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("User store lookup failed for payment %s; continuing approval", payment.id, exc_info=True)
        return None

    if not user:
        return ServiceResult.fail(results.USER_NOT_FOUND, 'Submitting user no longer exists')
    if not user.is_active:
        return ServiceResult.fail(results.USER_NOT_ACTIVE, 'Submitting user is not active')
    return None


def _apply_to_subscription(payment):
    """Create, renew or reactivate the beneficiary's subscription for this payment"""
    action = None
    try:
        existing = subscription_service.find_subscription(payment.tenant_id, payment.beneficiary_mobile_user_id)
        action = choose_action(existing)
        if action == ACTION_CREATE:
            result = subscription_service.create_subscription(
                payment.tenant_id,
                payment.beneficiary_mobile_user_id,
                payment.beneficiary_user_type,
                payment.plan_period,
                payment_id=payment.id,
            )
        elif action == ACTION_REACTIVATE:
            result = subscription_service.reactivate_subscription(
                existing.id, payment.plan_period, payment_id=payment.id,
            )
        else:
            result = subscription_service.renew_subscription(
                existing.id, payment_id=payment.id, new_billing_cycle=payment.plan_period,
            )
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Subscription lookup failed for payment %s", payment.id, exc_info=True)
        result = ServiceResult.fail(results.INTERNAL_ERROR, 'Subscription lookup failed')
    return action, result


def _clear_checkpoint(payment, subscription):
    payment.retry_reason = None
    payment.next_retry_at = None
    payment.subscription_id = subscription.id
    payment.effective_start = subscription.current_period_start
    payment.effective_end = subscription.current_period_end


def approve_payment(payment_id, actor, mobile_user_id=None, approval_notes=None, user_type=None, now=None):
    """Approve a pending payment and apply it to the beneficiary's subscription.

    A failed subscription step does not fail the approval: the payment stays
    approved with retry metadata for the reconcile sweep.
    """
    now = now or datetime.utcnow()
    try:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            return ServiceResult.fail(results.NOT_FOUND, 'Payment not found')
        if payment.status != 'pending':
            return ServiceResult.fail(results.ALREADY_PROCESSED, 'Payment already processed')

        tenant = db.session.get(Tenant, payment.tenant_id)
        if not tenant:
            return ServiceResult.fail(results.NOT_FOUND, 'Tenant not found')
        if not actor.can_manage_tenant(tenant.id):
            return ServiceResult.fail(results.FORBIDDEN, 'You can only approve payments of your own tenant')
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to load payment %s", payment_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to load payment')

    failed = _revalidate_submitter(payment)
    if failed:
        return failed

    plan_code = resolve_plan_tier(tenant)

    target_user_id = _optional_text(mobile_user_id) or payment.submitted_by_mobile_id
    if not target_user_id:
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Mobile user ID is required')
    target_user_type = (
        payment.submitted_by_user_type
        or _optional_text(user_type)
        or actor.user_type
    )
    if target_user_type not in MOBILE_USER_TYPES:
        target_user_type = 'repo_agent'

    # Step 1: claim the payment and leave a checkpoint for the retry sweep
    try:
        claimed = Payment.query.filter_by(id=payment.id, status='pending').update({
            'status': 'approved',
            'approved_by': str(actor.get_id()) if actor.get_id() else None,
            'approved_at': now,
            'processed_by_role': actor.role,
            'processed_by_email': actor.email,
            'approval_notes': _optional_text(approval_notes, 1000),
            'beneficiary_mobile_user_id': target_user_id,
            'beneficiary_user_type': target_user_type,
            'retry_reason': CHECKPOINT_PENDING,
            'retry_count': 0,
            'next_retry_at': now + _retry_delay(),
            'updated_at': now,
        }, synchronize_session=False)
        if claimed != 1:
            db.session.rollback()
            return ServiceResult.fail(results.ALREADY_PROCESSED, 'Payment already processed')
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to claim payment %s for approval", payment_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to approve payment')

    payment = db.session.get(Payment, payment_id, populate_existing=True)
    logger.info("Payment %s claimed for approval by %s (%s)", payment.id, actor.get_id(), actor.role)

    # Step 2: subscription mutation
    action, outcome = _apply_to_subscription(payment)
    subscription = outcome.subscription if outcome.success else None
    if outcome.success:
        logger.info("Payment %s applied to subscription %s (%s)", payment.id, subscription.id, action)
    else:
        logger.warning(
            "Payment %s approved but %s failed: %s (%s)",
            payment.id, action, outcome.error, outcome.code,
        )

    # Step 3: invoice number, non-critical
    invoice_number = None
    try:
        invoice_number = next_invoice_number(now)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to generate invoice for payment {payment.id}: {str(e)}", exc_info=True)

    # Step 4: single write of every payment-side outcome
    payment = db.session.get(Payment, payment_id, populate_existing=True)
    if invoice_number:
        payment.invoice_number = invoice_number
        payment.invoice_generated_at = now
    if payment.screenshot_url:
        payment.screenshot_delete_at = now + _screenshot_retention()
    if subscription is not None:
        _clear_checkpoint(payment, subscription)
    else:
        payment.retry_reason = (outcome.error or 'Subscription update failed')[:MAX_REASON_LENGTH]
        payment.retry_count = 0
        payment.next_retry_at = now + _retry_delay()
    try:
        db.session.commit()
    except SQLAlchemyError:
        # The claim checkpoint is still in place, the sweep will finish this payment
        db.session.rollback()
        logger.error("Failed to record approval outcome of payment %s", payment_id, exc_info=True)
        payment = db.session.get(Payment, payment_id, populate_existing=True)

    if subscription is None:
        notify_subscription_update_failed(payment, outcome.error)
    else:
        subscription = subscription_service.get_subscription(subscription.id)

    message = SUCCESS_MESSAGE if subscription is not None else RETRY_MESSAGE
    data = {
        'payment': payment.to_dict(),
        'subscription': subscription.to_dict() if subscription else None,
        'action': action,
        'plan': {
            'code': plan_code,
            'period': payment.plan_period,
            'amount': float(payment.amount),
        },
        'user': {
            'id': target_user_id,
            'endDate': subscription.current_period_end.isoformat() if subscription else None,
        },
        'submittedBy': payment.submitted_by(),
        'invoice': {
            'number': payment.invoice_number,
            'generatedAt': payment.invoice_generated_at.isoformat() if payment.invoice_generated_at else None,
        } if payment.invoice_number else None,
        'subscriptionStatus': subscription.status if subscription else None,
        'billingCycle': subscription.billing_cycle if subscription else payment.plan_period,
        'remainingDays': subscription.get_remaining_days() if subscription else None,
    }
    return ServiceResult(True, subscription=subscription, payment=payment, message=message, data=data)


def reject_payment(payment_id, actor, reason, now=None):
    """Reject a pending payment. The subscription is never touched."""
    if not isinstance(reason, str) or not reason.strip():
        return ServiceResult.fail(results.VALIDATION_ERROR, 'Rejection reason is required')
    now = now or datetime.utcnow()

    try:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            return ServiceResult.fail(results.NOT_FOUND, 'Payment not found')
        if payment.status != 'pending':
            return ServiceResult.fail(results.ALREADY_PROCESSED, 'Payment already processed')
        if not actor.can_manage_tenant(payment.tenant_id):
            return ServiceResult.fail(results.FORBIDDEN, 'You can only reject payments of your own tenant')

        rejected = Payment.query.filter_by(id=payment.id, status='pending').update({
            'status': 'rejected',
            'rejection_reason': reason.strip()[:MAX_REASON_LENGTH],
            'approved_by': str(actor.get_id()) if actor.get_id() else None,
            'approved_at': now,
            'processed_by_role': actor.role,
            'processed_by_email': actor.email,
            'updated_at': now,
        }, synchronize_session=False)
        if rejected != 1:
            db.session.rollback()
            return ServiceResult.fail(results.ALREADY_PROCESSED, 'Payment already processed')
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to reject payment %s", payment_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to reject payment')

    payment = db.session.get(Payment, payment_id, populate_existing=True)
    logger.info("Payment %s rejected by %s (%s)", payment.id, actor.get_id(), actor.role)
    return ServiceResult.ok(payment=payment, message='Payment rejected')


def find_payments_due_for_retry(now=None, limit=100):
    """Approved payments whose subscription step is still unresolved and due"""
    now = now or datetime.utcnow()
    return (
        Payment.query.filter(
            Payment.status == 'approved',
            Payment.retry_reason.isnot(None),
            Payment.next_retry_at <= now,
            Payment.retry_count < MAX_RETRIES,
        )
        .order_by(Payment.next_retry_at)
        .limit(limit)
        .all()
    )


def reconcile_payment(payment_id, now=None):
    """Re-attempt the subscription step of an approved payment.

    Safe to run more than once: a subscription already stamped with this
    payment only gets the checkpoint cleared.
    """
    now = now or datetime.utcnow()
    try:
        payment = db.session.get(Payment, payment_id, populate_existing=True)
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to load payment %s for reconciliation", payment_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to load payment')

    if not payment:
        return ServiceResult.fail(results.NOT_FOUND, 'Payment not found')
    if payment.status != 'approved' or not payment.retry_reason:
        return ServiceResult.ok(payment=payment, message='Nothing to reconcile', action=None)
    if (payment.retry_count or 0) >= MAX_RETRIES:
        return ServiceResult.fail(results.INVALID_STATE, 'Retry limit reached')

    if not payment.beneficiary_mobile_user_id:
        payment.beneficiary_mobile_user_id = payment.submitted_by_mobile_id
        payment.beneficiary_user_type = payment.submitted_by_user_type or 'repo_agent'

    try:
        existing = subscription_service.find_subscription(payment.tenant_id, payment.beneficiary_mobile_user_id)
        if existing and existing.last_payment_id == payment.id:
            _clear_checkpoint(payment, existing)
            db.session.commit()
            logger.info("Payment %s already applied to subscription %s; checkpoint cleared", payment.id, existing.id)
            return ServiceResult.ok(subscription=existing, payment=payment, message='Already applied', action=None)
        # Persist the beneficiary before the lifecycle step commits on its own
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to reconcile payment %s", payment_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to reconcile payment')

    action, outcome = _apply_to_subscription(payment)

    payment = db.session.get(Payment, payment_id, populate_existing=True)
    if outcome.success:
        _clear_checkpoint(payment, outcome.subscription)
    else:
        payment.retry_count = (payment.retry_count or 0) + 1
        payment.last_retry_at = now
        payment.next_retry_at = now + retry_backoff(payment.retry_count)
        payment.retry_reason = (outcome.error or 'Subscription update failed')[:MAX_REASON_LENGTH]
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to record reconciliation of payment %s", payment_id, exc_info=True)
        return ServiceResult.fail(results.INTERNAL_ERROR, 'Failed to reconcile payment')

    if outcome.success:
        logger.info("Payment %s reconciled via %s on subscription %s", payment.id, action, outcome.subscription.id)
        return ServiceResult.ok(subscription=outcome.subscription, payment=payment, message='Reconciled', action=action)

    logger.warning(
        "Reconcile of payment %s failed (attempt %d/%d): %s",
        payment.id, payment.retry_count, MAX_RETRIES, outcome.error,
    )
    if payment.retry_count >= MAX_RETRIES:
        logger.error("Giving up on payment %s after %d attempts", payment.id, payment.retry_count)
        notify_retry_exhausted(payment)
    return ServiceResult(False, payment=payment, error=outcome.error, code=outcome.code, data={'action': action})
