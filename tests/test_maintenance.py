from datetime import datetime, timedelta
from unittest.mock import patch

from models import db, Payment, UserSubscription
from services.payment_service import approve_payment, submit_payment
from services.results import ServiceResult
from tests.conftest import make_subscription
from utils.auth_utils import Identity
from utils.maintenance import retry_payment_checkpoints, run_all

NOW = datetime(2030, 1, 1, 6, 0)


def status_of(subscription_id):
    return db.session.get(UserSubscription, subscription_id, populate_existing=True).status


def test_sweeps_move_subscriptions_along(app_ctx, tenant_id):
    lapsed = make_subscription(tenant_id, "agent-a", period_start=datetime(2029, 12, 1), period_end=datetime(2029, 12, 31))
    grace_over = make_subscription(tenant_id, "agent-b", status="grace_period", period_start=datetime(2029, 11, 20),
                                   period_end=datetime(2029, 12, 20), grace_period_end=datetime(2029, 12, 27))
    trial_over = make_subscription(tenant_id, "agent-c", status="trial", trial_end=datetime(2029, 12, 31))
    leaving = make_subscription(tenant_id, "agent-d", period_start=datetime(2029, 12, 1),
                                period_end=datetime(2029, 12, 31), cancel_at_period_end=True)
    current = make_subscription(tenant_id, "agent-e", period_start=datetime(2029, 12, 20), period_end=datetime(2030, 1, 19))

    summary = run_all(NOW)

    assert summary == {
        "cancellationsFinalized": 1,
        "gracePeriodsStarted": 1,
        "trialsExpired": 1,
        "gracePeriodsEnded": 1,
        "paymentsReconciled": 0,
        "usageRowsPurged": 0,
    }
    assert status_of(lapsed.id) == "grace_period"
    assert status_of(grace_over.id) == "past_due"
    assert status_of(trial_over.id) == "expired"
    assert status_of(leaving.id) == "cancelled"
    assert status_of(current.id) == "active"

    grace = db.session.get(UserSubscription, lapsed.id)
    assert grace.grace_period_end == datetime(2030, 1, 7)


def test_sweeps_are_idempotent(app_ctx, tenant_id):
    make_subscription(tenant_id, "agent-a", period_start=datetime(2029, 12, 1), period_end=datetime(2029, 12, 31))

    assert run_all(NOW)["gracePeriodsStarted"] == 1
    assert run_all(NOW)["gracePeriodsStarted"] == 0


def test_retry_sweep_drains_checkpoints(app_ctx, tenant_id, agent):
    identity = Identity(tenant_id=tenant_id, mobile_user_id="agent-1", user_type="repo_agent", role="field_agent")
    payment_id = submit_payment(identity, {"planPeriod": "weekly", "amount": 100, "transactionId": "UTR555555"}).payment.id
    admin = Identity(tenant_id=tenant_id, role="admin", user_id="admin-1", email="admin@acme.example")
    failure = ServiceResult.fail("INTERNAL_ERROR", "database unavailable")
    with patch("services.subscription_service.create_subscription", return_value=failure):
        approve_payment(payment_id, admin, now=NOW)

    assert retry_payment_checkpoints(NOW) == 0
    assert retry_payment_checkpoints(NOW + timedelta(minutes=5)) == 1

    payment = db.session.get(Payment, payment_id, populate_existing=True)
    assert payment.retry_reason is None
    subscription = db.session.get(UserSubscription, payment.subscription_id)
    assert subscription.mobile_user_id == "agent-1"
    assert subscription.billing_cycle == "weekly"
    assert subscription.last_payment_id == payment_id
