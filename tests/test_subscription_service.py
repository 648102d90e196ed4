import threading
from datetime import datetime, timedelta

import pytest

from models import db, Tenant, UserSubscription
from services import subscription_service
from services.subscription_service import (
    GRACE_PERIOD_DAYS,
    cancel_subscription,
    create_subscription,
    enter_grace_period,
    expire_subscription,
    extend_trial,
    finalize_period_end_cancellation,
    mark_past_due,
    reactivate_subscription,
    renew_subscription,
    suspend_subscription,
)
from tests.conftest import TestConfig, make_subscription


def test_create_weekly_subscription(app_ctx, tenant_id):
    """Test a weekly subscription created on 2024-06-03 ends on 2024-06-10"""
    result = create_subscription(tenant_id, "agent-1", "repo_agent", "weekly", start_date=datetime(2024, 6, 3))

    assert result.success
    subscription = result.subscription
    assert subscription.status == "active"
    assert subscription.current_period_start == datetime(2024, 6, 3)
    assert subscription.current_period_end == datetime(2024, 6, 10)
    assert subscription.end_date == datetime(2024, 6, 10)
    assert subscription.data_downloaded == 0
    assert subscription.api_calls_count == 0


def test_create_trial_subscription(app_ctx, tenant_id):
    start = datetime(2024, 6, 3)
    result = create_subscription(tenant_id, "agent-1", "repo_agent", "monthly", start_date=start,
                                 is_trial=True, trial_days=14)

    assert result.success
    assert result.subscription.status == "trial"
    assert result.subscription.trial_end == start + timedelta(days=14)


def test_create_rejects_duplicate_pair(app_ctx, tenant_id):
    assert create_subscription(tenant_id, "agent-1", "repo_agent", "monthly").success

    result = create_subscription(tenant_id, "agent-1", "repo_agent", "weekly")
    assert not result.success
    assert result.code == "VALIDATION_ERROR"
    assert UserSubscription.query.count() == 1


def test_same_user_id_in_other_tenant_is_separate(app_ctx, tenant_id, other_tenant_id):
    assert create_subscription(tenant_id, "agent-1", "repo_agent", "monthly").success
    assert create_subscription(other_tenant_id, "agent-1", "repo_agent", "monthly").success


@pytest.mark.parametrize("kwargs,code", [
    ({"billing_cycle": "daily"}, "VALIDATION_ERROR"),
    ({"user_type": "manager"}, "VALIDATION_ERROR"),
    ({"mobile_user_id": ""}, "VALIDATION_ERROR"),
])
def test_create_validation(app_ctx, tenant_id, kwargs, code):
    params = {"mobile_user_id": "agent-1", "user_type": "repo_agent", "billing_cycle": "monthly"}
    params.update(kwargs)
    result = create_subscription(tenant_id, **params)
    assert not result.success
    assert result.code == code


def test_renew_extends_from_current_period_end(app_ctx, tenant_id):
    """Test renewal starts at the old period end, not at now"""
    end = datetime.utcnow() + timedelta(days=10)
    subscription = make_subscription(tenant_id, period_start=end - timedelta(days=30), period_end=end,
                                     data_downloaded=420, api_calls_count=77)

    result = renew_subscription(subscription.id)

    assert result.success
    renewed = result.subscription
    assert renewed.status == "active"
    assert renewed.current_period_start == end
    assert renewed.current_period_end == end + timedelta(days=30)
    assert renewed.end_date == renewed.current_period_end
    assert renewed.data_downloaded == 0
    assert renewed.api_calls_count == 0
    assert result.data["previous_period_end"] == end
    assert result.data["new_period_end"] == renewed.current_period_end


def test_renew_with_new_cycle(app_ctx, tenant_id):
    end = datetime(2030, 6, 3)
    subscription = make_subscription(tenant_id, period_start=datetime(2030, 5, 4), period_end=end)

    result = renew_subscription(subscription.id, payment_id=42, new_billing_cycle="weekly")

    assert result.success
    assert result.subscription.billing_cycle == "weekly"
    assert result.subscription.current_period_end == datetime(2030, 6, 10)
    assert result.subscription.last_payment_id == 42


def test_renew_from_grace_period_returns_to_active(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id, status="grace_period",
                                     grace_period_end=datetime.utcnow() + timedelta(days=3))

    result = renew_subscription(subscription.id)

    assert result.success
    assert result.subscription.status == "active"
    assert result.subscription.grace_period_end is None


@pytest.mark.parametrize("status", ["trial", "expired", "suspended", "cancelled", "past_due"])
def test_renew_rejected_outside_active_and_grace(app_ctx, tenant_id, status):
    subscription = make_subscription(tenant_id, status=status)
    before = subscription.current_period_end

    result = renew_subscription(subscription.id)

    assert not result.success
    assert result.code == "INVALID_STATE"
    assert db.session.get(UserSubscription, subscription.id, populate_existing=True).current_period_end == before


def test_renew_missing_subscription(app_ctx):
    result = renew_subscription(9999)
    assert not result.success
    assert result.code == "NOT_FOUND"


def test_renew_unknown_cycle(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id)
    result = renew_subscription(subscription.id, new_billing_cycle="fortnightly")
    assert result.code == "VALIDATION_ERROR"


@pytest.mark.parametrize("status", ["cancelled", "expired", "suspended"])
def test_reactivate_starts_fresh_period(app_ctx, tenant_id, status):
    subscription = make_subscription(tenant_id, status=status, cancel_reason="moved away",
                                     suspension_reason="fraud check", data_downloaded=10)
    start = datetime(2024, 6, 3)

    result = reactivate_subscription(subscription.id, "weekly", start_date=start)

    assert result.success
    reactivated = result.subscription
    assert reactivated.status == "active"
    assert reactivated.current_period_start == start
    assert reactivated.current_period_end == datetime(2024, 6, 10)
    assert reactivated.cancel_reason is None
    assert reactivated.suspension_reason is None
    assert reactivated.data_downloaded == 0
    assert result.data["previous_status"] == status


@pytest.mark.parametrize("status", ["active", "trial", "grace_period", "past_due"])
def test_reactivate_rejected_for_live_subscriptions(app_ctx, tenant_id, status):
    subscription = make_subscription(tenant_id, status=status)
    result = reactivate_subscription(subscription.id, "monthly")
    assert result.code == "INVALID_STATE"


def test_reactivate_requires_cycle(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id, status="expired")
    assert reactivate_subscription(subscription.id, None).code == "VALIDATION_ERROR"
    assert reactivate_subscription(subscription.id, "daily").code == "VALIDATION_ERROR"


def test_cancel_at_period_end_keeps_access(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id)
    end = subscription.current_period_end

    result = cancel_subscription(subscription.id, "  switching vendor  ")

    assert result.success
    cancelled = result.subscription
    assert cancelled.status == "active"
    assert cancelled.cancel_at_period_end is True
    assert cancelled.cancel_reason == "switching vendor"
    assert cancelled.auto_renew is False
    assert cancelled.current_period_end == end
    assert result.data["immediate"] is False
    assert result.data["access_until"] == end


def test_cancel_immediately(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id)

    result = cancel_subscription(subscription.id, "fraud", immediate=True)

    assert result.success
    cancelled = result.subscription
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at is not None
    assert cancelled.current_period_end <= datetime.utcnow()
    assert not cancelled.can_access()


def test_cancel_requires_reason(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id)
    assert cancel_subscription(subscription.id, "   ").code == "VALIDATION_ERROR"
    assert cancel_subscription(subscription.id, None).code == "VALIDATION_ERROR"


@pytest.mark.parametrize("status", ["expired", "suspended", "cancelled", "past_due"])
def test_cancel_invalid_states(app_ctx, tenant_id, status):
    subscription = make_subscription(tenant_id, status=status)
    assert cancel_subscription(subscription.id, "no longer needed").code == "INVALID_STATE"


def test_suspend(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id)

    result = suspend_subscription(subscription.id, "Device reported stolen")

    assert result.success
    assert result.subscription.status == "suspended"
    assert result.subscription.suspension_reason == "Device reported stolen"
    assert result.subscription.suspended_at is not None


def test_suspend_trial_is_rejected(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id, status="trial")
    assert suspend_subscription(subscription.id, "abuse").code == "INVALID_STATE"


def test_reactivation_clears_pending_cancellation(app_ctx, tenant_id):
    """Test moving out of a cancelled state drops the cancellation fields"""
    subscription = make_subscription(tenant_id)
    assert cancel_subscription(subscription.id, "leaving", immediate=True).success

    result = reactivate_subscription(subscription.id, "monthly")

    assert result.success
    assert result.subscription.cancelled_at is None
    assert result.subscription.cancel_reason is None
    assert result.subscription.cancel_at_period_end is False


def test_extend_trial(app_ctx, tenant_id):
    trial_end = datetime(2030, 1, 15)
    subscription = make_subscription(tenant_id, status="trial", period_end=trial_end, trial_end=trial_end)

    result = extend_trial(subscription.id, 7)

    assert result.success
    assert result.subscription.trial_end == datetime(2030, 1, 22)
    assert result.subscription.current_period_end == datetime(2030, 1, 22)
    assert result.data["new_trial_end"] == datetime(2030, 1, 22)


def test_extend_trial_only_for_trials(app_ctx, tenant_id):
    subscription = make_subscription(tenant_id)
    assert extend_trial(subscription.id, 7).code == "INVALID_STATE"


@pytest.mark.parametrize("days", [0, -3, "7", True, 2.5])
def test_extend_trial_requires_positive_days(app_ctx, tenant_id, days):
    subscription = make_subscription(tenant_id, status="trial")
    assert extend_trial(subscription.id, days).code == "VALIDATION_ERROR"


def test_enter_grace_period(app_ctx, tenant_id):
    end = datetime.utcnow() - timedelta(hours=1)
    subscription = make_subscription(tenant_id, period_start=end - timedelta(days=30), period_end=end)

    result = enter_grace_period(subscription.id, "Card declined")

    assert result.success
    grace = result.subscription
    assert grace.status == "grace_period"
    assert grace.grace_period_end == end + timedelta(days=GRACE_PERIOD_DAYS)
    assert grace.payment_failure_reason == "Card declined"
    assert grace.is_in_grace_period()
    assert grace.can_access()


@pytest.mark.parametrize("status", ["trial", "expired", "cancelled", "suspended", "grace_period"])
def test_enter_grace_period_invalid_states(app_ctx, tenant_id, status):
    subscription = make_subscription(tenant_id, status=status)
    assert enter_grace_period(subscription.id).code == "INVALID_STATE"


def test_expire_and_mark_past_due(app_ctx, tenant_id):
    trial = make_subscription(tenant_id, mobile_user_id="agent-2", status="trial")
    grace = make_subscription(tenant_id, mobile_user_id="agent-3", status="grace_period",
                              grace_period_end=datetime.utcnow() - timedelta(minutes=1))

    assert expire_subscription(trial.id).subscription.status == "expired"
    assert mark_past_due(grace.id).subscription.status == "past_due"

    result = mark_past_due(trial.id)
    assert result.code == "INVALID_TRANSITION"


def test_finalize_period_end_cancellation(app_ctx, tenant_id):
    end = datetime.utcnow() + timedelta(days=2)
    subscription = make_subscription(tenant_id, period_end=end)
    assert cancel_subscription(subscription.id, "closing branch").success

    early = finalize_period_end_cancellation(subscription.id)
    assert early.code == "INVALID_STATE"

    result = finalize_period_end_cancellation(subscription.id, now=end + timedelta(seconds=1))
    assert result.success
    assert result.subscription.status == "cancelled"
    assert result.subscription.cancel_reason == "closing branch"


def test_lost_race_is_replanned(app_ctx, tenant_id, monkeypatch):
    """Test a CAS miss re-reads the row and extends from the newer end"""
    end = datetime(2030, 1, 1)
    subscription = make_subscription(tenant_id, period_start=datetime(2029, 12, 2), period_end=end)
    real_cas = subscription_service._compare_and_swap
    calls = []

    def racing_cas(subscription_id, expected, values):
        calls.append(expected[1])
        if len(calls) == 1:
            # Another writer renews first
            db.session.execute(
                UserSubscription.__table__.update()
                .where(UserSubscription.__table__.c.id == subscription_id)
                .values(current_period_end=datetime(2030, 1, 20), end_date=datetime(2030, 1, 20))
            )
            db.session.commit()
        return real_cas(subscription_id, expected, values)

    monkeypatch.setattr(subscription_service, "_compare_and_swap", racing_cas)

    result = renew_subscription(subscription.id)

    assert result.success
    assert calls == [end, datetime(2030, 1, 20)]
    assert result.subscription.current_period_end == datetime(2030, 2, 19)


def test_gives_up_after_repeated_conflicts(app_ctx, tenant_id, monkeypatch):
    subscription = make_subscription(tenant_id)
    monkeypatch.setattr(subscription_service, "_compare_and_swap", lambda subscription_id, expected, values: False)

    result = renew_subscription(subscription.id)

    assert not result.success
    assert result.code == "CONFLICT"
    assert result.http_status == 409


@pytest.mark.slow
def test_concurrent_renewals_both_apply(tmp_path, monkeypatch):
    """Test two renewals racing on the same row extend it by two cycles"""
    from app import create_app

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 15}}

    app = create_app(FileConfig)
    end = datetime(2030, 1, 10)
    with app.app_context():
        tenant = Tenant(name="Race Co", is_active=True)
        db.session.add(tenant)
        db.session.commit()
        subscription_id = make_subscription(tenant.id, period_start=datetime(2029, 12, 2), period_end=end).id

    barrier = threading.Barrier(2, timeout=10)
    real_next_period_end = subscription_service.next_period_end
    waited = set()

    def synchronized_next_period_end(start, cycle):
        # Both threads have read the row before either one writes
        name = threading.current_thread().name
        if name not in waited:
            waited.add(name)
            barrier.wait()
        return real_next_period_end(start, cycle)

    monkeypatch.setattr(subscription_service, "next_period_end", synchronized_next_period_end)

    outcomes = {}

    def renew(name):
        with app.app_context():
            outcomes[name] = renew_subscription(subscription_id).success

    threads = [threading.Thread(target=renew, args=(f"renewer-{i}",), name=f"renewer-{i}") for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert outcomes == {"renewer-0": True, "renewer-1": True}
    with app.app_context():
        subscription = db.session.get(UserSubscription, subscription_id)
        assert subscription.current_period_end == datetime(2030, 3, 11)
        db.session.remove()
        db.drop_all()
