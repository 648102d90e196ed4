from datetime import datetime
from decimal import Decimal

import pytest

from models import db, AdminNotification, Payment, Tenant
from services.payment_service import amount_tolerance, submit_payment
from tests.conftest import make_mobile_user, mobile_headers
from utils.auth_utils import Identity


def agent_identity(tenant_id, mobile_user_id="agent-1", user_type="repo_agent"):
    return Identity(tenant_id=tenant_id, mobile_user_id=mobile_user_id, user_type=user_type, role="field_agent")


def payload(**overrides):
    body = {"planPeriod": "monthly", "amount": 340, "transactionId": "UTR123456789"}
    body.update(overrides)
    return body


@pytest.mark.payment
def test_submit_payment_with_matching_amount(app_ctx, tenant_id, agent):
    result = submit_payment(agent_identity(tenant_id), payload(screenshotUrl="https://cdn.example/p.png"))

    assert result.success
    payment = result.payment
    assert payment.status == "pending"
    assert payment.amount == Decimal("340")
    assert payment.amount_validated is True
    assert payment.expected_amount == Decimal("340")
    assert payment.submitted_by_name == "Ravi Kumar"
    assert payment.submitted_by_user_type == "repo_agent"
    assert payment.submitted_by_mobile_id == "agent-1"
    assert payment.retry_count == 0


@pytest.mark.payment
def test_amount_within_tolerance_is_accepted(app_ctx, tenant_id, agent):
    """Test 2% of 340 (6.80) is the allowed difference"""
    assert amount_tolerance(Decimal("340")) == Decimal("6.80")
    result = submit_payment(agent_identity(tenant_id), payload(amount="346.5"))
    assert result.success


@pytest.mark.payment
def test_amount_mismatch(app_ctx, tenant_id, agent):
    result = submit_payment(agent_identity(tenant_id), payload(amount=350))

    assert not result.success
    assert result.code == "AMOUNT_MISMATCH"
    assert result.http_status == 400
    assert Payment.query.count() == 0


def test_small_prices_use_the_tolerance_floor():
    assert amount_tolerance(Decimal("100")) == Decimal("5")


@pytest.mark.payment
def test_duplicate_reference_across_tenants(app_ctx, tenant_id, other_tenant_id, agent):
    """Test a transaction id can only be claimed once across all tenants"""
    make_mobile_user(other_tenant_id, external_id="agent-9")
    assert submit_payment(agent_identity(tenant_id), payload()).success

    result = submit_payment(agent_identity(other_tenant_id, "agent-9"), payload(amount=500))

    assert not result.success
    assert result.code == "DUPLICATE_TRANSACTION"
    assert Payment.query.count() == 1


@pytest.mark.payment
def test_duplicate_inserted_after_check_is_reported(app_ctx, tenant_id, agent, monkeypatch):
    """Test the unique constraint catches a duplicate committed between check and insert"""
    real_expected_price = Tenant.expected_price

    def expected_price_after_race(tenant, plan_period):
        # Another submission with the same reference lands first
        db.session.add(Payment(
            tenant_id=tenant.id,
            submitted_by_mobile_id="agent-2",
            plan_period="monthly",
            amount=Decimal("340"),
            transaction_id="UTR123456789",
            status="pending",
        ))
        db.session.commit()
        return real_expected_price(tenant, plan_period)

    monkeypatch.setattr(Tenant, "expected_price", expected_price_after_race)

    result = submit_payment(agent_identity(tenant_id), payload())

    assert not result.success
    assert result.code == "DUPLICATE_TRANSACTION"
    assert result.http_status == 400
    assert Payment.query.count() == 1
    assert Payment.query.one().submitted_by_mobile_id == "agent-2"


@pytest.mark.payment
def test_transaction_id_is_trimmed(app_ctx, tenant_id, agent):
    result = submit_payment(agent_identity(tenant_id), payload(transactionId="  ABC123  "))
    assert result.success
    assert result.payment.transaction_id == "ABC123"


@pytest.mark.parametrize("body,code", [
    (payload(planPeriod="daily"), "INVALID_PLAN_PERIOD"),
    (payload(planPeriod=None), "INVALID_PLAN_PERIOD"),
    (payload(transactionId="AB12"), "INVALID_TRANSACTION_ID"),
    (payload(transactionId="UTR-1234-5678"), "INVALID_TRANSACTION_ID"),
    (payload(transactionId=123456789), "INVALID_TRANSACTION_ID"),
    (payload(amount=-1), "VALIDATION_ERROR"),
    (payload(amount="abc"), "VALIDATION_ERROR"),
    (payload(amount=None), "VALIDATION_ERROR"),
])
def test_submit_validation(app_ctx, tenant_id, agent, body, code):
    result = submit_payment(agent_identity(tenant_id), body)
    assert not result.success
    assert result.code == code


def test_admin_identity_cannot_submit(app_ctx, tenant_id):
    admin = Identity(tenant_id=tenant_id, role="admin", user_id="admin-1")
    result = submit_payment(admin, payload())
    assert result.code == "VALIDATION_ERROR"


def test_inactive_user_is_refused(app_ctx, tenant_id):
    make_mobile_user(tenant_id, status="blocked")
    result = submit_payment(agent_identity(tenant_id), payload())
    assert result.code == "USER_NOT_ACTIVE"
    assert result.http_status == 403


def test_unknown_user_is_refused(app_ctx, tenant_id):
    result = submit_payment(agent_identity(tenant_id, "ghost"), payload())
    assert result.code == "USER_NOT_FOUND"
    assert result.http_status == 404


def test_user_type_must_match_store(app_ctx, tenant_id, agent):
    result = submit_payment(agent_identity(tenant_id, user_type="office_staff"), payload())
    assert result.code == "USER_NOT_FOUND"


def test_no_configured_price_accepts_unvalidated(app_ctx, other_tenant_id):
    make_mobile_user(other_tenant_id, external_id="agent-9")

    result = submit_payment(agent_identity(other_tenant_id, "agent-9"), payload(amount=1))

    assert result.success
    assert result.payment.amount_validated is False
    assert result.payment.expected_amount is None


def test_submission_notifies_tenant_admins(app_ctx, tenant_id, agent):
    result = submit_payment(agent_identity(tenant_id), payload())

    notification = AdminNotification.query.one()
    assert notification.type == "payment"
    assert notification.tenant_id == tenant_id
    assert notification.related_id == result.payment.id
    assert "UTR123456789" in notification.message


def test_submit_endpoint(client, tenant_id, agent):
    response = client.post("/api/payments/submit", json=payload(), headers=mobile_headers(tenant_id))

    assert response.status_code == 201
    body = response.get_json()
    assert body["success"] is True
    assert body["data"]["status"] == "pending"
    assert body["data"]["amountValidated"] is True

    listed = client.get("/api/payments/my-payments", headers=mobile_headers(tenant_id))
    assert listed.status_code == 200
    assert [p["transactionId"] for p in listed.get_json()["data"]] == ["UTR123456789"]


def test_submit_endpoint_error_envelope(client, tenant_id, agent):
    response = client.post("/api/payments/submit", json=payload(amount=350), headers=mobile_headers(tenant_id))

    assert response.status_code == 400
    body = response.get_json()
    assert body["success"] is False
    assert body["code"] == "AMOUNT_MISMATCH"


def test_submit_endpoint_requires_identity(client):
    response = client.post("/api/payments/submit", json=payload())
    assert response.status_code == 401


@pytest.mark.payment
def test_weekly_subscriber_overpaying_monthly_plan(app_ctx, tenant_id, agent):
    """Test the end-to-end scenario: weekly subscriber, 350 against a 340 monthly price"""
    from services.subscription_service import create_subscription

    created = create_subscription(tenant_id, "agent-1", "repo_agent", "weekly", start_date=datetime(2024, 6, 3))
    assert created.subscription.status == "active"
    assert created.subscription.current_period_end == datetime(2024, 6, 10)

    result = submit_payment(agent_identity(tenant_id), {"planPeriod": "monthly", "amount": 350, "transactionId": "ABC12345"})

    assert not result.success
    assert result.code == "AMOUNT_MISMATCH"
