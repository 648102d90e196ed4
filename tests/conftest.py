import pytest
from datetime import datetime, timedelta

from app import create_app
from config import Config
from models import db, Tenant, MobileUser, Admin, UserSubscription


class TestConfig(Config):
    __test__ = False

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    MAIL_SERVER = None
    MAIL_SUPPRESS_SEND = True
    LOG_LEVEL = "WARNING"


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line("markers", "db: mark test as database-intensive")
    config.addinivalue_line("markers", "payment: mark test as payment-related")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# Route tests must not hold an app context open: every request needs its own
# ``g`` so the identity headers are reloaded. Fixtures therefore hand out ids.

@pytest.fixture
def app():
    """Fresh application and in-memory database per test"""
    app = create_app(TestConfig)

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_ctx(app):
    """Application context for service-level tests"""
    with app.app_context():
        yield app


@pytest.fixture
def tenant_id(app):
    with app.app_context():
        tenant = Tenant(
            name="Acme Recovery",
            is_active=True,
            plan_prices={"weekly": 100, "monthly": 340, "quarterly": 900, "yearly": 3000},
        )
        db.session.add(tenant)
        db.session.commit()
        return tenant.id


@pytest.fixture
def other_tenant_id(app):
    with app.app_context():
        tenant = Tenant(name="Other Recovery", is_active=True)
        db.session.add(tenant)
        db.session.commit()
        return tenant.id


@pytest.fixture
def agent(app, tenant_id):
    """External id of an active repo agent of the main tenant"""
    with app.app_context():
        return make_mobile_user(tenant_id).external_id


@pytest.fixture
def tenant_admin(app, tenant_id):
    with app.app_context():
        admin = Admin(tenant_id=tenant_id, username="tenantadmin", email="admin@acme.example", role="admin")
        db.session.add(admin)
        db.session.commit()
        return admin.id


def make_mobile_user(tenant_id, external_id="agent-1", user_type="repo_agent", status="active", name="Ravi Kumar"):
    user = MobileUser(
        tenant_id=tenant_id,
        user_type=user_type,
        external_id=external_id,
        name=name,
        phone_number="9876543210",
        email=f"{external_id}@example.com",
        role="field_agent",
        status=status,
    )
    db.session.add(user)
    db.session.commit()
    return user


def make_subscription(tenant_id, mobile_user_id="agent-1", status="active", billing_cycle="monthly",
                      period_start=None, period_end=None, **fields):
    """Insert a subscription row directly, bypassing the lifecycle service"""
    period_start = period_start or datetime.utcnow() - timedelta(days=5)
    period_end = period_end or period_start + timedelta(days=30)
    subscription = UserSubscription(
        tenant_id=tenant_id,
        mobile_user_id=mobile_user_id,
        user_type=fields.pop("user_type", "repo_agent"),
        status=status,
        billing_cycle=billing_cycle,
        start_date=period_start,
        current_period_start=period_start,
        current_period_end=period_end,
        end_date=period_end,
        last_usage_reset=period_start,
        **fields,
    )
    db.session.add(subscription)
    db.session.commit()
    return subscription


def mobile_headers(tenant_id, mobile_user_id="agent-1", user_type="repo_agent", role="field_agent"):
    return {
        "X-Tenant-Id": str(tenant_id),
        "X-Mobile-User-Id": mobile_user_id,
        "X-User-Type": user_type,
        "X-User-Role": role,
    }


def admin_headers(tenant_id=None, role="admin", user_id="admin-1", email="admin@acme.example"):
    headers = {
        "X-User-Role": role,
        "X-User-Id": user_id,
        "X-User-Email": email,
    }
    if tenant_id is not None:
        headers["X-Tenant-Id"] = str(tenant_id)
    return headers


def super_admin_headers():
    return admin_headers(role="super_admin", user_id="root", email="root@fieldaccess.example")
