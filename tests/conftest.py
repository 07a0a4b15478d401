import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt

# Settings are read at import time, so the environment is fixed before any
# billing_engine import.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret-that-is-long-enough-for-hs256"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_billing"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_billing"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PAYMENT_RETRY_MAX_ATTEMPTS"] = "3"
os.environ["PAYMENT_RETRY_SCHEDULE_DAYS"] = "1,3,5"
os.environ["OTEL_ENABLED"] = "false"

from billing_engine.db import Base, SessionLocal, engine  # noqa: E402
from billing_engine.models.billing import (  # noqa: E402
    BillingCycle,
    Customer,
    EnterpriseContract,
    Invoice,
    InvoiceStatus,
    PricingPlan,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.services.billing.checkout import CheckoutSessions  # noqa: E402
from billing_engine.services.billing.enterprise import EnterpriseContracts  # noqa: E402
from billing_engine.services.billing.notifications import BillingNotifier  # noqa: E402
from billing_engine.services.billing.retries import PaymentRetryScheduler  # noqa: E402
from billing_engine.services.billing.subscriptions import SubscriptionLifecycle  # noqa: E402
from billing_engine.services.billing.usage import UsageLedger  # noqa: E402
from billing_engine.services.billing.webhooks import StateSynchronizer  # noqa: E402
from billing_engine.services.payment_gateway import StripeGateway  # noqa: E402

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


@pytest.fixture()
def db_session():
    """Fresh schema per test on the shared in-memory engine."""
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


# ============ Processor & Services ============


@pytest.fixture()
def fake_gateway():
    """Stripe gateway double. Signature checks use the real HMAC verification."""
    gateway = MagicMock(spec=StripeGateway)
    verifier = StripeGateway(secret_key="sk_test_billing", webhook_secret=WEBHOOK_SECRET)
    gateway.verify_webhook_signature.side_effect = verifier.verify_webhook_signature
    gateway.create_customer.side_effect = lambda **kwargs: {
        "id": f"cus_{uuid.uuid4().hex[:14]}"
    }
    gateway.create_subscription.return_value = {"id": "sub_new", "status": "active"}
    gateway.update_subscription.return_value = {"id": "sub_updated"}
    gateway.set_cancel_at_period_end.return_value = {"id": "sub_updated"}
    gateway.cancel_subscription.return_value = {"id": "sub_canceled", "status": "canceled"}
    gateway.retry_invoice_payment.return_value = {"status": "paid"}
    gateway.report_usage.return_value = {"id": "mbur_1"}
    gateway.create_checkout_session.return_value = {
        "id": "cs_test_1",
        "url": "https://checkout.stripe.test/cs_test_1",
    }
    gateway.create_billing_portal_session.return_value = {
        "url": "https://billing.stripe.test/session/bps_1"
    }
    gateway.find_promotion_code.return_value = None
    gateway.add_invoice_item.return_value = {"id": "ii_1"}
    return gateway


@pytest.fixture()
def notifications():
    return []


@pytest.fixture()
def notifier(notifications):
    billing_notifier = BillingNotifier()
    billing_notifier.register(lambda event, payload: notifications.append((event, payload)))
    return billing_notifier


@pytest.fixture()
def retry_scheduler(fake_gateway, notifier):
    return PaymentRetryScheduler(
        gateway=fake_gateway, notifier=notifier, max_attempts=3, schedule_days=(1, 3, 5)
    )


@pytest.fixture()
def usage_ledger(fake_gateway):
    return UsageLedger(gateway=fake_gateway)


@pytest.fixture()
def lifecycle(fake_gateway, retry_scheduler):
    return SubscriptionLifecycle(gateway=fake_gateway, retries=retry_scheduler)


@pytest.fixture()
def synchronizer(fake_gateway, retry_scheduler, usage_ledger, notifier):
    return StateSynchronizer(
        gateway=fake_gateway,
        retries=retry_scheduler,
        usage=usage_ledger,
        notifier=notifier,
    )


@pytest.fixture()
def checkout(fake_gateway):
    return CheckoutSessions(gateway=fake_gateway)


@pytest.fixture()
def enterprise(fake_gateway):
    return EnterpriseContracts(gateway=fake_gateway)


# ============ Model Factories ============


@pytest.fixture()
def plan_factory(db_session):
    def _create(**overrides) -> PricingPlan:
        name = overrides.pop("name", f"plan-{uuid.uuid4().hex[:8]}")
        values = {
            "name": name,
            "display_name": name.title(),
            "monthly_price_cents": 900,
            "annual_price_cents": 9000,
            "processor_monthly_price_id": f"price_{name}_monthly",
            "processor_annual_price_id": f"price_{name}_annual",
            "storage_gb": 10,
            "api_calls_per_month": 1000,
            "documents_per_month": 100,
            "seats": 3,
        }
        values.update(overrides)
        plan = PricingPlan(**values)
        db_session.add(plan)
        db_session.commit()
        db_session.refresh(plan)
        return plan

    return _create


@pytest.fixture()
def customer_factory(db_session):
    def _create(**overrides) -> Customer:
        values = {
            "organization_id": uuid.uuid4(),
            "processor_customer_id": f"cus_{uuid.uuid4().hex[:14]}",
            "billing_email": f"billing-{uuid.uuid4().hex[:8]}@example.com",
            "name": "Acme Inc",
        }
        values.update(overrides)
        customer = Customer(**values)
        db_session.add(customer)
        db_session.commit()
        db_session.refresh(customer)
        return customer

    return _create


@pytest.fixture()
def subscription_factory(db_session):
    def _create(customer: Customer, plan: PricingPlan, **overrides) -> Subscription:
        now = datetime.now(UTC)
        cycle = overrides.pop("billing_cycle", BillingCycle.monthly)
        values = {
            "customer_id": customer.id,
            "pricing_plan_id": plan.id,
            "processor_subscription_id": f"sub_{uuid.uuid4().hex[:14]}",
            "processor_item_id": f"si_{uuid.uuid4().hex[:14]}",
            "status": SubscriptionStatus.active,
            "billing_cycle": cycle,
            "amount_cents": plan.price_cents(cycle),
            "current_period_start": now - timedelta(days=5),
            "current_period_end": now + timedelta(days=25),
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _create


@pytest.fixture()
def invoice_factory(db_session):
    def _create(customer: Customer, subscription: Subscription | None = None, **overrides) -> Invoice:
        values = {
            "customer_id": customer.id,
            "subscription_id": subscription.id if subscription else None,
            "processor_invoice_id": f"in_{uuid.uuid4().hex[:14]}",
            "status": InvoiceStatus.open,
            "total_cents": 900,
            "subtotal_cents": 900,
            "amount_due_cents": 900,
            "invoice_date": datetime.now(UTC),
        }
        values.update(overrides)
        invoice = Invoice(**values)
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return _create


@pytest.fixture()
def contract_factory(db_session):
    def _create(customer: Customer, **overrides) -> EnterpriseContract:
        today = datetime.now(UTC).date()
        values = {
            "customer_id": customer.id,
            "base_price_cents": 250000,
            "contract_start": today - timedelta(days=30),
            "contract_end": today + timedelta(days=335),
            "volume_discounts": [
                {"threshold": 100, "discount_percent": 5},
                {"threshold": 500, "discount_percent": 12.5},
            ],
        }
        values.update(overrides)
        contract = EnterpriseContract(**values)
        db_session.add(contract)
        db_session.commit()
        db_session.refresh(contract)
        return contract

    return _create


@pytest.fixture()
def plan(plan_factory):
    return plan_factory(name="starter")


@pytest.fixture()
def organization_id():
    return uuid.uuid4()


@pytest.fixture()
def customer(customer_factory, organization_id):
    return customer_factory(organization_id=organization_id)


@pytest.fixture()
def subscription(subscription_factory, customer, plan):
    return subscription_factory(customer, plan)


# ============ Webhook Signing ============


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture()
def signed_event():
    """Serialize an event dict and return ``(body, signature_header)``."""

    def _sign(event: dict | bytes) -> tuple[bytes, str]:
        body = event if isinstance(event, bytes) else json.dumps(event).encode("utf-8")
        return body, sign_payload(body)

    return _sign


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, lifecycle, usage_ledger, checkout, synchronizer, retry_scheduler, enterprise):
    """Test client with the database and billing services overridden."""
    from billing_engine.api.deps import (
        get_checkout,
        get_db,
        get_enterprise_contracts,
        get_lifecycle,
        get_retry_scheduler,
        get_synchronizer,
        get_usage_ledger,
    )
    from billing_engine.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_usage_ledger] = lambda: usage_ledger
    app.dependency_overrides[get_checkout] = lambda: checkout
    app.dependency_overrides[get_synchronizer] = lambda: synchronizer
    app.dependency_overrides[get_retry_scheduler] = lambda: retry_scheduler
    app.dependency_overrides[get_enterprise_contracts] = lambda: enterprise

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(
    organization_id: str,
    roles: list[str] | None = None,
    subject: str | None = None,
    email: str = "owner@example.com",
    expires_in: timedelta = timedelta(minutes=15),
) -> str:
    """Create an identity-provider style JWT for testing."""
    now = datetime.now(UTC)
    payload = {
        "sub": subject or str(uuid.uuid4()),
        "org_id": organization_id,
        "email": email,
        "name": "Test Owner",
        "roles": roles or [],
        "exp": int((now + expires_in).timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, os.environ["JWT_SECRET"], algorithm=os.environ["JWT_ALGORITHM"])


@pytest.fixture()
def auth_headers(organization_id):
    return {"Authorization": f"Bearer {_create_access_token(str(organization_id))}"}


@pytest.fixture()
def admin_headers():
    token = _create_access_token(str(uuid.uuid4()), roles=["admin"])
    return {"Authorization": f"Bearer {token}"}
