"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Generator, Optional
from unittest.mock import Mock, patch

import httpx
import pytest
import stripe as real_stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Keep the app's own engine and background loops away from real infrastructure
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from subsync.core.config import Settings
from subsync.db.session import get_db
from subsync.main import app
from subsync.models import Base
from subsync.models.subscription import Subscription
from subsync.models.user import User
from subsync.services.container import Services, build_services
from subsync.services.gateways.registry import build_gateway_registry
from subsync.services.lifecycle_service import SubscriptionLifecycle
from subsync.services.billing_service import BillingOrchestrator
from subsync.services.user_service import create_user, get_or_create_free_subscription


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
MERCADOPAGO_WEBHOOK_SECRET = "mp_test_secret"
KIWIFY_WEBHOOK_TOKEN = "kiwify_test_token"
KIWIFY_PRO_PRODUCT_ID = "prod_kiwify_pro"
ADMIN_API_TOKEN = "admin_test_token"

HTTPX_REQUEST = "subsync.services.gateways.http.httpx.request"


def make_test_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL=TEST_DATABASE_URL,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET,
        STRIPE_PRICE_PRO="price_pro_test",
        MERCADOPAGO_ACCESS_TOKEN="TEST-mp-token",
        MERCADOPAGO_WEBHOOK_SECRET=MERCADOPAGO_WEBHOOK_SECRET,
        KIWIFY_API_TOKEN="kiwify_api_token",
        KIWIFY_ACCOUNT_ID="kiwify_account",
        KIWIFY_WEBHOOK_TOKEN=KIWIFY_WEBHOOK_TOKEN,
        KIWIFY_PRO_PRODUCT_ID=KIWIFY_PRO_PRODUCT_ID,
        ADMIN_API_TOKEN=ADMIN_API_TOKEN,
        SCHEDULER_ENABLED=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return make_test_settings()


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests to prevent real API calls"""
    with patch('subsync.services.gateways.stripe_gateway.stripe') as mock_stripe_module:
        # Real exception classes so the adapter's except clauses still match
        mock_stripe_module.StripeError = real_stripe.StripeError
        mock_stripe_module.InvalidRequestError = real_stripe.InvalidRequestError
        mock_stripe_module.SignatureVerificationError = real_stripe.SignatureVerificationError

        # Mock Customer operations
        mock_customer = Mock(id="cus_test123", email="buyer@example.com")
        mock_stripe_module.Customer.search = Mock(return_value=Mock(data=[]))
        mock_stripe_module.Customer.create = Mock(return_value=mock_customer)

        # Mock Checkout operations
        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))

        # Mock Billing Portal operations
        mock_stripe_module.billing_portal.Session.create = Mock(return_value=Mock(
            url="https://billing.stripe.com/test"
        ))

        # Signature check passes unless a test sets a side_effect
        mock_stripe_module.Webhook.construct_event = Mock(return_value={})

        # Mock Subscription operations
        mock_stripe_module.Subscription.retrieve = Mock(return_value=stripe_subscription())
        mock_stripe_module.Subscription.modify = Mock(return_value=stripe_subscription(cancel_at_period_end=True))

        yield mock_stripe_module


@pytest.fixture(scope="function")
def gateways(test_settings):
    return build_gateway_registry(test_settings)


@pytest.fixture(scope="function")
def lifecycle() -> SubscriptionLifecycle:
    return SubscriptionLifecycle(grace_period_days=3, renewal_window_hours=24, payment_retention_days=365)


@pytest.fixture(scope="function")
def orchestrator(gateways, lifecycle, test_settings) -> BillingOrchestrator:
    return BillingOrchestrator(gateways, lifecycle, test_settings)


@pytest.fixture(scope="function")
def services(db_session, test_settings) -> Services:
    """Full service graph wired to the test database"""
    return build_services(test_settings, session_factory=TestSessionLocal)


@pytest.fixture(scope="function")
def client(db_session: Session, services: Services) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and test service graph"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services

    try:
        with patch('subsync.api.deps.settings', services.billing.config):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()
        app.state.services = None


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Registered user on the free plan"""
    user = create_user(email="buyer@example.com", name="Test Buyer", db=db_session)
    get_or_create_free_subscription(user.id, db_session)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def pro_subscription(db_session: Session, test_user: User):
    """Factory: turn test_user's subscription into an active paid one on a gateway"""
    def _make(gateway: str = "stripe", period_end=None, period_start=None, status: str = "active", **ids) -> Subscription:
        subscription = db_session.query(Subscription).filter(Subscription.user_id == test_user.id).first()
        subscription.plan_id = "pro"
        subscription.status = status
        subscription.gateway = gateway
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        for key, value in ids.items():
            setattr(subscription, key, value)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make


# ============================================================================
# GATEWAY PAYLOAD HELPERS
# ============================================================================

def stripe_subscription(
    sub_id: str = "sub_test123",
    customer: str = "cus_test123",
    status: str = "active",
    price_id: str = "price_pro_test",
    period_start: int = 1735689600,  # 2025-01-01
    period_end: int = 1738368000,  # 2025-02-01
    cancel_at_period_end: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Stripe subscription object as returned by Subscription.retrieve"""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata or {},
        "items": {"data": [{"id": "si_test123", "price": {"id": price_id}}]},
    }


def stripe_event_body(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test123") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def mercado_pago_webhook(
    event_type: str,
    data_id: str,
    action: str = "updated",
    event_id: Optional[str] = None,
    request_id: str = "req-123",
    ts: str = "1735689600",
    secret: str = MERCADOPAGO_WEBHOOK_SECRET,
):
    """Body plus correctly signed x-signature headers"""
    body = {"type": event_type, "action": action, "data": {"id": data_id}}
    if event_id:
        body["id"] = event_id
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    headers = {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}
    return json.dumps(body).encode(), headers


def kiwify_order(
    event_type: str = "order_approved",
    order_id: Optional[str] = "ord_123",
    email: str = "buyer@example.com",
    subscription_id: Optional[str] = "kw_sub_123",
    charge_amount: int = 19700,
    product_id: str = KIWIFY_PRO_PRODUCT_ID,
    approved_date: Optional[str] = "2025-01-01 12:00",
    next_payment: Optional[str] = None,
    external_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Kiwify order webhook body"""
    order = {
        "order_status": "paid",
        "webhook_event_type": event_type,
        "payment_method": "credit_card",
        "Product": {"product_id": product_id, "product_name": "Pro"},
        "Customer": {"email": email, "full_name": "Test Buyer"},
        "Commissions": {"charge_amount": charge_amount, "currency": "BRL"},
    }
    if order_id:
        order["order_id"] = order_id
    if approved_date:
        order["approved_date"] = approved_date
    if subscription_id:
        order["subscription_id"] = subscription_id
        order["Subscription"] = {"id": subscription_id, "status": "active"}
        if next_payment:
            order["Subscription"]["next_payment"] = next_payment
    if external_id:
        order["external_id"] = external_id
    return order


def kiwify_body(order: Dict[str, Any], token: str = KIWIFY_WEBHOOK_TOKEN) -> bytes:
    return json.dumps({**order, "token": token}).encode()


def kiwify_signature(raw_body: bytes, secret: str = KIWIFY_WEBHOOK_TOKEN) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha1).hexdigest()


def json_response(payload: Dict[str, Any], status_code: int = 200, method: str = "GET", url: str = "https://api.test") -> httpx.Response:
    return httpx.Response(status_code, json=payload, request=httpx.Request(method, url))
