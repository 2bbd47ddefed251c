import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from commerce_payments.auth import CurrentUser, verify_token
from commerce_payments.database import Base, get_db
from commerce_payments.enums import (
    OrderStatus,
    PaymentStatus,
    ProviderKind,
)
from commerce_payments.errors import ProviderError
from commerce_payments.main import app as fastapi_app
from commerce_payments.models import (
    CartItem,
    Order,
    OrderItem,
    Payment,
    Setting,
    StoreItem,
    Subscription,
    SubscriptionPlan,
    generate_id,
    utcnow,
)
from commerce_payments.notifications import PaymentNotifier
from commerce_payments.providers.base import PaymentProvider, is_raw_body
from commerce_payments.reconciliation import ReconciliationEngine
from commerce_payments.routes import get_notifier, get_provider
from commerce_payments.schemas import (
    CaptureResult,
    PaymentInitResult,
    StoreCheckoutMetadata,
    SubscriptionMetadata,
    WebhookMetadata,
    WebhookResult,
    dump_payment_metadata,
)

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

USER_ID = "user-1"


class FakeProvider(PaymentProvider):
    """In-memory processor: sessions are numbered, webhooks are plain dicts."""

    ignored_event_types = frozenset({"customer.created"})

    def __init__(self):
        super().__init__(ProviderKind.STRIPE)
        self.initialized = []
        self.captured = []
        self.capture_status = PaymentStatus.PAID
        self.verify_status = PaymentStatus.PAID
        self.valid_signature = True
        self.fail_initialize = False
        self.intent_metadata = {}

    def initialize_payment(self, payment):
        if self.fail_initialize:
            raise ProviderError("Processor unavailable")
        self.initialized.append(payment)
        ref = f"cs_test_{len(self.initialized)}"
        return PaymentInitResult(provider_ref=ref, approval_url=f"https://pay.example/{ref}")

    def capture_payment(self, provider_ref):
        self.captured.append(provider_ref)
        return CaptureResult(status=self.capture_status, transaction_id=f"txn_{provider_ref}")

    def verify_payment_status(self, provider_ref):
        return CaptureResult(status=self.verify_status, transaction_id=f"txn_{provider_ref}")

    def verify_webhook(self, headers, raw_body):
        return self.valid_signature and is_raw_body(raw_body)

    def parse_webhook(self, body):
        return WebhookResult(
            provider_ref=body.get("ref", ""),
            status=PaymentStatus(body.get("status", "PENDING")),
            event_type=body.get("type", "test.event"),
            metadata=WebhookMetadata(**body.get("metadata", {})),
        )

    def fetch_payment_intent_metadata(self, payment_intent_id):
        return self.intent_metadata


class RecordingNotifier(PaymentNotifier):
    def __init__(self):
        self.events = []
        self.emails = []

    def notify(self, event):
        self.events.append(event)

    def email_on_payment_status(self, user_id, payment_id, status, reason):
        self.emails.append((user_id, payment_id, status))

    def named(self, name):
        return [e for e in self.events if e.name == name]


class Seeder:
    """Writes fixture rows through short-lived sessions."""

    def item(self, product_id="p1", name="Widget", price="10.00", stock=5, **fields):
        with TestingSessionLocal.begin() as db:
            db.add(StoreItem(product_id=product_id, name=name, price=Decimal(price), stock=stock, **fields))
        return product_id

    def cart(self, product_id, quantity=1, user_id=USER_ID):
        with TestingSessionLocal.begin() as db:
            db.add(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))

    def setting(self, key, value):
        with TestingSessionLocal.begin() as db:
            db.merge(Setting(key=key, value=value))

    def flat_shipping(self, price="3.50"):
        self.setting("SHIPPING_RATES", {
            "services": {
                "STANDARD": {
                    "label": "Standard",
                    "serviceCode": "STD",
                    "bands": [{"maxWeight": 30000, "price": price}],
                },
            },
            "defaultService": "STANDARD",
        })

    def plan(self, plan_id="plan-1", name="Monthly", price="9.99", duration=30, is_active=True):
        with TestingSessionLocal.begin() as db:
            db.add(SubscriptionPlan(id=plan_id, name=name, price=Decimal(price),
                                    duration=duration, is_active=is_active))
        return plan_id

    def store_payment(self, items, provider_ref="cs_test_1", user_id=USER_ID,
                      status=PaymentStatus.PENDING, is_pre_order=False):
        """``items`` is a list of ``(product_id, quantity, unit_price)``."""
        payment_id, order_id = generate_id(), generate_id()
        total = sum((Decimal(price) * qty for _, qty, price in items), Decimal("0"))
        with TestingSessionLocal.begin() as db:
            db.add(Payment(
                id=payment_id, provider=ProviderKind.STRIPE, provider_ref=provider_ref,
                status=status, currency="GBP", amount=total,
                payment_metadata=dump_payment_metadata(StoreCheckoutMetadata()),
            ))
            db.flush()
            db.add(Order(id=order_id, user_id=user_id, status=OrderStatus.PENDING,
                         total_amount=total, payment_id=payment_id, is_pre_order=is_pre_order,
                         status_history=[]))
            db.flush()
            for position, (product_id, qty, price) in enumerate(items):
                db.add(OrderItem(order_id=order_id, position=position, product_id=product_id,
                                 quantity=qty, price=Decimal(price)))
        return payment_id, order_id

    def subscription_payment(self, plan_id="plan-1", provider_ref="cs_sub_1", user_id=USER_ID,
                             status=PaymentStatus.PENDING, provider_subscription_id=None,
                             subscription_id="sub-1", days=30):
        payment_id = generate_id()
        start = utcnow()
        with TestingSessionLocal.begin() as db:
            db.add(Payment(
                id=payment_id, provider=ProviderKind.STRIPE, provider_ref=provider_ref,
                status=status, currency="GBP", amount=Decimal("9.99"),
                payment_metadata=dump_payment_metadata(
                    SubscriptionMetadata(plan_id=plan_id, subscription_id=subscription_id)
                ),
            ))
            db.flush()
            db.add(Subscription(
                id=subscription_id, user_id=user_id, plan_id=plan_id, status=status,
                start_date=start, end_date=start + timedelta(days=days), payment_id=payment_id,
                provider_subscription_id=provider_subscription_id, billing_cycle=1,
            ))
        return payment_id


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def seed():
    return Seeder()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reconciler(db, provider, notifier):
    return ReconciliationEngine(db, provider, notifier)


@pytest.fixture
def current_user():
    return CurrentUser(id=USER_ID)


@pytest.fixture
def client(provider, notifier, current_user):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_provider] = lambda: provider
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[verify_token] = lambda: current_user
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
