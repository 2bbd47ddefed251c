from datetime import timedelta
from decimal import Decimal

import pytest

from commerce_payments.checkout import CheckoutOrchestrator
from commerce_payments.config import Settings
from commerce_payments.enums import MetadataType, OrderStatus, PaymentStatus, PreOrderStatus
from commerce_payments.errors import CartValidationError, NotFoundError, ProviderError, ValidationError
from commerce_payments.models import CartItem, DeliveryAddress, Order, Payment, StoreItem, Subscription, utcnow
from commerce_payments.schemas import CartCheckoutRequest, DeliveryAddressInput
from commerce_payments.shipping import ShippingCalculator

from conftest import USER_ID, TestingSessionLocal

ADDRESS = DeliveryAddressInput(
    recipient_name="Ada Lovelace",
    contact_phone="07700900000",
    address_line1="1 Analytical Row",
    post_town="London",
    postcode="N1 1AA",
)


@pytest.fixture
def checkout(db, provider):
    return CheckoutOrchestrator(db, provider, ShippingCalculator(db), Settings())


def test_checkout_cart_creates_pending_order_and_payment(seed, checkout, provider):
    seed.flat_shipping("3.50")
    seed.item("p1", name="Mug", price="10.00")
    seed.item("p2", name="Tee", price="15.00")
    seed.cart("p1")
    seed.cart("p2")

    result = checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))

    assert result["amount"] == "28.50"
    assert result["approvalUrl"] == "https://pay.example/cs_test_1"

    with TestingSessionLocal() as check:
        payment = check.get(Payment, result["paymentId"])
        order = check.get(Order, result["orderId"])
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal("28.50")
        assert payment.provider_ref == "cs_test_1"
        assert order.total_amount == Decimal("28.50")
        assert order.shipping_cost == Decimal("3.50")
        assert order.status == OrderStatus.PENDING
        assert order.payment_id == payment.id
        assert [(i.product_id, i.price) for i in order.items] == [
            ("p1", Decimal("10.00")), ("p2", Decimal("15.00")),
        ]
        assert check.get(DeliveryAddress, order.delivery_address_id).postcode == "N1 1AA"

    sent = provider.initialized[0]
    assert sent.type == MetadataType.STORE_CHECKOUT
    assert sent.correlation()["orderId"] == result["orderId"]
    assert sent.correlation()["paymentId"] == result["paymentId"]


def test_order_items_keep_cart_order(seed, checkout):
    seed.flat_shipping()
    products = [f"p{n}" for n in range(8)]
    for product_id in products:
        seed.item(product_id)
        seed.cart(product_id)

    result = checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))

    with TestingSessionLocal() as check:
        order = check.get(Order, result["orderId"])
        assert [i.product_id for i in order.items] == products
        assert [i.position for i in order.items] == list(range(8))


def test_checkout_cart_does_not_touch_stock_or_cart(seed, checkout):
    seed.flat_shipping()
    seed.item("p1", stock=3)
    seed.cart("p1", quantity=2)

    checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))

    with TestingSessionLocal() as check:
        assert check.get(StoreItem, "p1").stock == 3
        assert check.query(CartItem).count() == 1


def test_empty_cart_is_rejected(seed, checkout, provider):
    with pytest.raises(ValidationError, match="Cart is empty"):
        checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))
    assert provider.initialized == []


def test_unavailable_items_are_reported(seed, checkout):
    seed.flat_shipping()
    seed.item("p1", name="Mug", is_published=False)
    seed.cart("p1")

    with pytest.raises(CartValidationError) as exc_info:
        checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))
    assert exc_info.value.reasons == ["Product Mug is no longer available"]


def test_provider_failure_leaves_no_rows(seed, checkout, provider):
    seed.flat_shipping()
    seed.item("p1")
    seed.cart("p1")
    provider.fail_initialize = True

    with pytest.raises(ProviderError):
        checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))

    with TestingSessionLocal() as check:
        assert check.query(Payment).count() == 0
        assert check.query(Order).count() == 0
        assert check.query(DeliveryAddress).count() == 0


def test_unknown_delivery_address_is_not_found(seed, checkout):
    seed.flat_shipping()
    seed.item("p1")
    seed.cart("p1")

    with pytest.raises(NotFoundError):
        checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address_id="missing"))


def test_new_default_address_replaces_previous_default(seed, checkout):
    seed.flat_shipping()
    seed.item("p1")
    seed.cart("p1")
    with TestingSessionLocal.begin() as s:
        s.add(DeliveryAddress(id="old", user_id=USER_ID, recipient_name="A", contact_phone="1",
                              address_line1="x", post_town="y", postcode="z", is_default=True))

    checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS, save_as_default=True))

    with TestingSessionLocal() as check:
        defaults = check.query(DeliveryAddress).filter_by(is_default=True).all()
        assert [a.postcode for a in defaults] == ["N1 1AA"]


def test_pre_order_checkout_marks_order_placed(seed, checkout, provider):
    seed.flat_shipping()
    release = utcnow() + timedelta(days=14)
    seed.item("vinyl", stock=0, pre_order_enabled=True, pre_order_fulfillment_date=release)
    seed.cart("vinyl")

    result = checkout.checkout_cart(USER_ID, CartCheckoutRequest(delivery_address=ADDRESS))

    with TestingSessionLocal() as check:
        order = check.get(Order, result["orderId"])
        assert order.is_pre_order
        assert order.pre_order_status == PreOrderStatus.PLACED
        assert order.items[0].pre_order_release_date is not None
        assert check.get(Payment, result["paymentId"]).is_pre_order_payment

    assert provider.initialized[0].correlation()["isPreOrder"] == "true"


def test_checkout_subscription(seed, checkout, provider):
    seed.plan("plan-1", name="Monthly", price="9.99", duration=30)

    result = checkout.checkout_subscription(USER_ID, "plan-1")

    assert result["planName"] == "Monthly"
    assert result["amount"] == "9.99"
    with TestingSessionLocal() as check:
        subscription = check.get(Subscription, result["subscriptionId"])
        assert subscription.status == PaymentStatus.PENDING
        assert subscription.billing_cycle == 1
        assert subscription.payment_id == result["paymentId"]
        assert subscription.id == check.get(Payment, result["paymentId"]).provider_ref
        assert (subscription.end_date - subscription.start_date).days == 30
        assert check.get(Payment, result["paymentId"]).payment_metadata["type"] == "subscription"

    assert provider.initialized[0].billing_interval_days == 30


def test_subscription_checkout_rejects_unknown_or_inactive_plan(seed, checkout):
    seed.plan("retired", is_active=False)

    with pytest.raises(NotFoundError):
        checkout.checkout_subscription(USER_ID, "nope")
    with pytest.raises(ValidationError, match="not active"):
        checkout.checkout_subscription(USER_ID, "retired")


def test_subscription_checkout_rejects_active_subscriber(seed, checkout):
    seed.plan("plan-1")
    seed.subscription_payment(status=PaymentStatus.PAID)

    with pytest.raises(ValidationError, match="active subscription"):
        checkout.checkout_subscription(USER_ID, "plan-1")
