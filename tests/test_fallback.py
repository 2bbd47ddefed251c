import pytest

from commerce_payments.enums import OrderStatus, PaymentStatus
from commerce_payments.errors import NotFoundError
from commerce_payments.fallback import FallbackVerifier
from commerce_payments.models import Order, Payment, StoreItem
from commerce_payments.schemas import WebhookMetadata, WebhookResult

from conftest import TestingSessionLocal


@pytest.fixture
def verifier(reconciler):
    return FallbackVerifier(reconciler)


@pytest.fixture
def pending_payment(seed):
    seed.item("p1", stock=3)
    return seed.store_payment([("p1", 1, "10.00")])


def test_pending_payment_is_reconciled_from_provider(pending_payment, verifier, notifier):
    payment_id, order_id = pending_payment

    outcome = verifier.verify_payment_status(payment_id)

    assert outcome.processed
    with TestingSessionLocal() as check:
        payment = check.get(Payment, payment_id)
        assert payment.status == PaymentStatus.PAID
        assert payment.payment_metadata["last_webhook_event"] == "fallback_verification"
        assert check.get(Order, order_id).status == OrderStatus.PROCESSING
        assert check.get(StoreItem, "p1").stock == 2
    assert len(notifier.named("order.paymentConfirmed")) == 1


def test_provider_still_pending_changes_nothing(pending_payment, verifier, provider):
    payment_id, _ = pending_payment
    provider.verify_status = PaymentStatus.PENDING

    outcome = verifier.verify_payment_status(payment_id)

    assert outcome.outcome == "unchanged"
    with TestingSessionLocal() as check:
        assert check.get(Payment, payment_id).status == PaymentStatus.PENDING


def test_settled_payment_is_not_polled(seed, verifier, provider, mocker):
    seed.item("p1")
    payment_id, _ = seed.store_payment([("p1", 1, "10.00")], status=PaymentStatus.PAID)
    spy = mocker.spy(provider, "verify_payment_status")

    outcome = verifier.verify_payment_status(payment_id)

    assert outcome.outcome == "unchanged"
    spy.assert_not_called()


def test_fallback_agrees_with_webhook_replay(pending_payment, verifier, reconciler):
    payment_id, _ = pending_payment
    verifier.verify_payment_status(payment_id)

    outcome = reconciler.apply_transition(WebhookResult(
        provider_ref="cs_test_1", status=PaymentStatus.PAID, event_type="payment_intent.succeeded",
        metadata=WebhookMetadata(payment_id=payment_id),
    ))

    assert outcome.outcome == "unchanged"
    with TestingSessionLocal() as check:
        assert check.get(StoreItem, "p1").stock == 2


def test_unknown_payment(verifier):
    with pytest.raises(NotFoundError):
        verifier.verify_payment_status("missing")
