from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe
import structlog

from commerce_payments.enums import MetadataType, PaymentStatus, ProviderKind
from commerce_payments.errors import ProviderError
from commerce_payments.providers.base import PaymentProvider, header, is_raw_body
from commerce_payments.schemas import (
    CaptureResult,
    PaymentInitInput,
    PaymentInitResult,
    WebhookMetadata,
    WebhookResult,
    correlation_from_map,
)

log = structlog.get_logger(__name__)

RENEWAL_BILLING_REASON = "subscription_cycle"


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def _id(value) -> Optional[str]:
    # Expandable fields come back either as an id or as the expanded object
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeProvider(PaymentProvider):
    """Stripe Checkout Sessions in ``payment`` or ``subscription`` mode."""

    ignored_event_prefixes = (
        "customer.",
        "payment_method.",
        "setup_intent.",
        "billing_portal.",
        "product.",
        "price.",
        "plan.",
    )
    ignored_event_types = frozenset({
        "payment_intent.created",
        "payment_intent.requires_action",
        "charge.succeeded",
        "charge.updated",
        "invoice.created",
        "invoice.finalized",
        "invoice.updated",
        "invoice.upcoming",
    })

    def __init__(self, secret_key: str, webhook_secret: Optional[str], server_url: str,
                 timeout: float = 20):
        super().__init__(ProviderKind.STRIPE)
        self.webhook_secret = webhook_secret
        self.server_url = server_url
        stripe.api_key = secret_key
        stripe.max_network_retries = 2
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    # --- session lifecycle ---

    def _line_items(self, payment: PaymentInitInput) -> list[dict]:
        currency = payment.currency.lower()
        recurring = (
            {"recurring": {"interval": "day", "interval_count": payment.billing_interval_days}}
            if payment.type == MetadataType.SUBSCRIPTION and payment.billing_interval_days
            else {}
        )

        def line(name: str, quantity: int, unit_price: Decimal) -> dict:
            return {
                "quantity": quantity,
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": name},
                    "unit_amount": to_minor_units(unit_price),
                    **recurring,
                },
            }

        items = [line(i.name, i.quantity, i.unit_price) for i in payment.items]
        if payment.shipping_cost:
            items.append(line(payment.shipping_description or "Shipping", 1, payment.shipping_cost))

        itemised = sum(i["quantity"] * i["price_data"]["unit_amount"] for i in items)
        if not items or itemised != to_minor_units(payment.amount):
            # Per-unit rounding of discounted lines must not change the charge
            return [line(payment.description, 1, payment.amount)]
        return items

    def initialize_payment(self, payment: PaymentInitInput) -> PaymentInitResult:
        is_subscription = payment.type == MetadataType.SUBSCRIPTION
        metadata = payment.correlation()
        params = {
            "mode": "subscription" if is_subscription else "payment",
            "line_items": self._line_items(payment),
            "success_url": f"{self.server_url}/payment/redirect/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.server_url}/payment/redirect/cancel?session_id={{CHECKOUT_SESSION_ID}}",
            "client_reference_id": payment.order_id or payment.subscription_id or payment.payment_id,
            "metadata": metadata,
        }
        # Child objects do not inherit session metadata
        if is_subscription:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(
                idempotency_key=payment.payment_id, **params
            )
        except stripe.StripeError as exc:
            log.error("stripe_session_create_failed", payment_id=payment.payment_id, error=str(exc))
            raise ProviderError(f"Failed to initialize Stripe payment: {exc}") from exc

        return PaymentInitResult(provider_ref=session["id"], approval_url=session.get("url"))

    def _session_status(self, provider_ref: str) -> CaptureResult:
        try:
            session = stripe.checkout.Session.retrieve(
                provider_ref, expand=["payment_intent", "subscription"]
            )
        except stripe.StripeError as exc:
            log.error("stripe_session_retrieve_failed", provider_ref=provider_ref, error=str(exc))
            raise ProviderError(f"Failed to retrieve Stripe session: {exc}") from exc

        if session.get("status") == "expired":
            return CaptureResult(status=PaymentStatus.CANCELLED)

        if session.get("mode") == "subscription":
            subscription = session.get("subscription")
            sub_status = subscription.get("status") if hasattr(subscription, "get") else None
            return CaptureResult(
                status=PaymentStatus.PAID if sub_status in ("active", "trialing") else PaymentStatus.PENDING,
                transaction_id=_id(subscription),
                provider_subscription_id=_id(subscription),
            )

        paid = session.get("payment_status") in ("paid", "no_payment_required")
        return CaptureResult(
            status=PaymentStatus.PAID if paid else PaymentStatus.PENDING,
            transaction_id=_id(session.get("payment_intent")),
        )

    def capture_payment(self, provider_ref: str) -> CaptureResult:
        # Checkout captures automatically; capture reads the session outcome
        return self._session_status(provider_ref)

    def verify_payment_status(self, provider_ref: str) -> CaptureResult:
        return self._session_status(provider_ref)

    def fetch_payment_intent_metadata(self, payment_intent_id: str) -> Optional[dict]:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            raise ProviderError(f"Failed to retrieve PaymentIntent {payment_intent_id}: {exc}") from exc
        return dict(intent.get("metadata") or {})

    # --- webhooks ---

    def verify_webhook(self, headers: dict[str, str], raw_body) -> bool:
        if not self.webhook_secret or not is_raw_body(raw_body):
            return False
        signature = header(headers, "stripe-signature")
        if not signature:
            return False
        try:
            stripe.Webhook.construct_event(bytes(raw_body), signature, self.webhook_secret)
        except ValueError:
            log.warning("stripe_webhook_invalid_payload")
            return False
        except stripe.SignatureVerificationError:
            log.warning("stripe_webhook_invalid_signature")
            return False
        return True

    def parse_webhook(self, body: dict) -> WebhookResult:
        event_type = body.get("type", "")
        obj = (body.get("data") or {}).get("object") or {}

        if event_type.startswith("checkout.session."):
            return self._parse_session(event_type, obj)
        if event_type.startswith("payment_intent."):
            return self._parse_payment_intent(event_type, obj)
        if event_type == "charge.refunded":
            return self._parse_charge_refund(event_type, obj)
        if event_type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
            return self._parse_invoice(event_type, obj)
        return self._unhandled(event_type, obj)

    def _unhandled(self, event_type: str, obj: dict) -> WebhookResult:
        return WebhookResult(
            provider_ref=obj.get("id") or "",
            status=PaymentStatus.PENDING,
            event_type=event_type,
            metadata=WebhookMetadata(unhandled_event=True),
        )

    def _parse_session(self, event_type: str, obj: dict) -> WebhookResult:
        if event_type == "checkout.session.completed":
            if obj.get("mode") == "subscription":
                status = PaymentStatus.PAID
            elif obj.get("payment_status") in ("paid", "no_payment_required"):
                status = PaymentStatus.PAID
            else:
                # Delayed payment methods settle via async_payment_* events
                status = PaymentStatus.PENDING
        elif event_type == "checkout.session.async_payment_succeeded":
            status = PaymentStatus.PAID
        elif event_type == "checkout.session.async_payment_failed":
            status = PaymentStatus.FAILED
        elif event_type == "checkout.session.expired":
            status = PaymentStatus.CANCELLED
        else:
            return self._unhandled(event_type, obj)

        metadata = WebhookMetadata(
            **correlation_from_map(obj.get("metadata")),
            transaction_id=_id(obj.get("payment_intent")),
            provider_subscription_id=_id(obj.get("subscription")),
        )
        return WebhookResult(provider_ref=obj.get("id") or "", status=status,
                             event_type=event_type, metadata=metadata)

    def _parse_payment_intent(self, event_type: str, obj: dict) -> WebhookResult:
        statuses = {
            "payment_intent.succeeded": PaymentStatus.PAID,
            "payment_intent.payment_failed": PaymentStatus.FAILED,
            "payment_intent.canceled": PaymentStatus.CANCELLED,
        }
        if event_type not in statuses:
            return self._unhandled(event_type, obj)

        metadata = WebhookMetadata(
            **correlation_from_map(obj.get("metadata")),
            payment_intent_id=obj.get("id"),
            transaction_id=obj.get("id"),
            amount=Decimal(obj["amount_received"]) / 100 if obj.get("amount_received") else None,
            currency=(obj.get("currency") or "").upper() or None,
        )
        return WebhookResult(provider_ref=obj.get("id") or "", status=statuses[event_type],
                             event_type=event_type, metadata=metadata)

    def _parse_charge_refund(self, event_type: str, obj: dict) -> WebhookResult:
        if not obj.get("refunded"):
            # Partial refunds leave the payment PAID
            return self._unhandled(event_type, obj)

        payment_intent_id = _id(obj.get("payment_intent"))
        correlation = correlation_from_map(obj.get("metadata"))
        metadata = WebhookMetadata(
            **correlation,
            payment_intent_id=payment_intent_id,
            transaction_id=obj.get("id"),
            receipt_url=obj.get("receipt_url"),
            needs_intent_metadata="payment_id" not in correlation and payment_intent_id is not None,
        )
        return WebhookResult(provider_ref=payment_intent_id or obj.get("id") or "",
                             status=PaymentStatus.REFUNDED, event_type=event_type, metadata=metadata)

    def _parse_invoice(self, event_type: str, obj: dict) -> WebhookResult:
        if obj.get("billing_reason") != RENEWAL_BILLING_REASON:
            # The first invoice is reconciled through checkout.session.completed
            return self._unhandled(event_type, obj)

        details = obj.get("subscription_details") or (obj.get("parent") or {}).get("subscription_details") or {}
        subscription_id = _id(obj.get("subscription")) or _id(details.get("subscription"))
        lines = (obj.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") if lines else None) or {}

        metadata = WebhookMetadata(
            user_id=correlation_from_map(details.get("metadata")).get("user_id"),
            type=MetadataType.SUBSCRIPTION,
            provider_subscription_id=subscription_id,
            invoice_id=obj.get("id"),
            billing_reason=obj.get("billing_reason"),
            period_start=_timestamp(period.get("start") or obj.get("period_start")),
            period_end=_timestamp(period.get("end") or obj.get("period_end")),
            amount=Decimal(obj.get("amount_paid") or obj.get("amount_due") or 0) / 100,
            currency=(obj.get("currency") or "").upper() or None,
            transaction_id=_id(obj.get("payment_intent")),
            receipt_url=obj.get("hosted_invoice_url"),
            renewal=True,
        )
        status = PaymentStatus.FAILED if event_type == "invoice.payment_failed" else PaymentStatus.PAID
        return WebhookResult(provider_ref=obj.get("id") or "", status=status,
                             event_type=event_type, metadata=metadata)
