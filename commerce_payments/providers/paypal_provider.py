import json
import threading
import time
from decimal import Decimal
from typing import Optional

import requests
import structlog

from commerce_payments.enums import PaymentStatus, ProviderKind
from commerce_payments.errors import ProviderError
from commerce_payments.providers.base import PaymentProvider, header, is_raw_body
from commerce_payments.schemas import (
    CaptureResult,
    PaymentInitInput,
    PaymentInitResult,
    WebhookMetadata,
    WebhookResult,
)

log = structlog.get_logger(__name__)

LIVE_URL = "https://api-m.paypal.com"
SANDBOX_URL = "https://api-m.sandbox.paypal.com"

SIGNATURE_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

EVENT_STATUSES = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.PAID,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": PaymentStatus.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": PaymentStatus.REFUNDED,
    "CHECKOUT.ORDER.VOIDED": PaymentStatus.CANCELLED,
    "CHECKOUT.ORDER.CANCELLED": PaymentStatus.CANCELLED,
    # Approved orders still have to be captured
    "CHECKOUT.ORDER.APPROVED": PaymentStatus.PENDING,
    "PAYMENT.CAPTURE.PENDING": PaymentStatus.PENDING,
}

CAPTURE_STATUSES = {
    "COMPLETED": PaymentStatus.PAID,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.REFUNDED,
}


def _first(items: Optional[list]) -> dict:
    return items[0] if items else {}


class PayPalProvider(PaymentProvider):
    """PayPal Orders v2: create order, buyer approves, we capture."""

    ignored_event_prefixes = ("CUSTOMER.", "IDENTITY.", "VAULT.", "MERCHANT.", "CATALOG.", "INVOICING.")
    ignored_event_types = frozenset({"CHECKOUT.ORDER.SAVED", "PAYMENT.AUTHORIZATION.CREATED"})

    def __init__(self, client_id: str, client_secret: str, mode: str, webhook_id: Optional[str],
                 server_url: str, brand_name: str, timeout: float = 20):
        super().__init__(ProviderKind.PAYPAL)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.server_url = server_url
        self.brand_name = brand_name
        self.timeout = timeout
        self.base_url = LIVE_URL if mode == "live" else SANDBOX_URL
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # --- HTTP plumbing ---

    def _access_token(self) -> str:
        # Threadpool webhooks share this provider; one refresh at a time
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                response = requests.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
                response.raise_for_status()
            except requests.RequestException as exc:
                log.error("paypal_token_failed", error=str(exc))
                raise ProviderError(f"Failed to authenticate with PayPal: {exc}") from exc

            body = response.json()
            self._token = body["access_token"]
            self._token_expires_at = time.monotonic() + int(body.get("expires_in", 300)) - 60
            return self._token

    def _call(self, method: str, path: str, json_body: Optional[dict] = None,
              request_id: Optional[str] = None) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        try:
            return requests.request(method, f"{self.base_url}{path}", json=json_body,
                                    headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("paypal_request_failed", path=path, error=str(exc))
            raise ProviderError(f"PayPal request failed: {exc}") from exc

    @staticmethod
    def _issue(response: requests.Response) -> Optional[str]:
        try:
            return _first(response.json().get("details")).get("issue")
        except ValueError:
            return None

    # --- session lifecycle ---

    def initialize_payment(self, payment: PaymentInitInput) -> PaymentInitResult:
        order_request = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": payment.order_id or payment.subscription_id or payment.payment_id,
                "custom_id": payment.payment_id,
                "description": payment.description[:127],
                "amount": {
                    "currency_code": payment.currency,
                    "value": f"{Decimal(payment.amount):.2f}",
                },
            }],
            "application_context": {
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": f"{self.server_url}/payment/redirect/success",
                "cancel_url": f"{self.server_url}/payment/redirect/cancel",
            },
        }
        response = self._call("POST", "/v2/checkout/orders", order_request,
                              request_id=payment.payment_id)
        if response.status_code >= 300:
            log.error("paypal_order_create_failed", status_code=response.status_code,
                      payment_id=payment.payment_id)
            raise ProviderError(f"Failed to create PayPal order: HTTP {response.status_code}")

        order = response.json()
        approval_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return PaymentInitResult(provider_ref=order["id"], approval_url=approval_url)

    def _order_result(self, order: dict) -> CaptureResult:
        capture = _first((_first(order.get("purchase_units")).get("payments") or {}).get("captures"))
        if order.get("status") == "VOIDED":
            return CaptureResult(status=PaymentStatus.CANCELLED)
        if order.get("status") == "COMPLETED":
            return CaptureResult(
                status=CAPTURE_STATUSES.get(capture.get("status", "COMPLETED"), PaymentStatus.PENDING),
                transaction_id=capture.get("id"),
            )
        return CaptureResult(status=PaymentStatus.PENDING, transaction_id=capture.get("id"))

    def capture_payment(self, provider_ref: str) -> CaptureResult:
        response = self._call("POST", f"/v2/checkout/orders/{provider_ref}/capture", {},
                              request_id=f"capture-{provider_ref}")
        if response.status_code < 300:
            return self._order_result(response.json())

        issue = self._issue(response)
        if issue == "ORDER_ALREADY_CAPTURED":
            return self.verify_payment_status(provider_ref)
        if issue == "ORDER_NOT_APPROVED":
            return CaptureResult(status=PaymentStatus.PENDING)
        if issue in ("INSTRUMENT_DECLINED", "TRANSACTION_REFUSED"):
            return CaptureResult(status=PaymentStatus.FAILED)

        log.error("paypal_capture_failed", provider_ref=provider_ref,
                  status_code=response.status_code, issue=issue)
        raise ProviderError(f"Failed to capture PayPal order {provider_ref}: HTTP {response.status_code}")

    def verify_payment_status(self, provider_ref: str) -> CaptureResult:
        response = self._call("GET", f"/v2/checkout/orders/{provider_ref}")
        if response.status_code >= 300:
            raise ProviderError(f"Failed to fetch PayPal order {provider_ref}: HTTP {response.status_code}")
        return self._order_result(response.json())

    # --- webhooks ---

    def verify_webhook(self, headers: dict[str, str], raw_body) -> bool:
        if not self.webhook_id or not is_raw_body(raw_body):
            return False
        values = {name: header(headers, name) for name in SIGNATURE_HEADERS}
        if not all(values.values()):
            return False
        try:
            event = json.loads(raw_body)
        except ValueError:
            return False

        verification = {
            "auth_algo": values["paypal-auth-algo"],
            "cert_url": values["paypal-cert-url"],
            "transmission_id": values["paypal-transmission-id"],
            "transmission_sig": values["paypal-transmission-sig"],
            "transmission_time": values["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        try:
            response = self._call("POST", "/v1/notifications/verify-webhook-signature", verification)
        except ProviderError:
            return False
        if response.status_code >= 300:
            log.warning("paypal_webhook_verification_rejected", status_code=response.status_code)
            return False
        return response.json().get("verification_status") == "SUCCESS"

    def parse_webhook(self, body: dict) -> WebhookResult:
        event_type = body.get("event_type", "")
        resource = body.get("resource") or {}
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        provider_ref = related.get("order_id") or resource.get("id") or ""

        if event_type not in EVENT_STATUSES:
            return WebhookResult(provider_ref=provider_ref, status=PaymentStatus.PENDING,
                                 event_type=event_type, metadata=WebhookMetadata(unhandled_event=True))

        unit = _first(resource.get("purchase_units"))
        amount = resource.get("amount") or unit.get("amount") or {}
        metadata = WebhookMetadata(
            payment_id=resource.get("custom_id") or unit.get("custom_id"),
            order_id=unit.get("reference_id"),
            transaction_id=resource.get("id") if event_type.startswith("PAYMENT.") else None,
            amount=Decimal(amount["value"]) if amount.get("value") else None,
            currency=amount.get("currency_code"),
        )
        return WebhookResult(provider_ref=provider_ref, status=EVENT_STATUSES[event_type],
                             event_type=event_type, metadata=metadata)
