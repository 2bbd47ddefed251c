from abc import ABC, abstractmethod
from typing import Optional

from commerce_payments.enums import ProviderKind
from commerce_payments.schemas import (
    CaptureResult,
    PaymentInitInput,
    PaymentInitResult,
    WebhookResult,
)


class PaymentProvider(ABC):
    """Contract every payment processor adapter implements.

    Adapters absorb processor differences (event taxonomy, where correlation
    metadata lives, how capture works) so the reconciliation engine only ever
    sees ``WebhookResult`` and ``CaptureResult`` in the canonical
    PAID / FAILED / PENDING / CANCELLED / REFUNDED vocabulary.
    """

    #: Event types that never affect payment state.
    ignored_event_prefixes: tuple[str, ...] = ()
    ignored_event_types: frozenset[str] = frozenset()

    def __init__(self, kind: ProviderKind):
        self._kind = kind

    def kind(self) -> ProviderKind:
        return self._kind

    @abstractmethod
    def initialize_payment(self, payment: PaymentInitInput) -> PaymentInitResult:
        """Open a hosted checkout/order session."""

    @abstractmethod
    def capture_payment(self, provider_ref: str) -> CaptureResult:
        """Collect funds for an approved session. Safe to call twice."""

    @abstractmethod
    def verify_webhook(self, headers: dict[str, str], raw_body) -> bool:
        """Check the signature over the untouched request body.

        Must return False when the body is missing, already parsed, or the
        signature headers are absent.
        """

    @abstractmethod
    def parse_webhook(self, body: dict) -> WebhookResult:
        """Map a processor event onto the canonical shape. Never raises for
        unknown event types."""

    def fetch_payment_intent_metadata(self, payment_intent_id: str) -> Optional[dict]:
        return None

    def verify_payment_status(self, provider_ref: str) -> CaptureResult:
        raise NotImplementedError(f"{self.kind().value} does not support status polling")

    def is_ignorable_event(self, event_type: str) -> bool:
        if event_type in self.ignored_event_types:
            return True
        return any(event_type.startswith(prefix) for prefix in self.ignored_event_prefixes)


def is_raw_body(raw_body) -> bool:
    return isinstance(raw_body, (bytes, bytearray)) and len(raw_body) > 0


def header(headers: dict[str, str], name: str) -> Optional[str]:
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return value
    return None
