import structlog

from commerce_payments.enums import PaymentStatus
from commerce_payments.errors import NotFoundError, ProviderError
from commerce_payments.models import Payment
from commerce_payments.reconciliation import (
    UNCHANGED,
    ReconciliationEngine,
    ReconciliationOutcome,
)
from commerce_payments.schemas import WebhookMetadata, WebhookResult

log = structlog.get_logger(__name__)

FALLBACK_EVENT = "fallback_verification"


class FallbackVerifier:
    """Polls the provider for a payment whose webhook may have been lost.

    Only PENDING payments are checked, and the provider's answer goes through
    the same transition as a webhook would.
    """

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine

    def verify_payment_status(self, payment_id: str) -> ReconciliationOutcome:
        session = self.engine.session
        with session.begin():
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            status, provider_ref = payment.status, payment.provider_ref

        if status != PaymentStatus.PENDING:
            return ReconciliationOutcome(UNCHANGED, payment_id, status, "Payment is not pending")
        if not provider_ref:
            return ReconciliationOutcome(UNCHANGED, payment_id, status, "Payment has no provider session")

        try:
            result = self.engine.provider.verify_payment_status(provider_ref)
        except NotImplementedError as exc:
            raise ProviderError("Provider does not support status verification", retryable=False) from exc

        log.info("fallback_verification_result", payment_id=payment_id, provider_ref=provider_ref,
                 status=result.status.value)
        if result.status == PaymentStatus.PENDING:
            return ReconciliationOutcome(UNCHANGED, payment_id, status, "Provider still reports payment as pending")

        return self.engine.apply_transition(WebhookResult(
            provider_ref=provider_ref,
            status=result.status,
            event_type=FALLBACK_EVENT,
            metadata=WebhookMetadata(
                payment_id=payment_id,
                transaction_id=result.transaction_id,
                provider_subscription_id=result.provider_subscription_id,
                receipt_url=result.receipt_url,
            ),
        ))
