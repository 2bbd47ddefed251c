"""Outbound notification port.

The reconciliation engine only talks to a ``PaymentNotifier``; the composition
root decides what sits behind it (email collaborator, fulfilment queue, or the
logging notifier below).
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional

import structlog

from commerce_payments.enums import PaymentStatus
from commerce_payments.models import utcnow

log = structlog.get_logger(__name__)

# Statuses a customer is told about
NOTIFIABLE_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
})

EVENT_REASONS = {
    "checkout.session.completed": "Checkout completed",
    "checkout.session.async_payment_succeeded": "Delayed payment succeeded",
    "checkout.session.async_payment_failed": "Delayed payment failed",
    "checkout.session.expired": "Checkout session expired",
    "payment_intent.succeeded": "Payment succeeded",
    "payment_intent.payment_failed": "Payment was declined",
    "payment_intent.canceled": "Payment was cancelled",
    "charge.refunded": "Payment refunded",
    "invoice.paid": "Subscription renewed",
    "invoice.payment_succeeded": "Subscription renewed",
    "PAYMENT.CAPTURE.COMPLETED": "Payment captured",
    "PAYMENT.CAPTURE.DENIED": "Payment was denied",
    "PAYMENT.CAPTURE.DECLINED": "Payment was declined",
    "PAYMENT.CAPTURE.REFUNDED": "Payment refunded",
    "CHECKOUT.ORDER.VOIDED": "Order was voided",
    "CHECKOUT.ORDER.CANCELLED": "Order was cancelled",
    "capture": "Payment captured",
    "fallback_verification": "Payment status verified with provider",
}


def reason_for(event_type: str) -> str:
    return EVENT_REASONS.get(event_type) or event_type.replace("_", " ").replace(".", " ").strip().capitalize()


@dataclass
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex, kw_only=True)
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)

    name: ClassVar[str] = "domain.event"


@dataclass
class PaymentStatusChanged(DomainEvent):
    payment_id: str
    user_id: Optional[str]
    previous_status: PaymentStatus
    status: PaymentStatus
    reason: str

    name: ClassVar[str] = "payment.statusChanged"


@dataclass
class OrderPaymentConfirmed(DomainEvent):
    order_id: str
    user_id: str

    name: ClassVar[str] = "order.paymentConfirmed"


class PaymentNotifier(ABC):
    @abstractmethod
    def notify(self, event: DomainEvent) -> None:
        """Publish a domain event to downstream consumers."""

    @abstractmethod
    def email_on_payment_status(self, user_id: Optional[str], payment_id: str,
                                status: PaymentStatus, reason: str) -> None:
        """Ask the email collaborator to tell the customer about a payment."""


class LoggingNotifier(PaymentNotifier):
    def notify(self, event: DomainEvent) -> None:
        log.info("domain_event", event_name=event.name, event_id=event.event_id)

    def email_on_payment_status(self, user_id, payment_id, status, reason) -> None:
        log.info("payment_status_email", user_id=user_id, payment_id=payment_id,
                 status=status.value, reason=reason)
