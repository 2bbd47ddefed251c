"""Webhook ingestion and the payment reconciliation state machine.

Allowed payment transitions::

    PENDING -> PAID | FAILED | CANCELLED
    PAID    -> REFUNDED

Anything else, including a replay of the status a payment already has, is a
no-op. Every transition, with its order, stock, cart and subscription side
effects, commits in a single database transaction; notifications go out only
after that commit.
"""
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commerce_payments.enums import (
    OrderStatus,
    PaymentStatus,
    PreOrderStatus,
)
from commerce_payments.errors import NotFoundError, ValidationError, WebhookVerificationError
from commerce_payments.models import (
    CartItem,
    Order,
    Payment,
    StoreItem,
    Subscription,
    as_utc,
    generate_id,
    utcnow,
)
from commerce_payments.notifications import (
    NOTIFIABLE_STATUSES,
    DomainEvent,
    OrderPaymentConfirmed,
    PaymentNotifier,
    PaymentStatusChanged,
    reason_for,
)
from commerce_payments.providers.base import PaymentProvider
from commerce_payments.schemas import (
    StoreCheckoutMetadata,
    SubscriptionMetadata,
    WebhookMetadata,
    WebhookResult,
    dump_payment_metadata,
    load_payment_metadata,
)

log = structlog.get_logger(__name__)

PROCESSED = "processed"
UNCHANGED = "unchanged"
IGNORED = "ignored"
NOT_FOUND = "not_found"

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
}

REVERTIBLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class ReconciliationOutcome:
    outcome: str
    payment_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    reason: Optional[str] = None

    @property
    def processed(self) -> bool:
        return self.outcome == PROCESSED

    def to_response(self) -> dict:
        body = {"received": True, "outcome": self.outcome}
        if self.payment_id:
            body["paymentId"] = self.payment_id
        if self.status:
            body["status"] = self.status.value
        if self.reason:
            body["reason"] = self.reason
        return body


class ReconciliationEngine:
    def __init__(self, session: Session, provider: PaymentProvider, notifier: PaymentNotifier,
                 default_currency: str = "GBP"):
        self.session = session
        self.provider = provider
        self.notifier = notifier
        self.default_currency = default_currency

    # --- entry points ---

    def handle_webhook(self, headers: dict[str, str], raw_body, parsed_body: Optional[dict] = None) -> ReconciliationOutcome:
        """Verify, canonicalize and apply one inbound processor notification."""
        if not self.provider.verify_webhook(headers, raw_body):
            log.warning("webhook_signature_rejected", provider=self.provider.kind().value)
            raise WebhookVerificationError("Invalid webhook signature")

        body = parsed_body if parsed_body is not None else self._decode(raw_body)
        result = self.provider.parse_webhook(body)
        log.info("webhook_received", event_type=result.event_type, provider_ref=result.provider_ref,
                 status=result.status.value)
        return self.process_event(result)

    def process_event(self, result: WebhookResult) -> ReconciliationOutcome:
        if self.provider.is_ignorable_event(result.event_type):
            log.debug("webhook_event_ignored", event_type=result.event_type)
            return ReconciliationOutcome(IGNORED, reason=f"Event {result.event_type} does not affect payments")

        if result.metadata.unhandled_event:
            log.info("webhook_event_unhandled", event_type=result.event_type)
            return ReconciliationOutcome(IGNORED, reason=f"Unhandled event type {result.event_type}")

        if result.metadata.renewal:
            return self.apply_renewal(result)

        if result.metadata.needs_intent_metadata and result.metadata.payment_intent_id:
            extra = self.provider.fetch_payment_intent_metadata(result.metadata.payment_intent_id)
            result = result.model_copy(update={"metadata": result.metadata.merge_correlation(extra or {})})

        return self.apply_transition(result)

    def capture_payment(self, provider_ref: str) -> dict:
        with self.session.begin():
            payment = self.session.scalar(select(Payment).where(Payment.provider_ref == provider_ref))
            if payment is None:
                raise NotFoundError("Payment not found")
            payment_id = payment.id

        capture = self.provider.capture_payment(provider_ref)
        outcome = self.apply_transition(WebhookResult(
            provider_ref=provider_ref,
            status=capture.status,
            event_type="capture",
            metadata=WebhookMetadata(
                payment_id=payment_id,
                transaction_id=capture.transaction_id,
                provider_subscription_id=capture.provider_subscription_id,
                receipt_url=capture.receipt_url,
            ),
        ))

        with self.session.begin():
            payment = self.session.get(Payment, payment_id, populate_existing=True)
            return {
                "status": payment.status.value,
                "paymentId": payment.id,
                "outcome": outcome.outcome,
                "orderIds": [order.id for order in payment.orders],
                "subscriptionIds": [sub.id for sub in payment.subscriptions],
            }

    # --- the state machine ---

    def apply_transition(self, result: WebhookResult) -> ReconciliationOutcome:
        """Apply a canonical status to the payment it correlates to.

        Shared by webhooks, capture and the fallback verifier.
        """
        with self.session.begin():
            payment_id = self._resolve_payment_id(result)
            if payment_id is None:
                log.info("payment_not_found", provider_ref=result.provider_ref,
                         event_type=result.event_type)
                return ReconciliationOutcome(NOT_FOUND, reason="Payment not found")
            outcome, events = self._transition(payment_id, result)

        self._dispatch(events)
        return outcome

    def _resolve_payment_id(self, result: WebhookResult) -> Optional[str]:
        metadata = result.metadata
        if metadata.payment_id and self.session.get(Payment, metadata.payment_id) is not None:
            return metadata.payment_id
        if metadata.order_id:
            payment_id = self.session.scalar(select(Order.payment_id).where(Order.id == metadata.order_id))
            if payment_id:
                return payment_id
        if result.provider_ref:
            return self.session.scalar(select(Payment.id).where(Payment.provider_ref == result.provider_ref))
        return None

    def _transition(self, payment_id: str, result: WebhookResult) -> tuple[ReconciliationOutcome, list[DomainEvent]]:
        # Re-read under lock; never act on a cached status
        payment = self.session.get(Payment, payment_id, with_for_update=True, populate_existing=True)
        current, target = payment.status, result.status

        if current == target:
            log.info("payment_status_unchanged", payment_id=payment.id, status=current.value,
                     event_type=result.event_type)
            return ReconciliationOutcome(UNCHANGED, payment.id, current, "Status unchanged"), []

        if not can_transition(current, target):
            log.info("payment_transition_skipped", payment_id=payment.id, current=current.value,
                     target=target.value, event_type=result.event_type)
            return ReconciliationOutcome(
                UNCHANGED, payment.id, current, f"Transition {current.value} -> {target.value} not allowed"
            ), []

        now = utcnow()
        metadata = load_payment_metadata(payment.payment_metadata)
        updates = {
            "last_webhook_event": result.event_type,
            "last_webhook_at": now,
            "transaction_id": result.metadata.transaction_id or metadata.transaction_id,
            "receipt_url": result.metadata.receipt_url or metadata.receipt_url,
        }
        if target == PaymentStatus.PAID:
            updates["captured_at"] = now
            payment.captured_amount = payment.amount
        if isinstance(metadata, SubscriptionMetadata) and result.metadata.provider_subscription_id:
            updates["provider_subscription_id"] = result.metadata.provider_subscription_id
        metadata = metadata.model_copy(update=updates)

        payment.status = target
        payment.payment_metadata = dump_payment_metadata(metadata)
        log.info("payment_status_updated", payment_id=payment.id, previous=current.value,
                 status=target.value, event_type=result.event_type)

        reason = reason_for(result.event_type)
        if isinstance(metadata, StoreCheckoutMetadata):
            user_id, events = self._apply_store(payment, target, reason)
        else:
            user_id, events = self._apply_subscription(payment, target, result.metadata)

        if target in NOTIFIABLE_STATUSES:
            events.insert(0, PaymentStatusChanged(
                payment_id=payment.id,
                user_id=user_id or result.metadata.user_id,
                previous_status=current,
                status=target,
                reason=reason,
            ))
        return ReconciliationOutcome(PROCESSED, payment.id, target), events

    def _apply_store(self, payment: Payment, target: PaymentStatus, reason: str) -> tuple[Optional[str], list[DomainEvent]]:
        orders = self.session.scalars(select(Order).where(Order.payment_id == payment.id)).all()
        events: list[DomainEvent] = []

        for order in orders:
            if target == PaymentStatus.PAID:
                self._decrement_stock(order)
                self._clear_cart(order)
                if order.is_pre_order:
                    order.pre_order_status = PreOrderStatus.CONFIRMED
                    order.record_status(order.status.value, "Pre-order payment confirmed")
                elif order.status == OrderStatus.PENDING:
                    order.status = OrderStatus.PROCESSING
                    order.record_status(OrderStatus.PROCESSING.value, reason)
                events.append(OrderPaymentConfirmed(order_id=order.id, user_id=order.user_id))

            elif target in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                if order.status in REVERTIBLE_ORDER_STATUSES:
                    order.status = OrderStatus.PENDING
                    order.record_status(OrderStatus.PENDING.value, reason)

            elif target == PaymentStatus.REFUNDED:
                order.record_status(order.status.value, reason)

        return (orders[0].user_id if orders else None), events

    def _decrement_stock(self, order: Order) -> None:
        for item in order.items:
            if item.pre_order_release_date is not None:
                # Stock for pre-order lines moves on release
                continue
            result = self.session.execute(
                update(StoreItem)
                .where(StoreItem.product_id == item.product_id, StoreItem.stock >= item.quantity)
                .values(stock=StoreItem.stock - item.quantity)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 0:
                log.warning("stock_insufficient_on_payment", order_id=order.id,
                            product_id=item.product_id, quantity=item.quantity)
                order.record_status(
                    order.status.value,
                    f"Insufficient stock for product {item.product_id}; manual review required",
                )

    def _clear_cart(self, order: Order) -> None:
        product_ids = [item.product_id for item in order.items]
        if not product_ids:
            return
        self.session.execute(
            delete(CartItem)
            .where(CartItem.user_id == order.user_id, CartItem.product_id.in_(product_ids))
            .execution_options(synchronize_session="fetch")
        )

    def _apply_subscription(self, payment: Payment, target: PaymentStatus,
                            event_metadata: WebhookMetadata) -> tuple[Optional[str], list[DomainEvent]]:
        subscriptions = self.session.scalars(
            select(Subscription).where(Subscription.payment_id == payment.id)
        ).all()
        for subscription in subscriptions:
            subscription.status = target
            if event_metadata.provider_subscription_id and not subscription.provider_subscription_id:
                subscription.provider_subscription_id = event_metadata.provider_subscription_id
        return (subscriptions[0].user_id if subscriptions else None), []

    # --- renewals ---

    def apply_renewal(self, result: WebhookResult) -> ReconciliationOutcome:
        """Append the next billing cycle to a subscription's ledger."""
        metadata = result.metadata
        if result.status != PaymentStatus.PAID:
            log.warning("subscription_renewal_failed", provider_subscription_id=metadata.provider_subscription_id,
                        invoice_id=metadata.invoice_id)
            return ReconciliationOutcome(IGNORED, reason="Renewal payment failed; awaiting provider retry")
        if not metadata.provider_subscription_id:
            return ReconciliationOutcome(NOT_FOUND, reason="Renewal event without subscription reference")

        try:
            with self.session.begin():
                outcome, events = self._insert_next_cycle(result)
        except IntegrityError:
            # A concurrent delivery inserted the same cycle first
            log.info("subscription_renewal_duplicate", invoice_id=metadata.invoice_id)
            return ReconciliationOutcome(UNCHANGED, reason="Billing cycle already recorded")

        self._dispatch(events)
        return outcome

    def _insert_next_cycle(self, result: WebhookResult) -> tuple[ReconciliationOutcome, list[DomainEvent]]:
        metadata = result.metadata
        if metadata.invoice_id and self.session.scalar(
            select(Subscription.id).where(Subscription.invoice_id == metadata.invoice_id)
        ):
            log.info("subscription_renewal_unchanged", invoice_id=metadata.invoice_id)
            return ReconciliationOutcome(UNCHANGED, reason="Billing cycle already recorded"), []

        latest = self.session.scalars(
            select(Subscription)
            .where(Subscription.provider_subscription_id == metadata.provider_subscription_id)
            .order_by(Subscription.billing_cycle.desc())
            .limit(1)
        ).first()
        if latest is None:
            log.warning("subscription_not_found_for_renewal",
                        provider_subscription_id=metadata.provider_subscription_id)
            return ReconciliationOutcome(NOT_FOUND, reason="Subscription not found"), []

        plan = latest.plan
        start = metadata.period_start or as_utc(latest.end_date)
        end = metadata.period_end or start + timedelta(days=plan.duration)
        amount = metadata.amount if metadata.amount is not None else plan.price
        previous_currency = latest.payment.currency if latest.payment else None
        subscription_id = generate_id()
        now = utcnow()

        payment = Payment(
            id=generate_id(),
            provider=self.provider.kind(),
            provider_ref=result.provider_ref or None,
            status=PaymentStatus.PAID,
            currency=metadata.currency or previous_currency or self.default_currency,
            amount=amount,
            captured_amount=amount,
            payment_metadata=dump_payment_metadata(SubscriptionMetadata(
                plan_id=plan.id,
                plan_name=plan.name,
                subscription_id=subscription_id,
                provider_subscription_id=metadata.provider_subscription_id,
                invoice_id=metadata.invoice_id,
                billing_reason=metadata.billing_reason,
                transaction_id=metadata.transaction_id,
                receipt_url=metadata.receipt_url,
                captured_at=now,
                last_webhook_event=result.event_type,
                last_webhook_at=now,
            )),
        )
        self.session.add(payment)
        self.session.flush()

        self.session.add(Subscription(
            id=subscription_id,
            user_id=latest.user_id,
            plan_id=latest.plan_id,
            status=PaymentStatus.PAID,
            start_date=start,
            end_date=end,
            auto_renew=latest.auto_renew,
            payment_id=payment.id,
            provider_subscription_id=metadata.provider_subscription_id,
            invoice_id=metadata.invoice_id,
            billing_cycle=latest.billing_cycle + 1,
        ))
        self.session.flush()
        log.info("subscription_renewed", subscription_id=subscription_id,
                 billing_cycle=latest.billing_cycle + 1, payment_id=payment.id)

        events = [PaymentStatusChanged(
            payment_id=payment.id,
            user_id=latest.user_id,
            previous_status=PaymentStatus.PENDING,
            status=PaymentStatus.PAID,
            reason=reason_for(result.event_type),
        )]
        return ReconciliationOutcome(PROCESSED, payment.id, PaymentStatus.PAID), events

    # --- helpers ---

    def _dispatch(self, events: list[DomainEvent]) -> None:
        # Runs after commit; a failing collaborator must not undo the transition
        for event in events:
            try:
                self.notifier.notify(event)
                if isinstance(event, PaymentStatusChanged):
                    self.notifier.email_on_payment_status(event.user_id, event.payment_id,
                                                          event.status, event.reason)
            except Exception:
                log.exception("notification_dispatch_failed", event_name=event.name, event_id=event.event_id)

    @staticmethod
    def _decode(raw_body) -> dict:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return body
