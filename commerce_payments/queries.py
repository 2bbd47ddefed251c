"""Read-side views over payments and subscriptions for the API."""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from commerce_payments.enums import PaymentStatus
from commerce_payments.errors import NotFoundError
from commerce_payments.models import Payment, Subscription, as_utc, utcnow


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _money(value) -> Optional[str]:
    return str(value) if value is not None else None


def serialize_subscription(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "planId": subscription.plan_id,
        "planName": subscription.plan.name if subscription.plan else None,
        "status": subscription.status.value,
        "startDate": _iso(subscription.start_date),
        "endDate": _iso(subscription.end_date),
        "autoRenew": subscription.auto_renew,
        "billingCycle": subscription.billing_cycle,
        "paymentId": subscription.payment_id,
        "providerSubscriptionId": subscription.provider_subscription_id,
    }


def _owned_payment(session: Session, payment_id: str, user_id: Optional[str]) -> Payment:
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")

    owners = {o.user_id for o in payment.orders} | {s.user_id for s in payment.subscriptions}
    if user_id is not None and owners and user_id not in owners:
        raise NotFoundError("Payment not found")
    return payment


def ensure_payment_access(session: Session, payment_id: str, user_id: Optional[str] = None) -> None:
    """Raise ``NotFoundError`` unless the payment exists and ``user_id`` may see it."""
    with session.begin():
        _owned_payment(session, payment_id, user_id)


def get_payment_status(session: Session, payment_id: str, user_id: Optional[str] = None) -> dict:
    """Payment with its orders and subscriptions.

    When ``user_id`` is given, payments belonging to someone else are reported
    as missing.
    """
    with session.begin():
        payment = _owned_payment(session, payment_id, user_id)
        return {
            "id": payment.id,
            "provider": payment.provider.value,
            "providerRef": payment.provider_ref,
            "status": payment.status.value,
            "amount": _money(payment.amount),
            "capturedAmount": _money(payment.captured_amount),
            "currency": payment.currency,
            "isPreOrderPayment": payment.is_pre_order_payment,
            "metadata": payment.payment_metadata or {},
            "createdAt": _iso(payment.created_at),
            "updatedAt": _iso(payment.updated_at),
            "orders": [
                {
                    "id": order.id,
                    "status": order.status.value,
                    "totalAmount": _money(order.total_amount),
                    "shippingCost": _money(order.shipping_cost),
                    "isPreOrder": order.is_pre_order,
                    "preOrderStatus": order.pre_order_status.value if order.pre_order_status else None,
                    "statusHistory": order.status_history or [],
                    "items": [
                        {
                            "productId": item.product_id,
                            "quantity": item.quantity,
                            "price": _money(item.price),
                        }
                        for item in order.items
                    ],
                }
                for order in payment.orders
            ],
            "subscriptions": [serialize_subscription(s) for s in payment.subscriptions],
        }


def get_user_subscription_status(session: Session, user_id: str) -> dict:
    now = utcnow()
    with session.begin():
        subscription = session.scalars(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == PaymentStatus.PAID,
                Subscription.end_date > now,
            )
            .order_by(Subscription.end_date.desc())
            .limit(1)
        ).first()
        if subscription is None:
            return {"hasActiveSubscription": False, "subscription": None}
        return {"hasActiveSubscription": True, "subscription": serialize_subscription(subscription)}


def get_user_subscription_history(session: Session, user_id: str) -> list[dict]:
    with session.begin():
        subscriptions = session.scalars(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.billing_cycle.desc())
        ).all()
        return [serialize_subscription(s) for s in subscriptions]
