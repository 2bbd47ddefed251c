from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from commerce_payments.config import Settings
from commerce_payments.enums import (
    MetadataType,
    OrderStatus,
    PaymentStatus,
    PreOrderStatus,
)
from commerce_payments.errors import NotFoundError, ValidationError
from commerce_payments.models import (
    CartItem,
    DeliveryAddress,
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
from commerce_payments.pricing import (
    CartLine,
    CartSummary,
    GlobalDiscountConfig,
    TimedDiscountRule,
    round_money,
    summarize_cart,
)
from commerce_payments.providers.base import PaymentProvider
from commerce_payments.schemas import (
    CartCheckoutRequest,
    PaymentInitInput,
    PaymentLineItem,
    StoreCheckoutMetadata,
    SubscriptionMetadata,
    dump_payment_metadata,
)
from commerce_payments.shipping import ParcelLine, ShippingCalculator, ShippingQuote

log = structlog.get_logger(__name__)

GLOBAL_DISCOUNT_KEY = "STORE_GLOBAL_DISCOUNT"


class CheckoutOrchestrator:
    """Turns a cart or a plan into a provider session plus pending records.

    The provider session is opened before anything is written, so a provider
    failure leaves no Order or Payment behind.
    """

    def __init__(self, session: Session, provider: PaymentProvider, shipping: ShippingCalculator,
                 settings: Settings):
        self.session = session
        self.provider = provider
        self.shipping = shipping
        self.settings = settings

    # --- store checkout ---

    def _cart_lines(self, user_id: str) -> list[CartLine]:
        rows = self.session.execute(
            select(CartItem, StoreItem)
            .join(StoreItem, CartItem.product_id == StoreItem.product_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.added_at, CartItem.id)
        ).all()

        lines = []
        for cart_item, item in rows:
            discount = None
            if item.discount_type and item.discount_active:
                discount = TimedDiscountRule(
                    type=item.discount_type,
                    value=item.discount_value,
                    is_active=item.discount_active,
                    starts_at=item.discount_start,
                    ends_at=item.discount_end,
                )
            lines.append(CartLine(
                product_id=item.product_id,
                name=item.name,
                quantity=cart_item.quantity,
                unit_price=item.price,
                stock=item.stock,
                is_published=item.is_published,
                discount=discount,
                pre_order_enabled=item.pre_order_enabled,
                pre_order_release_date=item.pre_order_fulfillment_date,
                weight=item.weight,
                cart_item_id=cart_item.id,
            ))
        return lines

    def _global_discount(self) -> Optional[GlobalDiscountConfig]:
        record = self.session.get(Setting, GLOBAL_DISCOUNT_KEY)
        return GlobalDiscountConfig.from_setting(record.value if record else None)

    def _resolve_address(self, user_id: str, request: CartCheckoutRequest) -> tuple[str, Optional[DeliveryAddress]]:
        """Return the address id to use and, for a new address, the unsaved row."""
        if request.delivery_address_id:
            address = self.session.get(DeliveryAddress, request.delivery_address_id)
            if address is None or address.user_id != user_id:
                raise NotFoundError("Delivery address not found")
            return address.id, None

        if request.delivery_address is None:
            raise ValidationError("A delivery address is required")

        address = DeliveryAddress(
            id=generate_id(),
            user_id=user_id,
            is_default=request.save_as_default,
            **request.delivery_address.model_dump(),
        )
        return address.id, address

    def prepare_cart(self, user_id: str, request: CartCheckoutRequest) -> tuple[CartSummary, ShippingQuote]:
        """Price the user's cart and quote shipping without writing anything."""
        lines = self._cart_lines(user_id)
        summary = summarize_cart(lines, self._global_discount())
        quote = self.shipping.quote(
            [ParcelLine(quantity=line.quantity, weight=line.weight) for line in summary.lines],
            request.shipping_service,
            request.add_ons,
        )
        return summary, quote

    def checkout_cart(self, user_id: str, request: CartCheckoutRequest) -> dict:
        with self.session.begin():
            summary, quote = self.prepare_cart(user_id, request)
            address_id, new_address = self._resolve_address(user_id, request)

        shipping_cost = round_money(quote.total_price)
        total = round_money(summary.total + shipping_cost)
        currency = self.settings.currency.value
        payment_id, order_id = generate_id(), generate_id()

        init = self.provider.initialize_payment(PaymentInitInput(
            payment_id=payment_id,
            type=MetadataType.STORE_CHECKOUT,
            user_id=user_id,
            amount=total,
            currency=currency,
            description=f"Order {order_id}",
            order_id=order_id,
            items=[
                PaymentLineItem(name=line.name, quantity=line.quantity, unit_price=line.unit_price)
                for line in summary.lines
            ],
            shipping_cost=shipping_cost,
            shipping_description=quote.service_label,
            is_pre_order=summary.is_pre_order,
        ))

        release_dates = [line.pre_order_release_date for line in summary.lines if line.pre_order_release_date]

        with self.session.begin():
            if new_address is not None:
                if new_address.is_default:
                    self.session.execute(
                        update(DeliveryAddress)
                        .where(DeliveryAddress.user_id == user_id, DeliveryAddress.is_default.is_(True))
                        .values(is_default=False)
                    )
                self.session.add(new_address)

            self.session.add(Payment(
                id=payment_id,
                provider=self.provider.kind(),
                provider_ref=init.provider_ref,
                status=PaymentStatus.PENDING,
                currency=currency,
                amount=total,
                is_pre_order_payment=summary.is_pre_order,
                payment_metadata=dump_payment_metadata(StoreCheckoutMetadata(
                    cart_item_ids=[line.cart_item_id for line in summary.lines if line.cart_item_id],
                )),
            ))
            self.session.flush()

            order = Order(
                id=order_id,
                user_id=user_id,
                status=OrderStatus.PENDING,
                total_amount=total,
                shipping_cost=shipping_cost,
                service_code=quote.service_code,
                parcel_weight=quote.weight,
                payment_id=payment_id,
                delivery_address_id=address_id,
                is_pre_order=summary.is_pre_order,
                pre_order_status=PreOrderStatus.PLACED if summary.is_pre_order else None,
                expected_fulfillment_date=max(release_dates) if release_dates else None,
            )
            order.record_status(OrderStatus.PENDING.value, "Order placed, awaiting payment")
            self.session.add(order)
            self.session.flush()

            self.session.add_all([
                OrderItem(
                    order_id=order_id,
                    position=position,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    price=line.unit_price,
                    pre_order_release_date=line.pre_order_release_date,
                )
                for position, line in enumerate(summary.lines)
            ])

        log.info("checkout_created", payment_id=payment_id, order_id=order_id,
                 provider_ref=init.provider_ref, amount=str(total))
        return {
            "paymentId": payment_id,
            "orderId": order_id,
            "approvalUrl": init.approval_url,
            "amount": str(total),
            "currency": currency,
        }

    # --- subscription checkout ---

    def checkout_subscription(self, user_id: str, plan_id: str) -> dict:
        now = utcnow()
        with self.session.begin():
            plan = self.session.get(SubscriptionPlan, plan_id)
            if plan is None:
                raise NotFoundError("Subscription plan not found")
            if not plan.is_active:
                raise ValidationError("Subscription plan is not active")

            active = self.session.scalar(
                select(Subscription.id)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == PaymentStatus.PAID,
                    Subscription.end_date > now,
                )
                .limit(1)
            )
            if active:
                raise ValidationError("User already has an active subscription")

            plan_name, price, duration = plan.name, round_money(plan.price), plan.duration

        currency = self.settings.currency.value
        payment_id, correlation_id = generate_id(), generate_id()

        init = self.provider.initialize_payment(PaymentInitInput(
            payment_id=payment_id,
            type=MetadataType.SUBSCRIPTION,
            user_id=user_id,
            amount=price,
            currency=currency,
            description=f"Subscription: {plan_name}",
            subscription_id=correlation_id,
            items=[PaymentLineItem(name=plan_name, quantity=1, unit_price=price)],
            billing_interval_days=duration,
        ))
        subscription_id = init.provider_ref

        with self.session.begin():
            self.session.add(Payment(
                id=payment_id,
                provider=self.provider.kind(),
                provider_ref=init.provider_ref,
                status=PaymentStatus.PENDING,
                currency=currency,
                amount=price,
                payment_metadata=dump_payment_metadata(SubscriptionMetadata(
                    plan_id=plan_id,
                    plan_name=plan_name,
                    subscription_id=subscription_id,
                )),
            ))
            self.session.flush()
            self.session.add(Subscription(
                id=subscription_id,
                user_id=user_id,
                plan_id=plan_id,
                status=PaymentStatus.PENDING,
                start_date=now,
                end_date=now + timedelta(days=duration),
                payment_id=payment_id,
                billing_cycle=1,
            ))

        log.info("subscription_checkout_created", payment_id=payment_id,
                 subscription_id=subscription_id, plan_id=plan_id)
        return {
            "paymentId": payment_id,
            "subscriptionId": subscription_id,
            "approvalUrl": init.approval_url,
            "amount": str(price),
            "currency": currency,
            "planName": plan_name,
        }
