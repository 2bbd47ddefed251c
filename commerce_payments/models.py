import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from commerce_payments.database import Base
from commerce_payments.enums import (
    DiscountType,
    OrderStatus,
    PaymentStatus,
    PreOrderStatus,
    ProviderKind,
)

Money = Numeric(10, 2, asdecimal=True)


def generate_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True)


class StoreItem(Base):
    __tablename__ = "store_items"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_store_items_stock_non_negative"),)

    product_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Money, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    is_published = Column(Boolean, nullable=False, default=True)
    weight = Column(Integer)                        # grams

    discount_type = Column(_enum(DiscountType), nullable=False, default=DiscountType.NONE)
    discount_value = Column(Money, nullable=False, default=0)
    discount_active = Column(Boolean, nullable=False, default=False)
    discount_start = Column(DateTime(timezone=True))
    discount_end = Column(DateTime(timezone=True))

    pre_order_enabled = Column(Boolean, nullable=False, default=False)
    pre_order_fulfillment_date = Column(DateTime(timezone=True))


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String, primary_key=True, default=generate_id)
    name = Column(String, nullable=False)
    description = Column(Text)
    price = Column(Money, nullable=False)
    duration = Column(Integer, nullable=False)      # days
    is_active = Column(Boolean, nullable=False, default=True)


class DeliveryAddress(Base):
    __tablename__ = "delivery_addresses"

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, nullable=False, index=True)
    recipient_name = Column(String, nullable=False)
    contact_phone = Column(String, nullable=False)
    address_line1 = Column(String, nullable=False)
    post_town = Column(String, nullable=False)
    postcode = Column(String, nullable=False)
    delivery_instructions = Column(Text)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),)

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, ForeignKey("store_items.product_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    added_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=generate_id)
    provider = Column(_enum(ProviderKind), nullable=False)
    provider_ref = Column(String, unique=True, index=True)   # checkout session / order id
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    currency = Column(String(3), nullable=False)
    amount = Column(Money, nullable=False)
    captured_amount = Column(Money, nullable=False, default=0)
    authorized_amount = Column(Money, nullable=False, default=0)
    is_pre_order_payment = Column(Boolean, nullable=False, default=False)
    payment_metadata = Column("metadata", JSON)               # see schemas.PaymentMetadata
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    orders = relationship("Order", back_populates="payment")
    subscriptions = relationship("Subscription", back_populates="payment")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, nullable=False, index=True)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    total_amount = Column(Money, nullable=False)
    shipping_cost = Column(Money)
    service_code = Column(String)
    parcel_weight = Column(Integer)
    payment_id = Column(String, ForeignKey("payments.id"), index=True)
    delivery_address_id = Column(String, ForeignKey("delivery_addresses.id"))
    is_pre_order = Column(Boolean, nullable=False, default=False)
    pre_order_status = Column(_enum(PreOrderStatus))
    expected_fulfillment_date = Column(DateTime(timezone=True))
    status_history = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship("Payment", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.position")

    def record_status(self, status: str, note: str) -> None:
        # Reassign so the JSON column registers the change
        self.status_history = list(self.status_history or []) + [
            {"status": status, "timestamp": utcnow().isoformat(), "note": note}
        ]


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=generate_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)  # cart order
    product_id = Column(String, ForeignKey("store_items.product_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Money, nullable=False)           # unit price snapshot
    pre_order_release_date = Column(DateTime(timezone=True))

    order = relationship("Order", back_populates="items")


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "provider_subscription_id", "billing_cycle", name="uq_subscriptions_cycle"
        ),
    )

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    auto_renew = Column(Boolean, nullable=False, default=True)
    payment_id = Column(String, ForeignKey("payments.id"), index=True)
    provider_subscription_id = Column(String, index=True)
    invoice_id = Column(String, unique=True)
    billing_cycle = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    payment = relationship("Payment", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan")


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(Text)
