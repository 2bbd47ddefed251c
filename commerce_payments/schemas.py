from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from commerce_payments.enums import MetadataType, PaymentStatus


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request bodies ---

class DeliveryAddressInput(ApiModel):
    recipient_name: str = Field(min_length=1)
    contact_phone: str = Field(min_length=1)
    address_line1: str = Field(min_length=1)
    post_town: str = Field(min_length=1)
    postcode: str = Field(min_length=1)
    delivery_instructions: Optional[str] = None


class CartCheckoutRequest(ApiModel):
    delivery_address_id: Optional[str] = None
    delivery_address: Optional[DeliveryAddressInput] = None
    save_as_default: bool = False
    shipping_service: Optional[str] = None
    add_ons: list[str] = Field(default_factory=list)


class SubscriptionCheckoutRequest(ApiModel):
    plan_id: str = Field(min_length=1)


class CaptureRequest(ApiModel):
    token: str = Field(min_length=1)


# --- Provider contract ---

class PaymentLineItem(BaseModel):
    name: str
    quantity: int
    unit_price: Decimal


class PaymentInitInput(BaseModel):
    payment_id: str
    type: MetadataType
    user_id: str
    amount: Decimal
    currency: str
    description: str = "Payment"
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    items: list[PaymentLineItem] = Field(default_factory=list)
    shipping_cost: Optional[Decimal] = None
    shipping_description: Optional[str] = None
    is_pre_order: bool = False
    billing_interval_days: Optional[int] = None

    def correlation(self) -> dict[str, str]:
        """Flat string map embedded in processor-side metadata."""
        return {
            "paymentId": self.payment_id,
            "type": self.type.value,
            "userId": self.user_id,
            "orderId": self.order_id or "",
            "subscriptionId": self.subscription_id or "",
            "isPreOrder": "true" if self.is_pre_order else "false",
        }


class PaymentInitResult(BaseModel):
    provider_ref: str
    approval_url: Optional[str] = None


class CaptureResult(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    receipt_url: Optional[str] = None


class WebhookMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    type: Optional[MetadataType] = None
    provider_subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    receipt_url: Optional[str] = None
    renewal: bool = False
    needs_intent_metadata: bool = False
    unhandled_event: bool = False

    def merge_correlation(self, values: dict) -> "WebhookMetadata":
        """Fill missing correlation ids from a processor metadata map."""
        extra = correlation_from_map(values)
        return self.model_copy(
            update={k: v for k, v in extra.items() if getattr(self, k) is None}
        )


class WebhookResult(BaseModel):
    """Canonical event produced by a provider adapter."""

    provider_ref: str
    status: PaymentStatus
    event_type: str
    metadata: WebhookMetadata = Field(default_factory=WebhookMetadata)


def correlation_from_map(values: Optional[dict]) -> dict:
    values = dict(values or {})
    found = {
        "payment_id": values.get("paymentId") or None,
        "order_id": values.get("orderId") or None,
        "subscription_id": values.get("subscriptionId") or None,
        "user_id": values.get("userId") or None,
    }
    if values.get("type") in {t.value for t in MetadataType}:
        found["type"] = MetadataType(values["type"])
    return {k: v for k, v in found.items() if v is not None}


# --- Payment.metadata tagged union ---

class _PaymentMetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: Optional[str] = None
    receipt_url: Optional[str] = None
    captured_at: Optional[datetime] = None
    last_webhook_event: Optional[str] = None
    last_webhook_at: Optional[datetime] = None


class StoreCheckoutMetadata(_PaymentMetadataBase):
    type: Literal["store_checkout"] = "store_checkout"
    cart_item_ids: list[str] = Field(default_factory=list)


class SubscriptionMetadata(_PaymentMetadataBase):
    type: Literal["subscription"] = "subscription"
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    billing_reason: Optional[str] = None


PaymentMetadata = Annotated[
    Union[StoreCheckoutMetadata, SubscriptionMetadata], Field(discriminator="type")
]

payment_metadata_adapter = TypeAdapter(PaymentMetadata)


def load_payment_metadata(raw: Optional[dict]) -> Union[StoreCheckoutMetadata, SubscriptionMetadata]:
    return payment_metadata_adapter.validate_python(raw or {"type": "store_checkout"})


def dump_payment_metadata(metadata: Union[StoreCheckoutMetadata, SubscriptionMetadata]) -> dict:
    return metadata.model_dump(mode="json", exclude_none=True)
