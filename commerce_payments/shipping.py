from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from commerce_payments.errors import ValidationError
from commerce_payments.models import Setting

log = structlog.get_logger(__name__)

SHIPPING_RATES_KEY = "SHIPPING_RATES"
DEFAULT_ITEM_WEIGHT = 100  # grams

DEFAULT_SHIPPING_RATES = {
    "services": {
        "ROYAL_MAIL_48": {
            "label": "Royal Mail 2nd Class",
            "serviceCode": "CRL1",
            "bands": [
                {"maxWeight": 1000, "price": "4.19"},
                {"maxWeight": 2000, "price": "6.49"},
                {"maxWeight": 5000, "price": "9.99"},
                {"maxWeight": 10000, "price": "14.99"},
                {"maxWeight": 20000, "price": "24.99"},
                {"maxWeight": 30000, "price": "34.99"},
            ],
        },
        "ROYAL_MAIL_24": {
            "label": "Royal Mail 1st Class",
            "serviceCode": "CRL2",
            "bands": [
                {"maxWeight": 1000, "price": "5.82"},
                {"maxWeight": 2000, "price": "8.99"},
                {"maxWeight": 5000, "price": "12.99"},
                {"maxWeight": 10000, "price": "18.99"},
                {"maxWeight": 20000, "price": "29.99"},
                {"maxWeight": 30000, "price": "42.99"},
            ],
        },
        "TRACKED_24": {
            "label": "Royal Mail Tracked 24",
            "serviceCode": "TPN",
            "bands": [
                {"maxWeight": 1000, "price": "7.20"},
                {"maxWeight": 2000, "price": "9.50"},
                {"maxWeight": 5000, "price": "13.50"},
                {"maxWeight": 10000, "price": "19.50"},
                {"maxWeight": 20000, "price": "31.50"},
                {"maxWeight": 30000, "price": "45.50"},
            ],
        },
    },
    "addOns": {
        "SIGNED_FOR": {"label": "Signed For", "price": "1.50"},
    },
    "defaultService": "ROYAL_MAIL_48",
}


@dataclass
class ParcelLine:
    quantity: int
    weight: Optional[int] = None


@dataclass
class ShippingQuote:
    service_key: str
    service_label: str
    service_code: str
    weight: int
    base_price: Decimal
    add_ons: list[dict] = field(default_factory=list)

    @property
    def total_price(self) -> Decimal:
        return self.base_price + sum((Decimal(a["price"]) for a in self.add_ons), Decimal("0"))


class ShippingCalculator:
    """Weight-band rate lookup; rates may be overridden by a settings row."""

    def __init__(self, session: Session):
        self.session = session

    def rates(self) -> dict:
        record = self.session.get(Setting, SHIPPING_RATES_KEY)
        if record and isinstance(record.value, dict) and record.value.get("services"):
            return record.value
        return DEFAULT_SHIPPING_RATES

    def quote(self, lines: list[ParcelLine], service_key: Optional[str] = None,
              add_on_keys: Optional[list[str]] = None) -> ShippingQuote:
        rates = self.rates()
        key = service_key or rates.get("defaultService")
        service = rates["services"].get(key)
        if service is None:
            raise ValidationError(f"Shipping service not found: {key}")

        weight = sum((line.weight or DEFAULT_ITEM_WEIGHT) * line.quantity for line in lines)
        price = None
        for band in sorted(service["bands"], key=lambda b: b["maxWeight"]):
            if weight <= band["maxWeight"]:
                price = Decimal(str(band["price"]))
                break
        if price is None:
            raise ValidationError(f"No shipping rate available for weight: {weight}g")

        add_ons = []
        for add_on_key in add_on_keys or []:
            add_on = rates.get("addOns", {}).get(add_on_key)
            if add_on:
                add_ons.append({"key": add_on_key, "label": add_on["label"], "price": str(add_on["price"])})
            else:
                log.warning("shipping_add_on_unknown", add_on=add_on_key)

        return ShippingQuote(
            service_key=key,
            service_label=service["label"],
            service_code=service["serviceCode"],
            weight=weight,
            base_price=price,
            add_ons=add_ons,
        )
