"""Cart pricing.

Everything in this module is pure: it takes catalog snapshots and discount
configuration and returns priced lines. Amounts are ``Decimal`` and are
rounded half-up to two places after every arithmetic step.

Per-item discounts and the global discount never stack. When the global
discount is active and its threshold is met on the base subtotal, it replaces
every per-item discount and its amount is spread over the lines in proportion
to their base totals. Shares round down and the remainder goes on the last line,
so no line ever costs more than its base total.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Optional

from commerce_payments.enums import DiscountType
from commerce_payments.errors import CartValidationError, ValidationError
from commerce_payments.models import as_utc, utcnow

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def round_money(value) -> Decimal:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return max(ZERO, amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


@dataclass
class DiscountRule:
    type: DiscountType
    value: Decimal


@dataclass
class TimedDiscountRule(DiscountRule):
    is_active: bool = False
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


@dataclass
class GlobalDiscountConfig(DiscountRule):
    is_active: bool = False
    min_order_total: Optional[Decimal] = None
    label: Optional[str] = None

    @classmethod
    def from_setting(cls, value: Optional[dict]) -> Optional["GlobalDiscountConfig"]:
        if not value:
            return None
        min_total = value.get("minOrderTotal")
        return cls(
            type=DiscountType(value.get("type", DiscountType.NONE.value)),
            value=Decimal(str(value.get("value", 0))),
            is_active=bool(value.get("isActive", False)),
            min_order_total=Decimal(str(min_total)) if min_total is not None else None,
            label=value.get("label"),
        )


def is_discount_currently_active(rule: Optional[TimedDiscountRule], now: Optional[datetime] = None) -> bool:
    if rule is None or not rule.is_active:
        return False
    now = as_utc(now) or utcnow()
    if rule.starts_at and now < as_utc(rule.starts_at):
        return False
    if rule.ends_at and now > as_utc(rule.ends_at):
        return False
    return True


def apply_discount_value(amount: Decimal, rule: Optional[DiscountRule]) -> tuple[Decimal, Decimal]:
    """Return ``(final_amount, discount_amount)`` for one discount rule."""
    amount = round_money(amount)
    if rule is None:
        return amount, ZERO

    value = max(ZERO, Decimal(str(rule.value or 0)))
    if rule.type == DiscountType.PERCENTAGE:
        discount = round_money(amount * min(value, HUNDRED) / HUNDRED)
    elif rule.type == DiscountType.FLAT:
        discount = round_money(min(value, amount))
    else:
        discount = ZERO

    return round_money(amount - discount), discount


def should_apply_global_discount(config: Optional[GlobalDiscountConfig], base_subtotal: Decimal) -> bool:
    if config is None or not config.is_active or config.type == DiscountType.NONE:
        return False
    if config.min_order_total and base_subtotal < config.min_order_total:
        return False
    return True


@dataclass
class CartLine:
    """Snapshot of one cart row joined with its store item."""

    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    stock: Optional[int]
    is_published: bool = True
    discount: Optional[TimedDiscountRule] = None
    pre_order_enabled: bool = False
    pre_order_release_date: Optional[datetime] = None
    weight: Optional[int] = None
    cart_item_id: Optional[str] = None


@dataclass
class PricedLine:
    product_id: str
    name: str
    quantity: int
    base_unit_price: Decimal
    base_total: Decimal
    discount_amount: Decimal
    line_total: Decimal
    is_pre_order: bool = False
    pre_order_release_date: Optional[datetime] = None
    weight: Optional[int] = None
    cart_item_id: Optional[str] = None

    @property
    def unit_price(self) -> Decimal:
        return round_money(self.line_total / self.quantity)


@dataclass
class CartSummary:
    lines: list[PricedLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    total: Decimal = ZERO
    global_discount_applied: bool = False
    discount_label: Optional[str] = None

    @property
    def is_pre_order(self) -> bool:
        return any(line.is_pre_order for line in self.lines)


def validate_lines(lines: list[CartLine]) -> None:
    if not lines:
        raise ValidationError("Cart is empty")

    reasons = []
    for line in lines:
        if not line.is_published:
            reasons.append(f"Product {line.name} is no longer available")
            continue
        if line.quantity <= 0:
            reasons.append(f"Invalid quantity for {line.name}: {line.quantity}")
            continue
        if line.pre_order_enabled:
            continue
        if line.stock is None or line.stock < line.quantity:
            reasons.append(
                f"Insufficient stock for {line.name}. "
                f"Available: {line.stock or 0}, Requested: {line.quantity}"
            )
    if reasons:
        raise CartValidationError(reasons)


def _distribute(total_discount: Decimal, base_totals: list[Decimal], base_subtotal: Decimal) -> list[Decimal]:
    if not base_totals:
        return []
    if base_subtotal <= ZERO:
        return [ZERO] * len(base_totals)

    # Shares round down so the remainder on the last line is never negative
    shares = [
        (total_discount * base_total / base_subtotal).quantize(TWO_PLACES, rounding=ROUND_DOWN)
        for base_total in base_totals[:-1]
    ]
    remainder = (total_discount - sum(shares, ZERO)).quantize(TWO_PLACES)
    discounts = shares + [min(remainder, base_totals[-1])]

    # Whatever the last line cannot absorb goes to earlier lines with headroom
    excess = remainder - discounts[-1]
    for index in range(len(shares) - 1, -1, -1):
        if excess <= ZERO:
            break
        extra = min(excess, base_totals[index] - discounts[index])
        discounts[index] += extra
        excess -= extra
    return discounts


def summarize_cart(
    lines: list[CartLine],
    global_discount: Optional[GlobalDiscountConfig] = None,
    now: Optional[datetime] = None,
) -> CartSummary:
    validate_lines(lines)
    now = as_utc(now) or utcnow()

    base_totals = [round_money(line.unit_price * line.quantity) for line in lines]
    base_subtotal = round_money(sum(base_totals, ZERO))

    if should_apply_global_discount(global_discount, base_subtotal):
        _, total_discount = apply_discount_value(base_subtotal, global_discount)
        discounts = _distribute(total_discount, base_totals, base_subtotal)
        applied_global = True
    else:
        discounts = []
        for line, base_total in zip(lines, base_totals):
            if is_discount_currently_active(line.discount, now):
                unit, _ = apply_discount_value(line.unit_price, line.discount)
                line_total = round_money(unit * line.quantity)
                discounts.append(round_money(base_total - line_total))
            else:
                discounts.append(ZERO)
        applied_global = False

    priced = []
    for line, base_total, discount in zip(lines, base_totals, discounts):
        priced.append(PricedLine(
            product_id=line.product_id,
            name=line.name,
            quantity=line.quantity,
            base_unit_price=round_money(line.unit_price),
            base_total=base_total,
            discount_amount=discount,
            line_total=round_money(base_total - discount),
            is_pre_order=line.pre_order_enabled,
            pre_order_release_date=line.pre_order_release_date if line.pre_order_enabled else None,
            weight=line.weight,
            cart_item_id=line.cart_item_id,
        ))

    discount_total = round_money(sum(discounts, ZERO))
    return CartSummary(
        lines=priced,
        subtotal=base_subtotal,
        discount_total=discount_total,
        total=round_money(sum((p.line_total for p in priced), ZERO)),
        global_discount_applied=applied_global,
        discount_label=global_discount.label if applied_global else None,
    )
