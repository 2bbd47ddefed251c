from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from commerce_payments.enums import DiscountType
from commerce_payments.errors import CartValidationError, ValidationError
from commerce_payments.pricing import (
    CartLine,
    DiscountRule,
    GlobalDiscountConfig,
    TimedDiscountRule,
    apply_discount_value,
    is_discount_currently_active,
    round_money,
    summarize_cart,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def line(product_id, price, quantity=1, stock=10, **fields):
    return CartLine(product_id=product_id, name=product_id.title(), quantity=quantity,
                    unit_price=Decimal(price), stock=stock, **fields)


def test_round_money_is_half_up_and_never_negative():
    assert round_money(Decimal("2.345")) == Decimal("2.35")
    assert round_money(Decimal("2.344")) == Decimal("2.34")
    assert round_money(Decimal("-1.00")) == Decimal("0.00")


def test_percentage_discount_is_capped_at_one_hundred():
    final, discount = apply_discount_value(Decimal("20.00"), DiscountRule(DiscountType.PERCENTAGE, Decimal("150")))
    assert final == Decimal("0.00")
    assert discount == Decimal("20.00")


def test_flat_discount_is_capped_at_amount():
    final, discount = apply_discount_value(Decimal("5.00"), DiscountRule(DiscountType.FLAT, Decimal("8")))
    assert (final, discount) == (Decimal("0.00"), Decimal("5.00"))


def test_discount_window_is_respected():
    rule = TimedDiscountRule(DiscountType.FLAT, Decimal("1"), is_active=True,
                             starts_at=NOW + timedelta(days=1))
    assert not is_discount_currently_active(rule, NOW)
    rule.starts_at = NOW - timedelta(days=2)
    rule.ends_at = NOW - timedelta(days=1)
    assert not is_discount_currently_active(rule, NOW)
    rule.ends_at = None
    assert is_discount_currently_active(rule, NOW)


def test_summary_without_discounts():
    summary = summarize_cart([line("mug", "10.00"), line("tee", "15.00")], now=NOW)

    assert summary.subtotal == Decimal("25.00")
    assert summary.discount_total == Decimal("0.00")
    assert summary.total == Decimal("25.00")
    assert not summary.global_discount_applied


def test_item_discount_applies_per_unit():
    discount = TimedDiscountRule(DiscountType.PERCENTAGE, Decimal("10"), is_active=True)
    summary = summarize_cart([line("mug", "9.99", quantity=3, discount=discount)], now=NOW)

    # 9.99 -> 8.99 per unit
    assert summary.lines[0].line_total == Decimal("26.97")
    assert summary.discount_total == Decimal("3.00")


def test_global_discount_replaces_item_discounts():
    item_discount = TimedDiscountRule(DiscountType.FLAT, Decimal("5"), is_active=True)
    global_discount = GlobalDiscountConfig(DiscountType.PERCENTAGE, Decimal("10"), is_active=True)
    lines = [
        line("mug", "3.33", discount=item_discount),
        line("tee", "3.33"),
        line("cap", "3.34"),
    ]

    summary = summarize_cart(lines, global_discount, now=NOW)

    assert summary.global_discount_applied
    assert summary.discount_total == Decimal("1.00")
    assert sum(l.discount_amount for l in summary.lines) == Decimal("1.00")
    assert summary.total == Decimal("9.00")
    # Remainder lands on the last line
    assert [l.discount_amount for l in summary.lines] == [Decimal("0.33"), Decimal("0.33"), Decimal("0.34")]


def test_global_discount_never_raises_a_line_above_its_base():
    global_discount = GlobalDiscountConfig(DiscountType.FLAT, Decimal("0.05"), is_active=True)
    lines = [line(f"sticker-{n}", "1.00") for n in range(7)]

    summary = summarize_cart(lines, global_discount, now=NOW)

    assert all(l.discount_amount >= Decimal("0.00") for l in summary.lines)
    assert all(l.line_total <= l.base_total for l in summary.lines)
    assert sum(l.discount_amount for l in summary.lines) == Decimal("0.05")
    assert summary.lines[-1].discount_amount == Decimal("0.05")
    assert summary.total == Decimal("6.95")


def test_global_discount_spills_over_when_last_line_is_too_small():
    global_discount = GlobalDiscountConfig(DiscountType.FLAT, Decimal("0.06"), is_active=True)
    lines = [line("pin", "0.03"), line("badge", "0.03"), line("clip", "0.01")]

    summary = summarize_cart(lines, global_discount, now=NOW)

    assert [l.discount_amount for l in summary.lines] == [Decimal("0.02"), Decimal("0.03"), Decimal("0.01")]
    assert [l.line_total for l in summary.lines] == [Decimal("0.01"), Decimal("0.00"), Decimal("0.00")]
    assert summary.total == Decimal("0.01")


def test_global_discount_below_minimum_falls_back_to_item_discounts():
    item_discount = TimedDiscountRule(DiscountType.FLAT, Decimal("1"), is_active=True)
    global_discount = GlobalDiscountConfig(DiscountType.PERCENTAGE, Decimal("50"), is_active=True,
                                           min_order_total=Decimal("100"))

    summary = summarize_cart([line("mug", "10.00", discount=item_discount)], global_discount, now=NOW)

    assert not summary.global_discount_applied
    assert summary.total == Decimal("9.00")


def test_global_discount_from_setting_value():
    config = GlobalDiscountConfig.from_setting(
        {"isActive": True, "type": "FLAT", "value": 2, "minOrderTotal": 20, "label": "Summer"}
    )
    assert config.type == DiscountType.FLAT
    assert config.value == Decimal("2")
    assert config.min_order_total == Decimal("20")
    assert GlobalDiscountConfig.from_setting(None) is None


def test_empty_cart_is_rejected():
    with pytest.raises(ValidationError, match="Cart is empty"):
        summarize_cart([])


def test_invalid_lines_collect_every_reason():
    lines = [
        line("mug", "10.00", is_published=False),
        line("tee", "15.00", quantity=4, stock=2),
    ]

    with pytest.raises(CartValidationError) as exc_info:
        summarize_cart(lines)

    assert exc_info.value.reasons == [
        "Product Mug is no longer available",
        "Insufficient stock for Tee. Available: 2, Requested: 4",
    ]


def test_pre_order_lines_skip_stock_check():
    release = NOW + timedelta(days=30)
    summary = summarize_cart(
        [line("vinyl", "25.00", quantity=2, stock=0, pre_order_enabled=True, pre_order_release_date=release)],
        now=NOW,
    )

    assert summary.is_pre_order
    assert summary.lines[0].pre_order_release_date == release
