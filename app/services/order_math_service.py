from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from app.config import settings
from app.models import DiscountType

ZERO = Decimal('0')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount_amount: Decimal
    service_charge: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class PricedLine:
    unit_price: Decimal
    quantity: int
    voided: bool = False


def round_money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(settings.money_quantum, rounding=ROUND_HALF_UP)


def compute_subtotal(lines: Iterable[PricedLine]) -> Decimal:
    total = sum(
        (Decimal(line.unit_price) * Decimal(line.quantity) for line in lines if not line.voided),
        ZERO,
    )
    return round_money(total)


def compute_discount_amount(
    subtotal: Decimal,
    discount_type: DiscountType | None,
    discount_value: Decimal | None,
) -> Decimal:
    if discount_type is None or not discount_value or discount_value <= 0:
        return round_money(ZERO)
    if discount_type == DiscountType.PERCENT:
        return round_money(subtotal * Decimal(discount_value) / HUNDRED)
    return round_money(discount_value)


def compute_totals(
    subtotal: Decimal,
    discount_type: DiscountType | None,
    discount_value: Decimal | None,
    service_charge_rate: Decimal,
    tax_rate: Decimal,
) -> OrderTotals:
    """Discount, then service charge on the discounted amount, then tax on both.

    Each figure is rounded half-up to currency precision as soon as it is computed.
    Callers clamp the discount so it never exceeds the subtotal.
    """
    subtotal = round_money(subtotal)
    discount_amount = compute_discount_amount(subtotal, discount_type, discount_value)
    after_discount = round_money(subtotal - discount_amount)
    service_charge = round_money(after_discount * Decimal(service_charge_rate))
    tax_amount = round_money((after_discount + service_charge) * Decimal(tax_rate))
    total = round_money(after_discount + service_charge + tax_amount)
    return OrderTotals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        service_charge=service_charge,
        tax_amount=tax_amount,
        total=total,
    )


def clamp_discount_value(
    subtotal: Decimal,
    discount_type: DiscountType | None,
    discount_value: Decimal | None,
) -> Decimal | None:
    if discount_type is None or discount_value is None:
        return None
    if discount_type == DiscountType.PERCENT:
        return min(max(Decimal(discount_value), ZERO), HUNDRED)
    return min(max(Decimal(discount_value), ZERO), subtotal)


def allocate_proportionally(amount: Decimal, weights: list[Decimal]) -> list[Decimal]:
    """Split ``amount`` by ``weights``; the last share absorbs rounding so the parts sum exactly."""
    if not weights:
        return []
    weight_total = sum(weights, ZERO)
    if weight_total <= 0:
        return [round_money(amount)] + [round_money(ZERO)] * (len(weights) - 1)

    shares: list[Decimal] = []
    remaining = round_money(amount)
    for weight in weights[:-1]:
        share = round_money(amount * weight / weight_total)
        shares.append(share)
        remaining -= share
    shares.append(round_money(remaining))
    return shares
