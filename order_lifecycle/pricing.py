"""Price arithmetic for checkout lines. All amounts are rounded to cents."""
from dataclasses import dataclass
from typing import List


def cents(amount) -> float:
    return round(float(amount or 0), 2)


def addons_total(addons) -> float:
    return cents(sum(float(a.fee or 0) for a in addons))


def line_total(unit_price, addons, quantity) -> float:
    """(unit price + add-on fees) x quantity."""
    return cents((float(unit_price) + addons_total(addons)) * int(quantity))


def compute_discount(subtotal, discount_type, value) -> float:
    if discount_type == "percent":
        return cents(subtotal * (float(value) / 100))
    if discount_type == "amount":
        return cents(value)
    return 0.0


def grand_total(subtotal, discount) -> float:
    return max(0.0, cents(subtotal - discount))


def allocate_discount(line_totals: List[float], discount: float) -> List[float]:
    """Split ``discount`` across lines in proportion to their totals.

    The discount is capped at the subtotal; rounding leftovers land on the
    last line so the shares always sum to the applied discount.
    """
    subtotal = cents(sum(line_totals))
    applied = min(cents(discount), subtotal)
    if not line_totals or applied <= 0 or subtotal <= 0:
        return [0.0 for _ in line_totals]

    shares = [cents(applied * (total / subtotal)) for total in line_totals[:-1]]
    shares.append(cents(applied - sum(shares)))
    return shares


@dataclass
class PricedLine:
    line_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: float
    addons: list
    line_total: float
    discount_share: float = 0.0

    @property
    def total_amount(self) -> float:
        return max(0.0, cents(self.line_total - self.discount_share))


@dataclass
class Quote:
    lines: List[PricedLine]
    subtotal: float
    discount: float
    total: float


def quote(lines: List[PricedLine], discount_type=None, discount_value=0.0) -> Quote:
    """Price a cart selection; ``discount_type`` None means no voucher applies."""
    subtotal = cents(sum(line.line_total for line in lines))
    discount = compute_discount(subtotal, discount_type, discount_value) if discount_type else 0.0
    for line, share in zip(lines, allocate_discount([l.line_total for l in lines], discount)):
        line.discount_share = share
    return Quote(lines=lines, subtotal=subtotal, discount=discount, total=grand_total(subtotal, discount))
