"""
Cart and order money arithmetic.

Amounts are whole currency units (৳). Tax is 5% rounded half-up to a whole
unit; delivery is free strictly above 1000.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple, Union

from schemas import CartTotals

TAX_RATE = Decimal("0.05")
FREE_DELIVERY_THRESHOLD = 1000
DELIVERY_FEE = 50
LOYALTY_POINT_VALUE = 100  # 1 point per ৳100 spent

Number = Union[int, float, Decimal]


def round_half_up(value: Number, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP)


def _number(value: Decimal) -> Union[int, float]:
    return int(value) if value == value.to_integral_value() else float(value)


def calculate_tax(subtotal: Number) -> int:
    return int(round_half_up(Decimal(str(subtotal)) * TAX_RATE))


def calculate_delivery_fee(subtotal: Number) -> int:
    return 0 if subtotal > FREE_DELIVERY_THRESHOLD else DELIVERY_FEE


def calculate_totals(lines: Iterable[Tuple[Number, int]]) -> CartTotals:
    """Totals for (unit price, quantity) pairs of available products."""
    subtotal = Decimal(0)
    item_count = 0
    for price, quantity in lines:
        subtotal += Decimal(str(price)) * quantity
        item_count += quantity

    tax = calculate_tax(subtotal)
    delivery_fee = calculate_delivery_fee(subtotal)
    return CartTotals(
        subtotal=_number(subtotal),
        tax=tax,
        delivery_fee=delivery_fee,
        total=_number(subtotal + tax + delivery_fee),
        item_count=item_count,
    )


def loyalty_points_for(total: Number) -> int:
    return math.floor(Decimal(str(total)) / LOYALTY_POINT_VALUE)
