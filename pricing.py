"""
Order pricing.

Shared by the API (authoritative totals) and the checkout client (amount sent
to the payment gateway). Amounts are computed in Decimal; items and tax are
rounded half-up to two places and the total is the exact sum of the stored
components.
"""
import os
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Mapping

FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "500"))
SHIPPING_FEE = Decimal(os.getenv("SHIPPING_FEE", "50"))
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.18"))

CENTS = Decimal("0.01")


def to_decimal(value) -> Decimal:
    # str() keeps 19.99 from turning into 19.989999...
    return value if isinstance(value, Decimal) else Decimal(str(value))


def unit_price(item: Mapping) -> Decimal:
    discount = item.get("discount_price")
    if discount is not None:
        return to_decimal(discount)
    return to_decimal(item["price"])


def price_order(
    line_items: Iterable[Mapping],
    free_shipping_threshold: Decimal = FREE_SHIPPING_THRESHOLD,
    shipping_fee: Decimal = SHIPPING_FEE,
    tax_rate: Decimal = TAX_RATE,
) -> Dict[str, float]:
    """Price a cart.

    Each line item needs ``price`` and ``quantity`` and may carry
    ``discount_price``, which wins over ``price`` when set.
    """
    items = sum((unit_price(item) * int(item["quantity"]) for item in line_items), Decimal("0"))
    items = items.quantize(CENTS, rounding=ROUND_HALF_UP)
    shipping = Decimal("0") if items > to_decimal(free_shipping_threshold) else to_decimal(shipping_fee)
    tax = (items * to_decimal(tax_rate)).quantize(CENTS, rounding=ROUND_HALF_UP)
    items_price, shipping_price, tax_price = float(items), float(shipping), float(tax)
    # summed as floats so the stored fields add up to the stored total
    return {
        "items_price": items_price,
        "shipping_price": shipping_price,
        "tax_price": tax_price,
        "total_price": items_price + shipping_price + tax_price,
    }
