"""Money helpers: cent rounding, shipping table, tax and order totals."""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable

CENT = Decimal("0.01")


def round_money(amount: float) -> float:
    """Half-up rounding to cents (``round()`` would use banker's rounding)."""
    return float(Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP))


def total_weight(items: Iterable, unit_weight: float = 1.0) -> float:
    return sum(item.quantity * unit_weight for item in items)


def shipping_cost(method: str, items: Iterable, rates: Dict[str, float], weight_threshold: float = 5.0,
                  surcharge_per_lb: float = 2.0, unit_weight: float = 1.0) -> float:
    """Flat rate per method plus a per-pound surcharge above the threshold.

    Unknown methods fall back to the standard rate.
    """
    cost = rates.get(method, rates["standard"])
    weight = total_weight(items, unit_weight)
    if weight > weight_threshold:
        cost += (weight - weight_threshold) * surcharge_per_lb
    return round_money(cost)


def tax(subtotal: float, rate: float) -> float:
    return round_money(subtotal * rate)


def order_total(subtotal: float, tax_amount: float, shipping: float, discount: float) -> float:
    return max(0.0, round_money(subtotal + tax_amount + shipping - discount))


def refundable_balance(total_amount: float, refunded: float) -> float:
    return max(0.0, round_money(total_amount - refunded))
