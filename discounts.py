"""
Discount resolution for a cart or checkout.

Two passes, in order:

1. Flash sales. Every sale open right now is priced against the whole cart.
   The sale with the largest total discount wins. Sales are visited in
   priority order, so on an exact tie the higher-priority (first seen) sale
   keeps the win.
2. Coupon (only when a code is given). The coupon is validated, then applied
   to the lines it covers, using each line's post-flash-sale unit price.

Both discounts stack. There is no combined cap beyond each one's own clamp.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog

from errors import CouponExpired, CouponLimitReached, CouponNotApplicable, InvalidCoupon, MinOrderNotMet
from pricing import round_money
from schemas import Coupon, FlashSale, Product
from stores import OrderStore, PromotionStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LineItem:
    product_id: str
    size: str
    color: str
    quantity: int
    price: Optional[float] = None
    original_price: Optional[float] = None
    sale_price: Optional[float] = None
    flash_sale_discount: float = 0.0


@dataclass
class DiscountBreakdown:
    coupon_code: Optional[str] = None
    coupon_discount: float = 0.0
    flash_sale_id: Optional[str] = None
    flash_sale_discount: float = 0.0
    applicable_amount: float = 0.0


@dataclass
class DiscountResolution:
    total_discount: float
    breakdown: DiscountBreakdown
    priced_items: List[LineItem] = field(default_factory=list)


def baseline_price(line: LineItem, product: Optional[Product]) -> float:
    """Explicit line price, else the variant's price, else the product's cheapest variant."""
    if line.price is not None:
        return line.price
    if product is None:
        return 0.0
    variant = product.get_variant(line.size, line.color)
    if variant is not None:
        return variant.price
    return product.min_price


def effective_price(line: LineItem, product: Optional[Product]) -> float:
    """Unit price after the flash-sale pass."""
    if line.flash_sale_discount > 0 and line.sale_price is not None:
        return line.sale_price
    return baseline_price(line, product)


class DiscountEngine:
    def __init__(self, promotions: PromotionStore, orders: OrderStore):
        self.promotions = promotions
        self.orders = orders

    def resolve(self, items: List[LineItem], products: Dict[str, Product], coupon_code: Optional[str] = None,
                user_id: Optional[str] = None, now: Optional[datetime] = None) -> DiscountResolution:
        now = now or datetime.utcnow()
        breakdown = DiscountBreakdown()

        sale, flash_discount, priced = self.apply_flash_sales(items, products, now)
        if sale is not None:
            breakdown.flash_sale_id = sale.id
            breakdown.flash_sale_discount = flash_discount

        if coupon_code:
            coupon, coupon_discount, applicable = self.apply_coupon(coupon_code, priced, products, user_id, now)
            breakdown.coupon_code = coupon.code
            breakdown.coupon_discount = coupon_discount
            breakdown.applicable_amount = applicable

        total = round_money(breakdown.flash_sale_discount + breakdown.coupon_discount)
        logger.info("discounts_resolved", flash_sale_id=breakdown.flash_sale_id,
                    flash_sale_discount=breakdown.flash_sale_discount, coupon_code=breakdown.coupon_code,
                    coupon_discount=breakdown.coupon_discount, total_discount=total)
        return DiscountResolution(total_discount=total, breakdown=breakdown, priced_items=priced)

    def apply_flash_sales(self, items: List[LineItem], products: Dict[str, Product],
                          now: datetime) -> Tuple[Optional[FlashSale], float, List[LineItem]]:
        best_sale: Optional[FlashSale] = None
        best_discount = 0.0
        best_items = list(items)

        for sale in self.promotions.find_active_flash_sales(now):
            discount, priced = self._price_under_sale(sale, items, products)
            if discount > best_discount:
                best_sale, best_discount, best_items = sale, discount, priced

        if best_sale is not None:
            logger.info("flash_sale_selected", flash_sale_id=best_sale.id, name=best_sale.name,
                        discount=best_discount)
        return best_sale, best_discount, best_items

    @staticmethod
    def _price_under_sale(sale: FlashSale, items: List[LineItem],
                          products: Dict[str, Product]) -> Tuple[float, List[LineItem]]:
        total = 0.0
        priced = []
        for line in items:
            product = products.get(line.product_id)
            entry = sale.get_entry(line.product_id, line.size, line.color) if product else None
            # Room is checked per line: two lines on one whole-product entry can together exceed
            # available_quantity. The sold-count increment then rejects the excess, which is logged.
            if entry is None or not entry.has_room_for(line.quantity):
                priced.append(line)
                continue
            original = baseline_price(line, product)
            discount = round_money((original - entry.sale_price) * line.quantity)
            if discount <= 0:
                priced.append(line)
                continue
            total += discount
            priced.append(replace(line, price=original, original_price=original,
                                  sale_price=entry.sale_price, flash_sale_discount=discount))
        return round_money(total), priced

    def apply_coupon(self, code: str, items: List[LineItem], products: Dict[str, Product],
                     user_id: Optional[str], now: datetime) -> Tuple[Coupon, float, float]:
        coupon = self.validate_coupon(code, user_id, now)

        qualifying = [
            line for line in items
            if line.product_id in products and coupon.applies_to(products[line.product_id])
        ]
        if not qualifying:
            raise CouponNotApplicable("Coupon is not applicable to any items in your order", code=coupon.code)

        applicable = round_money(sum(
            effective_price(line, products[line.product_id]) * line.quantity for line in qualifying
        ))
        if applicable < coupon.min_order_amount:
            raise MinOrderNotMet(
                f"Minimum order amount of ${coupon.min_order_amount:.2f} required for this coupon",
                min_order_amount=coupon.min_order_amount, applicable_amount=applicable,
            )
        return coupon, round_money(coupon.calculate_discount(applicable)), applicable

    def validate_coupon(self, code: str, user_id: Optional[str], now: datetime) -> Coupon:
        coupon = self.promotions.find_coupon_by_code(code)
        if coupon is None:
            raise InvalidCoupon("Invalid coupon code", code=code.strip().upper())
        if not coupon.is_currently_valid(now):
            raise CouponExpired("Coupon is not valid or has expired", code=coupon.code)
        if user_id and coupon.user_usage_limit:
            used = self.orders.count_user_coupon_uses(user_id, coupon.code)
            if used >= coupon.user_usage_limit:
                raise CouponLimitReached("You have reached the usage limit for this coupon",
                                         code=coupon.code, used=used, limit=coupon.user_usage_limit)
        return coupon

    def preview_coupon(self, code: str, items: List[LineItem], products: Dict[str, Product],
                       user_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict:
        """Check a coupon against a cart without touching any counters."""
        resolution = self.resolve(items, products, coupon_code=code, user_id=user_id, now=now)
        b = resolution.breakdown
        return {
            "valid": True,
            "code": b.coupon_code,
            "coupon_discount": b.coupon_discount,
            "flash_sale_discount": b.flash_sale_discount,
            "applicable_amount": b.applicable_amount,
            "total_discount": resolution.total_discount,
        }

    def best_product_discount(self, product: Product, size: Optional[str] = None, color: Optional[str] = None,
                              now: Optional[datetime] = None) -> Optional[Dict]:
        """Best flash price currently offered on one product, for product pages."""
        now = now or datetime.utcnow()
        variant = product.get_variant(size, color) if size and color else None
        original = variant.price if variant else product.min_price
        if original <= 0:
            return None

        best = None
        for sale in self.promotions.find_active_flash_sales(now, product_id=product.id):
            entry = sale.get_entry(product.id, size, color)
            if entry is None or not entry.has_room_for(1):
                continue
            amount = round_money(original - entry.sale_price)
            percentage = round(amount / original * 100, 2)
            if amount > 0 and (best is None or percentage > best["percentage"]):
                best = {
                    "type": "flash_sale",
                    "flash_sale_id": sale.id,
                    "flash_sale_name": sale.name,
                    "original_price": original,
                    "sale_price": entry.sale_price,
                    "discount_amount": amount,
                    "percentage": percentage,
                    "available_quantity": entry.available_quantity,
                    "end_time": sale.end_time,
                }
        return best
