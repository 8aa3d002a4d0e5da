"""
Post-commit usage counters.

Runs only after an order is stored. The order is what records the charge;
coupon ``used_count`` and flash-sale quantities are aggregates kept in step
on a best-effort basis. A failure here is logged and the order stands.
"""
from typing import Any, Dict

import structlog

from schemas import Order, OrderItem
from stores import OrderStore, PromotionStore

logger = structlog.get_logger(__name__)


class UsageAccountant:
    def __init__(self, promotions: PromotionStore, orders: OrderStore):
        self.promotions = promotions
        self.orders = orders

    def commit_usage(self, order: Order) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"already_committed": False, "coupon_counted": False, "flash_sale_lines": 0,
                                   "failures": 0}
        if order.id:
            try:
                claimed = self.orders.claim_usage(order.id)
            except Exception:
                logger.exception("usage_claim_failed", order_number=order.order_number)
                summary["failures"] += 1
                return summary
            if not claimed:
                summary["already_committed"] = True
                logger.info("usage_already_committed", order_number=order.order_number)
                return summary
        discounts = order.discounts

        if discounts.coupon_code:
            if self._count_coupon(order):
                summary["coupon_counted"] = True
            else:
                summary["failures"] += 1

        if discounts.flash_sale_id:
            for item in order.items:
                if item.flash_sale_discount <= 0:
                    continue
                if self._count_flash_sale_line(order, item):
                    summary["flash_sale_lines"] += 1
                else:
                    summary["failures"] += 1

        logger.info("usage_committed", order_number=order.order_number, **summary)
        return summary

    def _count_coupon(self, order: Order) -> bool:
        code = order.discounts.coupon_code
        try:
            counted = self.promotions.increment_coupon_usage(code)
        except Exception:
            logger.exception("coupon_usage_failed", order_number=order.order_number, coupon_code=code)
            return False
        if not counted:
            # usage limit already reached, or the coupon was deleted since checkout
            logger.warning("coupon_usage_not_counted", order_number=order.order_number, coupon_code=code)
        return counted

    def _count_flash_sale_line(self, order: Order, item: OrderItem) -> bool:
        sale_id = order.discounts.flash_sale_id
        try:
            sale = self.promotions.get_flash_sale(sale_id)
            entry = sale.get_entry(item.product_id, item.size, item.color) if sale else None
            if entry is None:
                logger.warning("flash_sale_entry_missing", order_number=order.order_number,
                               flash_sale_id=sale_id, sku=item.sku)
                return False
            # Whole-product entries are keyed (None, None).
            counted = self.promotions.increment_flash_sale_sold(
                sale_id, item.product_id, (entry.size, entry.color), item.quantity
            )
        except Exception:
            logger.exception("flash_sale_usage_failed", order_number=order.order_number,
                             flash_sale_id=sale_id, sku=item.sku)
            return False
        if not counted:
            logger.warning("flash_sale_usage_not_counted", order_number=order.order_number,
                           flash_sale_id=sale_id, sku=item.sku, quantity=item.quantity)
        return counted
