"""
Order assembly, status changes, cancellation and refunds.

Checkout steps: resolve the lines (explicit items or the user's cart),
validate every line, reserve stock, resolve discounts, price shipping and
tax, snapshot the items, then persist. Any failure after the first
reservation releases every reservation this checkout made before the error
reaches the caller. Usage counters, cart clearing and notifications happen
only after the order is stored, and none of them can fail the checkout.
"""
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from discounts import DiscountEngine, LineItem
from errors import (
    CommerceError,
    EmptyCart,
    InsufficientStock,
    InvalidStatusTransition,
    OrderNotFound,
    PersistenceFailure,
    RefundExceedsBalance,
)
from inventory import InventoryEngine, Reservation, ReservationLedger, locate
from notifications import ORDER_CREATED, ORDER_STATUS_CHANGED, NotificationSink
from pricing import refundable_balance, round_money, shipping_cost, tax
from schemas import ORDER_STATUSES, Address, Order, OrderDiscounts, OrderItem, Product, ProductSnapshot, Refund
from stores import CartStore, CatalogStore, OrderStore, PromotionStore
from usage import UsageAccountant

logger = structlog.get_logger(__name__)

TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": {"returned"},
    "cancelled": set(),
    "returned": set(),
}
TIMESTAMP_FIELDS = {
    "confirmed": "confirmed_at",
    "processing": "processing_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
    "returned": "returned_at",
}


def generate_order_number() -> str:
    """ORD-<epoch ms>-<3 random digits>. Uniqueness is enforced by the index, not by this."""
    return f"ORD-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"


class OrderService:
    def __init__(self, catalog: CatalogStore, promotions: PromotionStore, orders: OrderStore, carts: CartStore,
                 sink: NotificationSink, settings: Settings):
        self.catalog = catalog
        self.promotions = promotions
        self.orders = orders
        self.carts = carts
        self.sink = sink
        self.settings = settings
        self.inventory = InventoryEngine(catalog, sink, release_retries=settings.RELEASE_RETRIES)
        self.discounts = DiscountEngine(promotions, orders)
        self.usage = UsageAccountant(promotions, orders)

    @classmethod
    def from_db(cls, db: Database, settings: Settings, sink: NotificationSink) -> "OrderService":
        return cls(
            catalog=CatalogStore(db, max_stock=settings.MAX_VARIANT_STOCK),
            promotions=PromotionStore(db),
            orders=OrderStore(db),
            carts=CartStore(db),
            sink=sink,
            settings=settings,
        )

    # Checkout

    def create_order(self, user_id: str, shipping_address: Address, shipping_method: str = "standard",
                     items: Optional[List[LineItem]] = None, coupon_code: Optional[str] = None,
                     customer_notes: Optional[str] = None, is_gift: bool = False,
                     gift_message: Optional[str] = None, now: Optional[datetime] = None) -> Order:
        from_cart = not items
        lines = self._source_lines(user_id, items)
        products, lines = self._validate_lines(lines)

        ledger = ReservationLedger(self.inventory)
        try:
            for line in lines:
                ledger.reserve(line.product_id, line.size, line.color, line.quantity)
            order = self._assemble(user_id, lines, products, shipping_address, shipping_method, coupon_code,
                                   now, customer_notes=customer_notes, is_gift=is_gift, gift_message=gift_message)
            order = self._persist(order)
        except Exception as e:
            failed = ledger.release_all()
            logger.warning("checkout_rolled_back", user_id=user_id, error=str(e),
                           unreleased=[r.sku for r in failed])
            if isinstance(e, PyMongoError):
                raise PersistenceFailure("Failed to create order") from e
            raise

        logger.info("order_created", order_number=order.order_number, user_id=user_id,
                    total_amount=order.total_amount, items=len(order.items))
        self._after_commit(order, from_cart)
        return order

    def _source_lines(self, user_id: str, items: Optional[List[LineItem]]) -> List[LineItem]:
        if items:
            return list(items)
        cart = self.carts.get(user_id)
        if cart is None or not cart.items:
            raise EmptyCart("No items to order")
        return [LineItem(i.product_id, i.size, i.color, i.quantity) for i in cart.items]

    def _validate_lines(self, lines: List[LineItem]):
        """Check every line up front and price it at the variant's current price."""
        products: Dict[str, Product] = {}
        priced = []
        for line in lines:
            product, variant = locate(self.catalog, line.product_id, line.size, line.color)
            if variant.stock < line.quantity:
                raise InsufficientStock(
                    f"Only {variant.stock} items available for {product.name} - {line.color} (Size {line.size})",
                    available=variant.stock, product_id=line.product_id, size=line.size, color=line.color,
                )
            products[line.product_id] = product
            priced.append(LineItem(line.product_id, line.size, line.color, line.quantity, price=variant.price))
        return products, priced

    def _assemble(self, user_id: str, lines: List[LineItem], products: Dict[str, Product],
                  shipping_address: Address, shipping_method: str, coupon_code: Optional[str],
                  now: Optional[datetime], **extra: Any) -> Order:
        resolution = self.discounts.resolve(lines, products, coupon_code=coupon_code, user_id=user_id, now=now)

        items = []
        for line in resolution.priced_items:
            product = products[line.product_id]
            variant = product.get_variant(line.size, line.color)
            items.append(OrderItem(
                product_id=line.product_id,
                product_snapshot=ProductSnapshot(name=product.name, brand=product.brand,
                                                 image=product.primary_image),
                size=line.size,
                color=line.color,
                sku=variant.sku,
                quantity=line.quantity,
                price=line.price,
                total_price=round_money(line.price * line.quantity),
                original_price=line.original_price,
                sale_price=line.sale_price,
                flash_sale_discount=line.flash_sale_discount,
            ))

        s = self.settings
        subtotal = round_money(sum(i.total_price for i in items))
        b = resolution.breakdown
        order = Order(
            order_number=generate_order_number(),
            user_id=user_id,
            items=items,
            tax=tax(subtotal, s.TAX_RATE),
            shipping_cost=shipping_cost(shipping_method, items, s.SHIPPING_RATES, s.SHIPPING_WEIGHT_THRESHOLD,
                                        s.SHIPPING_SURCHARGE_PER_LB, s.UNIT_WEIGHT_LB),
            discounts=OrderDiscounts(coupon_code=b.coupon_code, coupon_discount=b.coupon_discount,
                                     flash_sale_id=b.flash_sale_id, flash_sale_discount=b.flash_sale_discount),
            shipping_address=shipping_address,
            shipping_method=shipping_method,
            **extra,
        )
        return order.recalculate_totals()

    def _persist(self, order: Order) -> Order:
        for attempt in range(1, self.settings.ORDER_NUMBER_RETRIES + 1):
            try:
                return self.orders.insert(order)
            except DuplicateKeyError:
                logger.warning("order_number_collision", order_number=order.order_number, attempt=attempt)
                order.order_number = generate_order_number()
        raise PersistenceFailure("Could not allocate a unique order number")

    def _after_commit(self, order: Order, from_cart: bool) -> None:
        if from_cart:
            try:
                self.carts.clear(order.user_id)
            except PyMongoError:
                logger.exception("cart_clear_failed", user_id=order.user_id, order_number=order.order_number)
        self.usage.commit_usage(order)
        self.sink.emit(ORDER_CREATED, {
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "total_amount": order.total_amount,
            "item_count": len(order.items),
        })

    # Lookups

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        order = self.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound("Order not found")
        return order

    # Status machine

    def update_status(self, order_id: str, status: str, admin_notes: Optional[str] = None,
                      tracking: Optional[Dict[str, Any]] = None) -> Order:
        if status not in ORDER_STATUSES:
            raise InvalidStatusTransition(f"Invalid status '{status}'", target=status)
        if status == "cancelled":
            return self.cancel_order(order_id, reason=admin_notes, cancelled_by="staff")

        order = self.get_order(order_id)
        if status not in TRANSITIONS[order.status]:
            raise InvalidStatusTransition(f"Cannot move order from {order.status} to {status}",
                                          current=order.status, target=status)
        fields: Dict[str, Any] = {TIMESTAMP_FIELDS[status]: datetime.utcnow()}
        if admin_notes:
            fields["admin_notes"] = admin_notes
        if tracking:
            fields["tracking"] = {**order.tracking.model_dump(), **tracking}

        updated = self.orders.transition_status(order_id, order.status, status, fields)
        if updated is None:
            raise InvalidStatusTransition("Order status changed concurrently; reload and retry",
                                          current=order.status, target=status)
        logger.info("order_status_changed", order_number=updated.order_number, previous=order.status, status=status)
        self._emit_status(updated, f"Your order is now {status}")
        return updated

    def cancel_order(self, order_id: str, user_id: Optional[str] = None, reason: Optional[str] = None,
                     cancelled_by: str = "customer") -> Order:
        """Cancel and put the order's units back in stock.

        Only the caller that wins the status compare-and-set releases stock,
        so a double cancel cannot restock twice.
        """
        order = self.get_order(order_id, user_id=user_id)
        if "cancelled" not in TRANSITIONS[order.status]:
            raise InvalidStatusTransition("Order cannot be cancelled at this stage",
                                          current=order.status, target="cancelled")
        note = f"Cancelled by {cancelled_by}. Reason: {reason or 'No reason provided'}"
        updated = self.orders.transition_status(order_id, order.status, "cancelled", {
            "cancelled_at": datetime.utcnow(),
            "admin_notes": note,
        })
        if updated is None:
            raise InvalidStatusTransition("Order cannot be cancelled at this stage",
                                          current=order.status, target="cancelled")

        self._restock(updated)
        logger.info("order_cancelled", order_number=updated.order_number, previous=order.status, by=cancelled_by)
        self._emit_status(updated, "Your order has been cancelled")
        return updated

    def _restock(self, order: Order) -> None:
        for item in order.items:
            product = self.catalog.get_product(item.product_id)
            variant = product.get_variant(item.size, item.color) if product else None
            if variant is None:
                logger.error("restock_variant_missing", order_number=order.order_number, sku=item.sku)
                continue
            self.inventory.release(Reservation(item.product_id, variant.id, item.size, item.color,
                                               item.sku, item.quantity))

    def _emit_status(self, order: Order, message: str) -> None:
        self.sink.emit(ORDER_STATUS_CHANGED, {
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "status": order.status,
            "message": message,
            "tracking": order.tracking.model_dump(),
        })

    # Payments

    def record_payment(self, order_id: str, user_id: Optional[str] = None, method: str = "dummy") -> Order:
        """Mark the order paid (dummy processor) and confirm it if still pending."""
        order = self.get_order(order_id, user_id=user_id)
        if order.status in ("cancelled", "returned") or order.payment.status != "pending":
            raise InvalidStatusTransition("Order cannot be paid in its current state",
                                          current=order.status, target="paid")
        self.orders.update_fields(order_id, {
            "payment.method": method,
            "payment.status": "completed",
            "payment.transaction_id": f"{method.upper()}-{secrets.token_hex(8)}",
            "payment.paid_at": datetime.utcnow(),
        })
        logger.info("payment_recorded", order_number=order.order_number, method=method)
        if order.status == "pending":
            return self.update_status(order_id, "confirmed")
        return self.get_order(order_id)

    def refund(self, order_id: str, amount: Optional[float] = None, reason: Optional[str] = None) -> Order:
        order = self.get_order(order_id)
        if order.payment.status not in ("completed", "partially_refunded"):
            raise InvalidStatusTransition("Cannot refund order that is not paid",
                                          current=order.payment.status, target="refunded")
        refunded = order.payment.refunded_amount
        balance = refundable_balance(order.total_amount, refunded)
        amount = round_money(amount if amount is not None else balance)
        if amount <= 0 or amount > balance:
            raise RefundExceedsBalance(f"Refund amount cannot exceed the remaining ${balance:.2f}",
                                       refundable=balance)

        status = "refunded" if round_money(refunded + amount) >= order.total_amount else "partially_refunded"
        updated = self.orders.push_refund(order_id, Refund(amount=amount, reason=reason or "Admin refund"),
                                          refunds_seen=len(order.payment.refunds), payment_status=status)
        if updated is None:
            raise CommerceError("Another refund was recorded at the same time; reload and retry")
        logger.info("refund_recorded", order_number=order.order_number, amount=amount, payment_status=status)
        return updated
