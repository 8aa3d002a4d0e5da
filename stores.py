"""
Mongo-backed stores for the catalog, promotions, orders and carts.

Counters that more than one checkout can touch at once (variant stock,
flash-sale quantities, coupon usage) are only ever changed with a single
guarded update: the filter states the precondition and the update applies
the delta, so the precondition and the write succeed or fail together.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import InvalidCouponUpdate
from pricing import round_money
from schemas import Cart, Coupon, FlashSale, Order, Product, Refund, Variant, from_doc

logger = structlog.get_logger(__name__)

VariantKey = Tuple[Optional[str], Optional[str]]


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class CatalogStore:
    def __init__(self, db: Database, max_stock: int = 100_000):
        self.products = db["product"]
        self.max_stock = max_stock

    def get_product(self, product_id: str) -> Optional[Product]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        return from_doc(Product, self.products.find_one({"_id": oid}))

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        oids = [o for o in (to_object_id(p) for p in set(product_ids)) if o is not None]
        return {str(d["_id"]): from_doc(Product, d) for d in self.products.find({"_id": {"$in": oids}})}

    @staticmethod
    def get_variant(product: Product, size: str, color: str) -> Optional[Variant]:
        return product.get_variant(size, color)

    def insert_product(self, product: Product) -> Product:
        now = datetime.utcnow()
        doc = product.model_dump(exclude={"id"})
        doc.update({"created_at": now, "updated_at": now})
        product.id = str(self.products.insert_one(doc).inserted_id)
        return product

    def update_variant_stock(self, product_id: str, variant_id: str, delta: int,
                             require_active: bool = False) -> Optional[int]:
        """Apply ``delta`` to one variant's stock in a single conditional update.

        Decrements require ``stock >= -delta``; increments require the result
        to stay within ``max_stock``. Returns the new stock, or None when the
        guard (or the active check) did not match.
        """
        oid = to_object_id(product_id)
        if oid is None:
            return None
        match: Dict[str, Any] = {"id": variant_id}
        if delta < 0:
            match["stock"] = {"$gte": -delta}
        else:
            match["stock"] = {"$lte": self.max_stock - delta}
        query: Dict[str, Any] = {"_id": oid}
        if require_active:
            match["is_active"] = True
            query["is_active"] = True
        query["variants"] = {"$elemMatch": match}

        doc = self.products.find_one_and_update(
            query,
            {"$inc": {"variants.$.stock": delta}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        for v in doc.get("variants", []):
            if v.get("id") == variant_id:
                return v["stock"]
        return None

    def set_variant_stock(self, product_id: str, variant_id: str, stock: int) -> Optional[Product]:
        """Overwrite one variant's stock (admin restock or count correction)."""
        oid = to_object_id(product_id)
        if oid is None:
            return None
        res = self.products.update_one(
            {"_id": oid, "variants": {"$elemMatch": {"id": variant_id}}},
            {"$set": {"variants.$.stock": stock, "updated_at": datetime.utcnow()}},
        )
        if res.matched_count == 0:
            return None
        return self.get_product(product_id)

    def current_stock(self, product_id: str, variant_id: str) -> int:
        product = self.get_product(product_id)
        if product is None:
            return 0
        for v in product.variants:
            if v.id == variant_id:
                return v.stock
        return 0

    def list_active(self, limit: int = 100) -> List[Product]:
        return [from_doc(Product, d) for d in self.products.find({"is_active": True}).limit(limit)]


class PromotionStore:
    def __init__(self, db: Database):
        self.coupons = db["coupon"]
        self.flash_sales = db["flashsale"]

    # Coupons

    def find_coupon_by_code(self, code: str) -> Optional[Coupon]:
        return from_doc(Coupon, self.coupons.find_one({"code": code.strip().upper()}))

    def insert_coupon(self, coupon: Coupon) -> Coupon:
        coupon.id = str(self.coupons.insert_one(coupon.model_dump(exclude={"id"})).inserted_id)
        return coupon

    def get_coupon(self, coupon_id: str) -> Optional[Coupon]:
        oid = to_object_id(coupon_id)
        if oid is None:
            return None
        return from_doc(Coupon, self.coupons.find_one({"_id": oid}))

    def increment_coupon_usage(self, code: str) -> bool:
        """Count one use, only while ``used_count`` is below ``usage_limit`` (None is unlimited)."""
        res = self.coupons.update_one(
            {
                "code": code.strip().upper(),
                "$or": [
                    {"usage_limit": None},
                    {"$expr": {"$lt": ["$used_count", "$usage_limit"]}},
                ],
            },
            {"$inc": {"used_count": 1}},
        )
        return res.modified_count == 1

    def update_coupon(self, coupon_id: str, changes: Dict[str, Any]) -> Optional[Coupon]:
        """Apply admin edits. The code is frozen once the coupon has been used."""
        coupon = self.get_coupon(coupon_id)
        if coupon is None:
            return None
        changes = {k: v for k, v in changes.items() if k not in ("id", "used_count", "created_by")}
        updated = Coupon.model_validate({**coupon.model_dump(), **changes})
        if updated.valid_from >= updated.valid_to:
            raise InvalidCouponUpdate("Valid from date must be before valid to date", code=coupon.code)

        query: Dict[str, Any] = {"_id": to_object_id(coupon_id)}
        if updated.code != coupon.code:
            query["used_count"] = 0
        try:
            res = self.coupons.update_one(
                query, {"$set": updated.model_dump(exclude={"id", "used_count", "created_by"})}
            )
        except DuplicateKeyError as e:
            raise InvalidCouponUpdate(f"Coupon code {updated.code} already exists", code=updated.code) from e
        if res.matched_count == 0:
            raise InvalidCouponUpdate("Cannot change coupon code after it has been used", code=coupon.code)
        logger.info("coupon_updated", code=updated.code, fields=sorted(changes))
        return self.get_coupon(coupon_id)

    def delete_coupon(self, coupon_id: str) -> Optional[str]:
        """Delete an unused coupon; a used one is deactivated instead so past orders still resolve.

        Returns ``"deleted"``, ``"deactivated"``, or None when there is no such coupon.
        """
        oid = to_object_id(coupon_id)
        if oid is None:
            return None
        if self.coupons.delete_one({"_id": oid, "used_count": 0}).deleted_count:
            return "deleted"
        res = self.coupons.update_one({"_id": oid}, {"$set": {"is_active": False}})
        return "deactivated" if res.matched_count else None

    def deactivate_expired_coupons(self, now: datetime) -> int:
        res = self.coupons.update_many(
            {"is_active": True, "valid_to": {"$lt": now}},
            {"$set": {"is_active": False}},
        )
        return res.modified_count

    # Flash sales

    def insert_flash_sale(self, sale: FlashSale) -> FlashSale:
        sale.id = str(self.flash_sales.insert_one(sale.model_dump(exclude={"id"})).inserted_id)
        return sale

    def get_flash_sale(self, sale_id: str) -> Optional[FlashSale]:
        oid = to_object_id(sale_id)
        if oid is None:
            return None
        return from_doc(FlashSale, self.flash_sales.find_one({"_id": oid}))

    def find_active_flash_sales(self, now: datetime, product_id: Optional[str] = None) -> List[FlashSale]:
        """Sales whose window contains ``now``, highest priority first."""
        query: Dict[str, Any] = {"is_active": True, "start_time": {"$lte": now}, "end_time": {"$gte": now}}
        if product_id is not None:
            query["entries.product_id"] = product_id
        cursor = self.flash_sales.find(query).sort([("priority", DESCENDING), ("_id", 1)])
        return [from_doc(FlashSale, d) for d in cursor]

    def increment_flash_sale_sold(self, sale_id: str, product_id: str, variant_key: VariantKey,
                                  quantity: int) -> bool:
        """Count ``quantity`` units as sold on one sale entry.

        Limited entries take the units out of ``available_quantity`` only if
        enough remain; unlimited entries just count them.
        """
        oid = to_object_id(sale_id)
        if oid is None:
            return False
        size, color = variant_key
        entry = {"product_id": product_id, "size": size, "color": color}

        res = self.flash_sales.update_one(
            {"_id": oid, "entries": {"$elemMatch": {**entry, "available_quantity": {"$gte": quantity}}}},
            {"$inc": {"entries.$.available_quantity": -quantity, "entries.$.sold_quantity": quantity}},
        )
        if res.modified_count == 1:
            return True
        res = self.flash_sales.update_one(
            {"_id": oid, "entries": {"$elemMatch": {**entry, "available_quantity": None}}},
            {"$inc": {"entries.$.sold_quantity": quantity}},
        )
        return res.modified_count == 1

    def claim_started_flash_sales(self, now: datetime) -> List[FlashSale]:
        """Flag open sales as announced; returns only the ones this call flagged."""
        claimed = []
        query = {"is_active": True, "started_notified": {"$ne": True},
                 "start_time": {"$lte": now}, "end_time": {"$gte": now}}
        for doc in self.flash_sales.find(query):
            res = self.flash_sales.update_one(
                {"_id": doc["_id"], "started_notified": {"$ne": True}},
                {"$set": {"started_notified": True}},
            )
            if res.modified_count == 1:
                claimed.append(from_doc(FlashSale, {**doc, "started_notified": True}))
        return claimed

    def deactivate_ended_flash_sales(self, now: datetime) -> List[FlashSale]:
        ended = []
        for doc in self.flash_sales.find({"is_active": True, "end_time": {"$lt": now}}):
            res = self.flash_sales.update_one(
                {"_id": doc["_id"], "is_active": True},
                {"$set": {"is_active": False}},
            )
            if res.modified_count == 1:
                ended.append(from_doc(FlashSale, {**doc, "is_active": False}))
        return ended


class OrderStore:
    def __init__(self, db: Database):
        self.orders = db["order"]

    def insert(self, order: Order) -> Order:
        """Persist a new order. Totals are recomputed here, never taken from the caller.

        DuplicateKeyError on ``order_number`` propagates so the caller can retry.
        """
        order.recalculate_totals()
        order.created_at = order.updated_at = datetime.utcnow()
        order.id = str(self.orders.insert_one(order.to_document()).inserted_id)
        return order

    def get(self, order_id: str) -> Optional[Order]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        return from_doc(Order, self.orders.find_one({"_id": oid}))

    def list_for_user(self, user_id: str, status: Optional[str] = None, page: int = 1,
                      limit: int = 10) -> Tuple[List[Order], int]:
        filt: Dict[str, Any] = {"user_id": user_id}
        if status:
            filt["status"] = status
        total = self.orders.count_documents(filt)
        cursor = self.orders.find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        return [from_doc(Order, d) for d in cursor], total

    def count_user_coupon_uses(self, user_id: str, code: str) -> int:
        return self.orders.count_documents({
            "user_id": user_id,
            "discounts.coupon_code": code,
            "status": {"$nin": ["cancelled"]},
        })

    def coupon_stats(self, code: str, since: datetime) -> Dict[str, Any]:
        """Totals over every non-cancelled order that used ``code``, plus per-day figures from ``since``."""
        uses, discount, revenue = 0, 0.0, 0.0
        daily: Dict[str, Dict[str, Any]] = {}
        cursor = self.orders.find(
            {"discounts.coupon_code": code, "status": {"$nin": ["cancelled"]}},
            {"discounts.coupon_discount": 1, "total_amount": 1, "created_at": 1},
        )
        for doc in cursor:
            order_discount = doc["discounts"]["coupon_discount"]
            uses += 1
            discount += order_discount
            revenue += doc["total_amount"]
            if doc["created_at"] >= since:
                day = doc["created_at"].strftime("%Y-%m-%d")
                row = daily.setdefault(day, {"date": day, "uses": 0, "discount": 0.0, "revenue": 0.0})
                row["uses"] += 1
                row["discount"] = round_money(row["discount"] + order_discount)
                row["revenue"] = round_money(row["revenue"] + doc["total_amount"])
        return {
            "total_uses": uses,
            "total_discount": round_money(discount),
            "total_revenue": round_money(revenue),
            "average_order_value": round_money(revenue / uses) if uses else 0.0,
            "daily_usage": [daily[d] for d in sorted(daily)],
        }

    def transition_status(self, order_id: str, from_status: str, to_status: str,
                          fields: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        """Move an order from ``from_status`` to ``to_status`` only if it is still in ``from_status``."""
        oid = to_object_id(order_id)
        if oid is None:
            return None
        update = {"status": to_status, "updated_at": datetime.utcnow(), **(fields or {})}
        doc = self.orders.find_one_and_update(
            {"_id": oid, "status": from_status},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        return from_doc(Order, doc)

    def claim_usage(self, order_id: str) -> bool:
        """True exactly once per order; usage counters are bumped only by the claimant."""
        res = self.orders.update_one(
            {"_id": to_object_id(order_id), "usage_committed": {"$ne": True}},
            {"$set": {"usage_committed": True}},
        )
        return res.modified_count == 1

    def update_fields(self, order_id: str, fields: Dict[str, Any]) -> Optional[Order]:
        doc = self.orders.find_one_and_update(
            {"_id": to_object_id(order_id)},
            {"$set": {**fields, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return from_doc(Order, doc)

    def push_refund(self, order_id: str, refund: Refund, refunds_seen: int,
                    payment_status: str) -> Optional[Order]:
        """Append a refund unless another one landed since the caller read the order."""
        doc = self.orders.find_one_and_update(
            {"_id": to_object_id(order_id), "payment.refunds": {"$size": refunds_seen}},
            {
                "$push": {"payment.refunds": refund.model_dump()},
                "$set": {"payment.status": payment_status, "updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        return from_doc(Order, doc)


class CartStore:
    def __init__(self, db: Database):
        self.carts = db["cart"]

    def get(self, user_id: str) -> Optional[Cart]:
        return from_doc(Cart, self.carts.find_one({"user_id": user_id}))

    def get_or_create(self, user_id: str) -> Cart:
        return self.get(user_id) or Cart(user_id=user_id)

    def save(self, cart: Cart) -> Cart:
        cart.recalculate()
        doc = cart.model_dump(exclude={"id"})
        self.carts.replace_one({"user_id": cart.user_id}, doc, upsert=True)
        return cart

    def clear(self, user_id: str) -> None:
        self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "total_items": 0, "total_amount": 0.0, "last_modified": datetime.utcnow()}},
        )
