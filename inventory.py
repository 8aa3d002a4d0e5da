"""
Stock reservation and release for product variants.

A reservation is a guarded decrement on one variant, done by the catalog
store in a single update, so two checkouts racing for the last pair cannot
both win. Releases put the units back and are retried, because a release that
never lands leaks stock.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List

import structlog
from pymongo.errors import PyMongoError

from errors import InsufficientStock, InvalidStockLevel, ProductUnavailable, VariantUnavailable
from notifications import INVENTORY_CHANGED, INVENTORY_LOW_STOCK, NotificationSink
from schemas import Product, Variant
from stores import CatalogStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Reservation:
    product_id: str
    variant_id: str
    size: str
    color: str
    sku: str
    quantity: int


def locate(catalog: CatalogStore, product_id: str, size: str, color: str):
    """Load an active product and its active (size, color) variant or raise."""
    product = catalog.get_product(product_id)
    if product is None or not product.is_active:
        raise ProductUnavailable(f"Product {product_id} is not available", product_id=product_id)
    variant = catalog.get_variant(product, size, color)
    if variant is None or not variant.is_active:
        raise VariantUnavailable(f"Variant {size} {color} is not available",
                                 product_id=product_id, size=size, color=color)
    return product, variant


class InventoryEngine:
    def __init__(self, catalog: CatalogStore, sink: NotificationSink, release_retries: int = 3):
        self.catalog = catalog
        self.sink = sink
        self.release_retries = release_retries

    def reserve(self, product_id: str, size: str, color: str, quantity: int) -> Reservation:
        product, variant = locate(self.catalog, product_id, size, color)
        new_stock = self.catalog.update_variant_stock(product_id, variant.id, -quantity, require_active=True)
        if new_stock is None:
            # Lost the race or never had enough; report what is there now.
            product, variant = locate(self.catalog, product_id, size, color)
            raise InsufficientStock(
                f"Only {variant.stock} items available for {product.name} - {color} (Size {size})",
                available=variant.stock, product_id=product_id, size=size, color=color,
            )
        logger.info("stock_reserved", product_id=product_id, sku=variant.sku, quantity=quantity, stock=new_stock)
        self._announce(product, variant, new_stock)
        return Reservation(product_id, variant.id, size, color, variant.sku, quantity)

    def release(self, reservation: Reservation) -> bool:
        """Return reserved units to stock. False means every attempt failed (logged)."""
        for attempt in range(1, self.release_retries + 1):
            try:
                new_stock = self.catalog.update_variant_stock(
                    reservation.product_id, reservation.variant_id, reservation.quantity
                )
            except PyMongoError:
                logger.warning("stock_release_retry", sku=reservation.sku, attempt=attempt, exc_info=True)
                continue
            if new_stock is None:
                # Variant gone or the release would exceed the ceiling; retrying cannot help.
                logger.error("stock_release_rejected", product_id=reservation.product_id,
                             sku=reservation.sku, quantity=reservation.quantity)
                return False
            logger.info("stock_released", sku=reservation.sku, quantity=reservation.quantity, stock=new_stock)
            product = self.catalog.get_product(reservation.product_id)
            if product is not None:
                variant = next((v for v in product.variants if v.id == reservation.variant_id), None)
                if variant is not None:
                    self._announce(product, variant, new_stock)
            return True
        logger.error("stock_release_failed", product_id=reservation.product_id, sku=reservation.sku,
                     quantity=reservation.quantity, attempts=self.release_retries)
        return False

    def release_all(self, reservations: Iterable[Reservation]) -> List[Reservation]:
        """Release in reverse order; returns the reservations that could not be released."""
        failed = []
        for r in reversed(list(reservations)):
            if not self.release(r):
                failed.append(r)
        return failed

    def set_stock(self, product_id: str, variant_id: str, stock: int) -> int:
        """Admin override of a variant's stock; announced like any other stock change."""
        if stock < 0 or stock > self.catalog.max_stock:
            raise InvalidStockLevel(f"Stock must be between 0 and {self.catalog.max_stock}",
                                    product_id=product_id, variant_id=variant_id, stock=stock)
        product = self.catalog.set_variant_stock(product_id, variant_id, stock)
        variant = next((v for v in product.variants if v.id == variant_id), None) if product else None
        if variant is None:
            raise VariantUnavailable("Product or variant not found", product_id=product_id, variant_id=variant_id)
        logger.info("stock_set", product_id=product_id, sku=variant.sku, stock=variant.stock)
        self._announce(product, variant, variant.stock)
        return variant.stock

    def bulk_set_stock(self, updates: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Apply each update independently; one bad row does not stop the rest."""
        results = []
        for update in updates:
            try:
                stock = self.set_stock(update["product_id"], update["variant_id"], update["stock"])
            except (InvalidStockLevel, VariantUnavailable) as e:
                results.append({**update, "success": False, "error": e.message})
            else:
                results.append({**update, "success": True, "stock": stock})
        return results

    def check_availability(self, items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        report = []
        for item in items:
            entry: Dict[str, Any] = {"product_id": item["product_id"], "size": item["size"], "color": item["color"],
                                     "requested_quantity": item["quantity"]}
            try:
                _, variant = locate(self.catalog, item["product_id"], item["size"], item["color"])
            except (ProductUnavailable, VariantUnavailable) as e:
                entry.update(available=False, reason=e.message)
            else:
                ok = variant.stock >= item["quantity"]
                entry.update(sku=variant.sku, current_stock=variant.stock, available=ok,
                             reason=None if ok else "Insufficient stock")
            report.append(entry)
        return report

    def low_stock_report(self) -> List[Dict[str, Any]]:
        low = []
        for product in self.catalog.list_active(limit=1000):
            for v in product.variants:
                if v.is_active and v.stock <= v.low_stock_threshold:
                    low.append({
                        "product_id": product.id, "product_name": product.name, "brand": product.brand,
                        "size": v.size, "color": v.color, "sku": v.sku,
                        "stock": v.stock, "threshold": v.low_stock_threshold,
                    })
        return low

    def _announce(self, product: Product, variant: Variant, stock: int) -> None:
        payload = {
            "product_id": product.id,
            "size": variant.size,
            "color": variant.color,
            "sku": variant.sku,
            "stock": stock,
            "timestamp": datetime.utcnow().isoformat(),
        }
        self.sink.emit(INVENTORY_CHANGED, payload)
        if stock <= variant.low_stock_threshold:
            self.sink.emit(INVENTORY_LOW_STOCK, {**payload, "product_name": product.name,
                                                 "threshold": variant.low_stock_threshold})


class ReservationLedger:
    """The reservations one checkout holds, so a failure can undo exactly those."""

    def __init__(self, engine: InventoryEngine):
        self.engine = engine
        self.reservations: List[Reservation] = []

    def reserve(self, product_id: str, size: str, color: str, quantity: int) -> Reservation:
        r = self.engine.reserve(product_id, size, color, quantity)
        self.reservations.append(r)
        return r

    def release_all(self) -> List[Reservation]:
        failed = self.engine.release_all(self.reservations)
        self.reservations = []
        return failed
