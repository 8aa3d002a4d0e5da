"""Shared pytest fixtures.

Every test gets a fresh in-memory MongoDB (mongomock) and stores bound to
it, plus a notification sink that records what was emitted.
"""

from __future__ import annotations

import logging
import sys
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Tuple

import mongomock
import pytest
import structlog

from config import Settings
from notifications import NotificationSink
from orders import OrderService
from schemas import Address, Coupon, FlashSale, FlashSaleEntry, Product, Variant
from stores import CartStore, CatalogStore, OrderStore, PromotionStore


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> None:
    """Send structlog output to stdout so capsys can see it."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [p for e, p in self.events if e == event]


class SerializedWrites:
    """Collection wrapper that applies each single-document write under one lock.

    MongoDB applies one update to one document atomically; mongomock does not,
    so threaded tests wrap the collection they race on.
    """

    def __init__(self, collection) -> None:
        self._collection = collection
        self._lock = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._collection, name)

    def find_one_and_update(self, *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            return self._collection.find_one_and_update(*args, **kwargs)

    def update_one(self, *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            return self._collection.update_one(*args, **kwargs)


@pytest.fixture
def serialize_writes():
    """Wrap ``store.<attr>`` (a collection) in SerializedWrites."""

    def _wrap(store: Any, attr: str) -> None:
        setattr(store, attr, SerializedWrites(getattr(store, attr)))

    return _wrap


def run_together(*targets: Callable[[], None]) -> None:
    """Start every target at the same moment on its own thread and wait for all of them."""
    barrier = threading.Barrier(len(targets))

    def _go(target):
        barrier.wait()
        target()

    threads = [threading.Thread(target=_go, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)


@pytest.fixture
def together():
    return run_together


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def settings() -> Settings:
    return Settings(DATABASE_URL=None, DATABASE_NAME=None)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def sink(recorder: EventRecorder) -> NotificationSink:
    return NotificationSink([recorder])


@pytest.fixture
def catalog(db, settings: Settings) -> CatalogStore:
    return CatalogStore(db, max_stock=settings.MAX_VARIANT_STOCK)


@pytest.fixture
def promotions(db) -> PromotionStore:
    return PromotionStore(db)


@pytest.fixture
def order_store(db) -> OrderStore:
    return OrderStore(db)


@pytest.fixture
def carts(db) -> CartStore:
    return CartStore(db)


@pytest.fixture
def service(catalog, promotions, order_store, carts, sink, settings) -> OrderService:
    return OrderService(catalog, promotions, order_store, carts, sink, settings)


@pytest.fixture
def make_product(catalog: CatalogStore):
    """Insert a one-variant product (size 9) and return it."""

    def _make(name: str = "Air Runner", price: float = 99.99, stock: int = 10, brand: str = "Stride",
              category: str = "running", color: str = "Black", sku: str = None,
              low_stock_threshold: int = 5) -> Product:
        product = Product(
            name=name,
            brand=brand,
            category=category,
            images=["https://img.example/runner.jpg"],
            variants=[Variant(size="9", color=color, sku=sku or f"{name[:3].upper()}-9-{color[:3].upper()}",
                              price=price, stock=stock, low_stock_threshold=low_stock_threshold)],
        )
        return catalog.insert_product(product)

    return _make


@pytest.fixture
def product(make_product) -> Product:
    return make_product()


@pytest.fixture
def address() -> Address:
    return Address(full_name="Jo Walker", line1="1 Main St", city="Springfield", state="IL",
                   postal_code="62701")


@pytest.fixture
def make_coupon(promotions: PromotionStore):
    def _make(code: str = "SAVE10", discount_type: str = "percentage", value: float = 10, **fields) -> Coupon:
        now = datetime.utcnow()
        fields.setdefault("valid_from", now - timedelta(days=1))
        fields.setdefault("valid_to", now + timedelta(days=1))
        return promotions.insert_coupon(Coupon(code=code, discount_type=discount_type, value=value, **fields))

    return _make


@pytest.fixture
def make_flash_sale(promotions: PromotionStore):
    def _make(entries: List[FlashSaleEntry], name: str = "Weekend Drop", priority: int = 1, **fields) -> FlashSale:
        now = datetime.utcnow()
        fields.setdefault("start_time", now - timedelta(hours=1))
        fields.setdefault("end_time", now + timedelta(hours=1))
        return promotions.insert_flash_sale(FlashSale(name=name, priority=priority, entries=entries, **fields))

    return _make
