"""
Notification sink.

Business operations call ``emit`` and move on: a handler that raises is
logged and skipped, never surfaced to the checkout that triggered it.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from pymongo.database import Database

logger = structlog.get_logger(__name__)

INVENTORY_CHANGED = "inventory.changed"
INVENTORY_LOW_STOCK = "inventory.lowStock"
ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.statusChanged"
FLASH_SALE_STARTED = "flashSale.started"
FLASH_SALE_ENDED = "flashSale.ended"

Handler = Callable[[str, Dict[str, Any]], None]


class NotificationSink:
    def __init__(self, handlers: Optional[List[Handler]] = None):
        self.handlers: List[Handler] = list(handlers or [])

    def subscribe(self, handler: Handler) -> None:
        self.handlers.append(handler)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in self.handlers:
            try:
                handler(event, payload)
            except Exception:
                logger.warning("notification_delivery_failed", notification_event=event,
                               handler=getattr(handler, "__name__", type(handler).__name__), exc_info=True)


class LogNotificationHandler:
    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info("notification", notification_event=event, **payload)


class MongoNotificationHandler:
    """Keeps an event history in the ``notification`` collection."""

    def __init__(self, db: Database):
        self.collection = db["notification"]

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        self.collection.insert_one({"event": event, "payload": payload, "created_at": datetime.utcnow()})
