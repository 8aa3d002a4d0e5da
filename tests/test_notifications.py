from structlog.testing import capture_logs

from discounts import LineItem
from notifications import (
    INVENTORY_CHANGED,
    ORDER_CREATED,
    LogNotificationHandler,
    MongoNotificationHandler,
    NotificationSink,
)


def test_failing_handler_is_skipped(recorder):
    def broken(event, payload):
        raise RuntimeError("smtp down")

    sink = NotificationSink([broken, recorder])
    with capture_logs() as logs:
        sink.emit(ORDER_CREATED, {"order_number": "ORD-1-001"})

    assert recorder.events == [(ORDER_CREATED, {"order_number": "ORD-1-001"})]
    (entry,) = [e for e in logs if e["event"] == "notification_delivery_failed"]
    assert entry["notification_event"] == ORDER_CREATED
    assert entry["handler"] == "broken"


def test_checkout_survives_broken_handler(service, sink, product, address):
    def broken(event, payload):
        raise RuntimeError("socket closed")

    sink.subscribe(broken)
    order = service.create_order("u1", address, items=[LineItem(product.id, "9", "Black", 1)])
    assert order.id


def test_mongo_handler_keeps_history(db):
    sink = NotificationSink([MongoNotificationHandler(db)])
    sink.emit(INVENTORY_CHANGED, {"sku": "AIR-9-BLA", "stock": 4})

    doc = db["notification"].find_one()
    assert doc["event"] == INVENTORY_CHANGED
    assert doc["payload"]["stock"] == 4


def test_log_handler_writes_event():
    with capture_logs() as logs:
        LogNotificationHandler()(ORDER_CREATED, {"order_number": "ORD-1-001"})
    assert logs == [{"event": "notification", "log_level": "info", "notification_event": ORDER_CREATED,
                     "order_number": "ORD-1-001"}]
