import pytest
from pymongo.errors import ServerSelectionTimeoutError

import orders
from discounts import LineItem
from errors import (
    EmptyCart,
    InsufficientStock,
    InvalidCoupon,
    InvalidStatusTransition,
    OrderNotFound,
    PersistenceFailure,
    RefundExceedsBalance,
)
from notifications import ORDER_CREATED, ORDER_STATUS_CHANGED
from schemas import CartItem, FlashSaleEntry


def stock_of(catalog, product):
    return catalog.current_stock(product.id, product.variants[0].id)


def buy(product, quantity=1):
    return [LineItem(product.id, "9", "Black", quantity)]


class TestCreateOrder:
    def test_checkout_totals(self, service, catalog, product, address):
        order = service.create_order("u1", address, items=buy(product, 2))

        assert order.id
        assert order.order_number.startswith("ORD-")
        assert order.subtotal == 199.98
        assert order.tax == 16.0
        assert order.shipping_cost == 5.99
        assert order.discount_amount == 0
        assert order.total_amount == 221.97
        assert order.status == "pending"
        assert stock_of(catalog, product) == 8

    def test_items_are_snapshotted(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        (item,) = order.items
        assert item.product_snapshot.name == "Air Runner"
        assert item.product_snapshot.image == "https://img.example/runner.jpg"
        assert item.sku == product.variants[0].sku
        assert item.price == 99.99

    def test_order_is_persisted(self, service, order_store, product, address):
        order = service.create_order("u1", address, items=buy(product))
        stored = order_store.get(order.id)
        assert stored.total_amount == order.total_amount
        assert stored.usage_committed is True

    def test_emits_order_created(self, service, product, address, recorder):
        order = service.create_order("u1", address, items=buy(product))
        (payload,) = recorder.named(ORDER_CREATED)
        assert payload["order_number"] == order.order_number

    def test_checkout_from_cart_clears_it(self, service, carts, product, address):
        cart = carts.get_or_create("u1")
        cart.items.append(CartItem(product_id=product.id, size="9", color="Black",
                                   sku=product.variants[0].sku, price=99.99, quantity=1))
        carts.save(cart)

        order = service.create_order("u1", address)
        assert len(order.items) == 1
        assert carts.get("u1").items == []

    def test_empty_cart(self, service, address):
        with pytest.raises(EmptyCart):
            service.create_order("u1", address)

    def test_insufficient_stock_before_reserving(self, service, catalog, product, address):
        with pytest.raises(InsufficientStock) as exc:
            service.create_order("u1", address, items=buy(product, 11))
        assert exc.value.available == 10
        assert stock_of(catalog, product) == 10

    def test_discounts_flow_into_totals(self, service, make_product, make_flash_sale, make_coupon, address,
                                        promotions):
        product = make_product(price=100.0)
        sale = make_flash_sale([FlashSaleEntry(product_id=product.id, sale_price=80.0, available_quantity=5)])
        make_coupon("SAVE10", "percentage", 10)

        order = service.create_order("u1", address, items=buy(product), coupon_code="SAVE10")
        assert order.discounts.flash_sale_discount == 20.0
        assert order.discounts.coupon_discount == 8.0
        assert order.discount_amount == 28.0
        # 100 + 8.00 tax + 5.99 shipping - 28
        assert order.total_amount == 85.99

        assert promotions.find_coupon_by_code("SAVE10").used_count == 1
        entry = promotions.get_flash_sale(sale.id).entries[0]
        assert entry.sold_quantity == 1
        assert entry.available_quantity == 4

    def test_persistence_failure_releases_every_reservation(self, service, catalog, order_store, make_product,
                                                            address, monkeypatch):
        a = make_product(name="Alpha", stock=5)
        b = make_product(name="Bravo", stock=5)

        def down(order):
            raise ServerSelectionTimeoutError("no servers")

        monkeypatch.setattr(order_store, "insert", down)
        with pytest.raises(PersistenceFailure):
            service.create_order("u1", address, items=buy(a, 2) + buy(b, 3))
        assert stock_of(catalog, a) == 5
        assert stock_of(catalog, b) == 5

    def test_coupon_failure_releases_reservations(self, service, catalog, product, address):
        with pytest.raises(InvalidCoupon):
            service.create_order("u1", address, items=buy(product, 2), coupon_code="GHOST")
        assert stock_of(catalog, product) == 10

    def test_order_number_collision_is_retried(self, service, db, product, address, monkeypatch):
        db["order"].create_index("order_number", unique=True)
        numbers = iter(["ORD-1-001", "ORD-1-001", "ORD-1-002"])
        monkeypatch.setattr(orders, "generate_order_number", lambda: next(numbers))

        first = service.create_order("u1", address, items=buy(product))
        second = service.create_order("u1", address, items=buy(product))
        assert first.order_number == "ORD-1-001"
        assert second.order_number == "ORD-1-002"


class TestStatus:
    def test_happy_path(self, service, product, address, recorder):
        order = service.create_order("u1", address, items=buy(product))
        for status in ("confirmed", "processing", "shipped", "delivered"):
            order = service.update_status(order.id, status)
        assert order.status == "delivered"
        assert order.confirmed_at and order.shipped_at and order.delivered_at
        assert [p["status"] for p in recorder.named(ORDER_STATUS_CHANGED)] == [
            "confirmed", "processing", "shipped", "delivered",
        ]

    def test_tracking_is_merged(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        service.update_status(order.id, "confirmed")
        service.update_status(order.id, "processing")
        shipped = service.update_status(order.id, "shipped", tracking={"carrier": "UPS", "tracking_number": "1Z"})
        assert shipped.tracking.carrier == "UPS"
        assert shipped.tracking.tracking_number == "1Z"

    def test_cannot_skip_states(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        with pytest.raises(InvalidStatusTransition):
            service.update_status(order.id, "shipped")

    def test_unknown_status(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        with pytest.raises(InvalidStatusTransition):
            service.update_status(order.id, "lost")

    def test_missing_order(self, service):
        with pytest.raises(OrderNotFound):
            service.get_order("0123456789abcdef01234567")

    def test_other_users_order_is_hidden(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        with pytest.raises(OrderNotFound):
            service.get_order(order.id, user_id="u2")


class TestCancel:
    def test_cancel_restocks(self, service, catalog, product, address):
        order = service.create_order("u1", address, items=buy(product, 2))
        assert stock_of(catalog, product) == 8

        cancelled = service.cancel_order(order.id, user_id="u1", reason="changed my mind")
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert "changed my mind" in cancelled.admin_notes
        assert stock_of(catalog, product) == 10

    def test_second_cancel_does_not_restock_twice(self, service, catalog, product, address):
        order = service.create_order("u1", address, items=buy(product, 2))
        service.cancel_order(order.id)
        with pytest.raises(InvalidStatusTransition):
            service.cancel_order(order.id)
        assert stock_of(catalog, product) == 10

    def test_shipped_orders_cannot_be_cancelled(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        for status in ("confirmed", "processing", "shipped"):
            service.update_status(order.id, status)
        with pytest.raises(InvalidStatusTransition):
            service.cancel_order(order.id)

    def test_staff_cancel_through_status_update(self, service, catalog, product, address):
        order = service.create_order("u1", address, items=buy(product, 3))
        cancelled = service.update_status(order.id, "cancelled", admin_notes="fraud check")
        assert cancelled.status == "cancelled"
        assert "staff" in cancelled.admin_notes
        assert stock_of(catalog, product) == 10


class TestPayments:
    def test_payment_confirms_pending_order(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        paid = service.record_payment(order.id, user_id="u1")
        assert paid.status == "confirmed"
        assert paid.payment.status == "completed"
        assert paid.payment.transaction_id.startswith("DUMMY-")

    def test_cannot_pay_twice(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        service.record_payment(order.id)
        with pytest.raises(InvalidStatusTransition):
            service.record_payment(order.id)

    def test_partial_then_full_refund(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        service.record_payment(order.id)

        partial = service.refund(order.id, amount=50.0, reason="scuffed box")
        assert partial.payment.status == "partially_refunded"
        assert partial.payment.refunded_amount == 50.0

        full = service.refund(order.id)
        assert full.payment.status == "refunded"
        assert full.payment.refunded_amount == order.total_amount

    def test_refund_cannot_exceed_balance(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        service.record_payment(order.id)
        with pytest.raises(RefundExceedsBalance) as exc:
            service.refund(order.id, amount=order.total_amount + 1)
        assert exc.value.details["refundable"] == order.total_amount

    def test_unpaid_order_cannot_be_refunded(self, service, product, address):
        order = service.create_order("u1", address, items=buy(product))
        with pytest.raises(InvalidStatusTransition):
            service.refund(order.id, amount=1.0)
