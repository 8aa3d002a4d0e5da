import pytest
from pymongo.errors import AutoReconnect

from errors import InsufficientStock, InvalidStockLevel, ProductUnavailable, VariantUnavailable
from inventory import InventoryEngine, Reservation, ReservationLedger
from notifications import INVENTORY_CHANGED, INVENTORY_LOW_STOCK
from schemas import Product, Variant


@pytest.fixture
def engine(catalog, sink):
    return InventoryEngine(catalog, sink)


def stock_of(catalog, product):
    return catalog.current_stock(product.id, product.variants[0].id)


class TestReserve:
    def test_decrements_stock(self, engine, catalog, product):
        r = engine.reserve(product.id, "9", "Black", 3)
        assert r.quantity == 3
        assert r.sku == product.variants[0].sku
        assert stock_of(catalog, product) == 7

    def test_emits_inventory_changed(self, engine, product, recorder):
        engine.reserve(product.id, "9", "Black", 2)
        (payload,) = recorder.named(INVENTORY_CHANGED)
        assert payload["stock"] == 8
        assert payload["sku"] == product.variants[0].sku
        assert recorder.named(INVENTORY_LOW_STOCK) == []

    def test_low_stock_event_at_threshold(self, engine, product, recorder):
        engine.reserve(product.id, "9", "Black", 5)
        (payload,) = recorder.named(INVENTORY_LOW_STOCK)
        assert payload["stock"] == 5
        assert payload["threshold"] == 5

    def test_insufficient_stock_reports_available(self, engine, catalog, product):
        with pytest.raises(InsufficientStock) as exc:
            engine.reserve(product.id, "9", "Black", 11)
        assert exc.value.available == 10
        assert stock_of(catalog, product) == 10

    def test_last_unit_goes_to_one_buyer(self, engine, catalog, make_product):
        product = make_product(name="Last Pair", stock=1)
        engine.reserve(product.id, "9", "Black", 1)
        with pytest.raises(InsufficientStock) as exc:
            engine.reserve(product.id, "9", "Black", 1)
        assert exc.value.available == 0
        assert stock_of(catalog, product) == 0

    def test_simultaneous_reservations_for_last_unit(self, engine, catalog, make_product, serialize_writes,
                                                     together):
        product = make_product(name="Last Pair", stock=1)
        serialize_writes(catalog, "products")
        won, lost = [], []

        def buy():
            try:
                won.append(engine.reserve(product.id, "9", "Black", 1))
            except InsufficientStock as e:
                lost.append(e)

        together(buy, buy)
        assert len(won) == 1
        assert len(lost) == 1
        assert lost[0].available == 0
        assert stock_of(catalog, product) == 0

    def test_unknown_product(self, engine):
        with pytest.raises(ProductUnavailable):
            engine.reserve("0123456789abcdef01234567", "9", "Black", 1)

    def test_malformed_product_id(self, engine):
        with pytest.raises(ProductUnavailable):
            engine.reserve("not-an-id", "9", "Black", 1)

    def test_unknown_variant(self, engine, product):
        with pytest.raises(VariantUnavailable):
            engine.reserve(product.id, "12", "Black", 1)

    def test_inactive_product(self, engine, db, product):
        db["product"].update_one({}, {"$set": {"is_active": False}})
        with pytest.raises(ProductUnavailable):
            engine.reserve(product.id, "9", "Black", 1)


class TestRelease:
    def test_restores_stock(self, engine, catalog, product):
        r = engine.reserve(product.id, "9", "Black", 4)
        assert engine.release(r) is True
        assert stock_of(catalog, product) == 10

    def test_release_over_ceiling_is_rejected(self, catalog, sink, make_product):
        catalog.max_stock = 10
        engine = InventoryEngine(catalog, sink)
        product = make_product(stock=10)
        v = product.variants[0]
        assert engine.release(Reservation(product.id, v.id, "9", "Black", v.sku, 1)) is False
        assert stock_of(catalog, product) == 10

    def test_retries_transient_failures(self, engine, catalog, product, monkeypatch):
        r = engine.reserve(product.id, "9", "Black", 2)
        real = catalog.update_variant_stock
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise AutoReconnect("primary stepped down")
            return real(*args, **kwargs)

        monkeypatch.setattr(catalog, "update_variant_stock", flaky)
        assert engine.release(r) is True
        assert calls["n"] == 2
        assert stock_of(catalog, product) == 10

    def test_gives_up_after_retries(self, engine, catalog, product, monkeypatch):
        r = engine.reserve(product.id, "9", "Black", 2)

        def down(*args, **kwargs):
            raise AutoReconnect("no primary")

        monkeypatch.setattr(catalog, "update_variant_stock", down)
        assert engine.release(r) is False

    def test_ledger_releases_everything_it_holds(self, engine, catalog, make_product):
        a = make_product(name="Alpha", stock=5)
        b = make_product(name="Bravo", stock=5)
        ledger = ReservationLedger(engine)
        ledger.reserve(a.id, "9", "Black", 2)
        ledger.reserve(b.id, "9", "Black", 3)
        assert ledger.release_all() == []
        assert stock_of(catalog, a) == 5
        assert stock_of(catalog, b) == 5
        assert ledger.reservations == []


class TestSetStock:
    @pytest.fixture
    def two_variants(self, catalog):
        return catalog.insert_product(Product(
            name="Court Classic", brand="Stride", category="tennis",
            variants=[
                Variant(size="9", color="White", sku="CC-9-WHI", price=80.0, stock=4),
                Variant(size="10", color="White", sku="CC-10-WHI", price=80.0, stock=4),
            ],
        ))

    def test_sets_only_the_named_variant(self, engine, catalog, two_variants, recorder):
        nine, ten = two_variants.variants
        assert engine.set_stock(two_variants.id, ten.id, 25) == 25
        assert catalog.current_stock(two_variants.id, ten.id) == 25
        assert catalog.current_stock(two_variants.id, nine.id) == 4
        (payload,) = recorder.named(INVENTORY_CHANGED)
        assert payload["sku"] == "CC-10-WHI"
        assert payload["stock"] == 25

    def test_zero_is_announced_as_low_stock(self, engine, two_variants, recorder):
        engine.set_stock(two_variants.id, two_variants.variants[0].id, 0)
        (payload,) = recorder.named(INVENTORY_LOW_STOCK)
        assert payload["stock"] == 0

    def test_negative_stock_is_rejected(self, engine, catalog, two_variants):
        variant = two_variants.variants[0]
        with pytest.raises(InvalidStockLevel):
            engine.set_stock(two_variants.id, variant.id, -1)
        assert catalog.current_stock(two_variants.id, variant.id) == 4

    def test_unknown_variant(self, engine, two_variants):
        with pytest.raises(VariantUnavailable):
            engine.set_stock(two_variants.id, "no-such-variant", 5)

    def test_bulk_reports_each_row(self, engine, two_variants):
        nine, ten = two_variants.variants
        results = engine.bulk_set_stock([
            {"product_id": two_variants.id, "variant_id": nine.id, "stock": 7},
            {"product_id": two_variants.id, "variant_id": ten.id, "stock": -3},
        ])
        assert results[0]["success"] is True
        assert results[0]["stock"] == 7
        assert results[1]["success"] is False
        assert "between 0" in results[1]["error"]


class TestReports:
    def test_check_availability(self, engine, product):
        report = engine.check_availability([
            {"product_id": product.id, "size": "9", "color": "Black", "quantity": 2},
            {"product_id": product.id, "size": "9", "color": "Black", "quantity": 20},
            {"product_id": product.id, "size": "13", "color": "Black", "quantity": 1},
        ])
        assert report[0]["available"] is True
        assert report[0]["current_stock"] == 10
        assert report[1]["available"] is False
        assert report[1]["reason"] == "Insufficient stock"
        assert report[2]["available"] is False

    def test_low_stock_report(self, engine, make_product):
        make_product(name="Plenty", stock=50)
        scarce = make_product(name="Scarce", stock=2)
        report = engine.low_stock_report()
        assert [row["product_id"] for row in report] == [scarce.id]
        assert report[0]["stock"] == 2
