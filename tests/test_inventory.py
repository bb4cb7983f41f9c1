"""Tests for the stock reservation ledger."""

import pytest

import config
import database
import inventory
from errors import InsufficientStock, NotFound, StockConflict, ValidationError


def counters(product_id):
    product = database.find_by_id("product", product_id)
    return product["stock"], product["reserved_stock"]


def history(db, product_id):
    return db["inventory"].find_one({"product": product_id})["stock_history"]


class TestReserve:
    def test_reserve_holds_units(self, db, make_product):
        product_id = make_product(stock=5)

        inventory.reserve(product_id, 2, reference="SON-1")

        assert counters(product_id) == (5, 2)
        entry = history(db, product_id)[-1]
        assert entry["type"] == "reserved"
        assert entry["quantity"] == 2
        assert entry["previous_stock"] == 5
        assert entry["new_stock"] == 3
        assert entry["reference"] == "SON-1"

    def test_reserve_more_than_available(self, db, make_product):
        product_id = make_product(name="City Glide", stock=3)
        inventory.reserve(product_id, 2)

        with pytest.raises(InsufficientStock) as exc_info:
            inventory.reserve(product_id, 2)

        assert exc_info.value.available == 1
        assert "City Glide" in exc_info.value.message
        assert counters(product_id) == (3, 2)

    def test_reserve_zero_rejected(self, db, make_product):
        product_id = make_product()
        with pytest.raises(ValidationError):
            inventory.reserve(product_id, 0)

    def test_unknown_product(self, db):
        with pytest.raises(NotFound):
            inventory.reserve("64b7f0c2a1b2c3d4e5f60718", 1)


class TestReleaseCommit:
    def test_release_clamps_at_zero(self, db, make_product):
        product_id = make_product(stock=5)
        inventory.reserve(product_id, 2)

        inventory.release(product_id, 5)

        assert counters(product_id) == (5, 0)
        assert history(db, product_id)[-1]["quantity"] == -2

    def test_commit_moves_reserved_to_sold(self, db, make_product):
        product_id = make_product(stock=5)
        inventory.reserve(product_id, 2)

        inventory.commit(product_id, 2, reference="SON-1")

        assert counters(product_id) == (3, 0)
        record = db["inventory"].find_one({"product": product_id})
        assert record["total_stock"] == 3
        assert record["last_sold"] is not None
        assert record["stock_history"][-1]["type"] == "out"

    def test_commit_needs_reservation(self, db, make_product):
        product_id = make_product(stock=5)
        inventory.reserve(product_id, 1)

        with pytest.raises(ValidationError):
            inventory.commit(product_id, 2)
        assert counters(product_id) == (5, 1)

    def test_restock(self, db, make_product):
        product_id = make_product(stock=5)
        inventory.reserve(product_id, 2)
        inventory.commit(product_id, 2)

        inventory.restock(product_id, 2, reference="SON-1")

        assert counters(product_id) == (5, 0)
        assert history(db, product_id)[-1]["type"] == "returned"


class TestManualMovements:
    def test_add_stock(self, db, make_product):
        product_id = make_product(stock=2)

        record = inventory.add_stock(product_id, 10, "Supplier delivery",
                                     location={"warehouse": "Pune-1", "shelf": "A3"})

        assert counters(product_id) == (12, 0)
        assert record["total_stock"] == 12
        assert record["available_stock"] == 12
        assert record["location"]["warehouse"] == "Pune-1"
        assert record["last_restocked"] is not None
        assert record["stock_history"][-1]["type"] == "in"

    def test_remove_stock_keeps_reserved_units(self, db, make_product):
        product_id = make_product(stock=5)
        inventory.reserve(product_id, 3)

        with pytest.raises(ValidationError):
            inventory.remove_stock(product_id, 3, "Damaged")

        record = inventory.remove_stock(product_id, 2, "Damaged")
        assert record["total_stock"] == 3
        assert record["reserved_stock"] == 3
        assert record["available_stock"] == 0

    def test_remove_stock_rejects_unknown_type(self, db, make_product):
        product_id = make_product()
        with pytest.raises(ValidationError):
            inventory.remove_stock(product_id, 1, type_="reserved")

    def test_adjust_cannot_go_below_reserved(self, db, make_product):
        product_id = make_product(stock=5)
        inventory.reserve(product_id, 3)

        with pytest.raises(ValidationError):
            inventory.adjust(product_id, 2)

        record = inventory.adjust(product_id, 8, "Stock count")
        assert record["total_stock"] == 8
        entry = record["stock_history"][-1]
        assert entry["type"] == "adjustment"
        assert entry["quantity"] == 3


class TestReserveAll:
    def test_all_or_nothing(self, db, make_product):
        frame = make_product(name="Frame", stock=5)
        wheels = make_product(name="Wheels", stock=1)

        with pytest.raises(InsufficientStock):
            inventory.reserve_all([(frame, 2), (wheels, 3)], reference="SON-9")

        assert counters(frame) == (5, 0)
        assert counters(wheels) == (1, 0)
        types = [e["type"] for e in history(db, frame)]
        assert types[-2:] == ["reserved", "released"]


class TestConcurrentUpdates:
    def test_stale_read_is_retried_and_revalidated(self, db, make_product, monkeypatch):
        product_id = make_product(stock=5)
        stale = database.find_by_id("product", product_id)
        # Another checkout takes 4 units after our read.
        inventory.reserve(product_id, 4, reference="SON-A")

        real_load = inventory._load_product
        reads = []

        def load(pid):
            reads.append(pid)
            return dict(stale) if len(reads) == 1 else real_load(pid)

        monkeypatch.setattr(inventory, "_load_product", load)

        with pytest.raises(InsufficientStock):
            inventory.reserve(product_id, 3, reference="SON-B")

        assert len(reads) == 2
        assert counters(product_id) == (5, 4)

    def test_retries_exhausted(self, db, make_product, monkeypatch):
        product_id = make_product(stock=5)
        stale = database.find_by_id("product", product_id)
        inventory.reserve(product_id, 1)
        monkeypatch.setattr(config, "STOCK_UPDATE_RETRIES", 3)

        reads = []

        def load(pid):
            reads.append(pid)
            return dict(stale)

        monkeypatch.setattr(inventory, "_load_product", load)

        with pytest.raises(StockConflict) as exc_info:
            inventory.reserve(product_id, 1)

        assert exc_info.value.status_code == 409
        assert len(reads) == 3
        assert counters(product_id) == (5, 1)

    def test_counters_stay_consistent(self, db, make_product):
        product_id = make_product(stock=6)
        inventory.reserve(product_id, 4)
        inventory.commit(product_id, 2)
        inventory.release(product_id, 1)
        inventory.add_stock(product_id, 3)
        inventory.remove_stock(product_id, 2)
        with pytest.raises(InsufficientStock):
            inventory.reserve(product_id, 10)

        stock, reserved = counters(product_id)
        assert 0 <= reserved <= stock
        assert (stock, reserved) == (5, 1)
        record = db["inventory"].find_one({"product": product_id})
        assert (record["total_stock"], record["reserved_stock"]) == (stock, reserved)


class TestReadProjections:
    def test_low_stock_and_summary(self, db, make_product):
        make_product(name="Roadster", price=200.0, stock=10, category="road")
        scarce = make_product(name="Kiddo", price=50.0, stock=2, category="kids")
        inventory.reserve(scarce, 1)

        low = inventory.low_stock_items()
        assert [i["product"]["name"] for i in low] == ["Kiddo"]

        totals = inventory.summary()
        assert totals["total_products"] == 2
        assert totals["total_stock"] == 12
        assert totals["reserved_stock"] == 1
        assert totals["available_stock"] == 11
        assert totals["total_inventory_value"] == 2100.0
        assert totals["low_stock_count"] == 1
        assert {c["name"] for c in totals["category_breakdown"]} == {"road", "kids"}

    def test_list_inventory_search_and_paging(self, db, make_product):
        for i in range(3):
            make_product(name=f"Hybrid {i}", stock=20)
        make_product(name="Mountain King", stock=20)

        items, meta = inventory.list_inventory(page=1, limit=2, search="hybrid")

        assert len(items) == 2
        assert meta == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    def test_update_settings_mirrors_threshold(self, db, make_product):
        product_id = make_product(stock=8)

        record = inventory.update_settings(product_id, low_stock_threshold=10)

        assert record["low_stock_threshold"] == 10
        assert record["is_low_stock"] is True
        assert database.find_by_id("product", product_id)["low_stock_threshold"] == 10
