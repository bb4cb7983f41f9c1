"""Tests for the per-user cart."""

import pytest

import cart
import catalog
from errors import InsufficientStock, NotFound, ValidationError


class TestAddItem:
    def test_creates_cart_on_first_add(self, db, customer, make_product):
        product_id = make_product(price=100.0)

        result = cart.add_item(customer.id, product_id, 2)

        assert result["user"] == customer.id
        assert result["items"] == [{"product": product_id, "quantity": 2, "price": 100.0}]
        assert result["total_amount"] == 200.0
        assert result["total_items"] == 2
        assert db["cart"].count_documents({"user": customer.id}) == 1

    def test_uses_discount_price(self, db, customer, make_product):
        product_id = make_product(price=100.0, discount_price=80.0)

        result = cart.add_item(customer.id, product_id, 1)

        assert result["items"][0]["price"] == 80.0

    def test_merges_same_product(self, db, customer, make_product):
        product_id = make_product(stock=5)
        cart.add_item(customer.id, product_id, 2)

        result = cart.add_item(customer.id, product_id, 1)

        assert len(result["items"]) == 1
        assert result["items"][0]["quantity"] == 3

    def test_merged_quantity_checked_against_stock(self, db, customer, make_product):
        product_id = make_product(stock=3)
        cart.add_item(customer.id, product_id, 2)

        with pytest.raises(InsufficientStock):
            cart.add_item(customer.id, product_id, 2)

    def test_unavailable_product(self, db, customer, make_product):
        product_id = make_product(is_available=False)
        with pytest.raises(ValidationError):
            cart.add_item(customer.id, product_id, 1)

    def test_quantity_must_be_positive(self, db, customer, make_product):
        product_id = make_product()
        with pytest.raises(ValidationError):
            cart.add_item(customer.id, product_id, 0)

    def test_price_not_refreshed_after_add(self, db, customer, make_product):
        product_id = make_product(price=100.0)
        cart.add_item(customer.id, product_id, 1)

        catalog.update_product(product_id, {"price": 150.0})

        assert cart.get_cart(customer.id)["items"][0]["price"] == 100.0


class TestUpdateRemove:
    def test_update_quantity(self, db, customer, make_product):
        product_id = make_product(price=50.0, stock=10)
        cart.add_item(customer.id, product_id, 1)

        result = cart.update_item(customer.id, product_id, 4)

        assert result["items"][0]["quantity"] == 4
        assert result["total_amount"] == 200.0

    def test_update_missing_line(self, db, customer, make_product):
        first = make_product(name="One")
        second = make_product(name="Two")
        cart.add_item(customer.id, first, 1)

        with pytest.raises(NotFound):
            cart.update_item(customer.id, second, 1)

    def test_update_without_cart(self, db, customer, make_product):
        product_id = make_product()
        with pytest.raises(NotFound):
            cart.update_item(customer.id, product_id, 1)

    def test_remove_and_clear(self, db, customer, make_product):
        first = make_product(name="One", price=10.0)
        second = make_product(name="Two", price=20.0)
        cart.add_item(customer.id, first, 1)
        cart.add_item(customer.id, second, 2)

        result = cart.remove_item(customer.id, first)
        assert [i["product"] for i in result["items"]] == [second]
        assert result["total_amount"] == 40.0

        cart.clear(customer.id)
        emptied = cart.get_cart(customer.id)
        assert emptied["items"] == []
        assert emptied["total_amount"] == 0
        assert emptied["total_items"] == 0


def test_present_embeds_product_summary(db, customer, make_product):
    product_id = make_product(name="Volt E1", price=900.0, stock=4)
    raw = cart.add_item(customer.id, product_id, 1)

    shown = cart.present(raw)

    line = shown["items"][0]
    assert line["product"]["id"] == product_id
    assert line["product"]["name"] == "Volt E1"
    assert line["product"]["available_stock"] == 4
    assert "id" in shown and "_id" not in shown
