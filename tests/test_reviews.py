"""Tests for product and delivery reviews."""

import pytest

import database
import delivery
import orders
import reviews
from errors import DuplicateReview, Forbidden, ValidationError


def product_rating(product_id):
    return database.find_by_id("product", product_id)["ratings"]


def partner_rating(partner_id):
    return database.find_by_id("user", partner_id)["rating"]


@pytest.fixture
def completed_order(db, admin, customer, partner, make_product, place_order):
    order = place_order(customer.id, (make_product(name="Roadster"), 1))
    order_id = str(order["_id"])
    orders.mark_paid(order_id, "pay_1")
    record = delivery.assign(order_id, partner.id, admin)
    delivery.confirm(str(record["_id"]), partner)
    return orders.get_order(order_id)


class TestRounding:
    @pytest.mark.parametrize("value,expected", [(4.25, 4.3), (4.35, 4.4), (13 / 3, 4.3), (4.0, 4.0)])
    def test_half_up_to_one_decimal(self, value, expected):
        assert reviews.round_rating(value) == expected


class TestProductReviews:
    def test_first_review_sets_rating(self, db, customer, make_product):
        product_id = make_product()

        review = reviews.create_product_review(customer, product_id, 4, "Smooth ride")

        assert review["type"] == "product"
        assert review["is_verified_purchase"] is False
        assert product_rating(product_id) == {"average": 4, "count": 1}

    def test_average_over_reviews(self, db, customer, other_customer, make_product):
        product_id = make_product()
        reviews.create_product_review(customer, product_id, 4, "Good")
        reviews.create_product_review(other_customer, product_id, 5, "Great")

        assert product_rating(product_id) == {"average": 4.5, "count": 2}

    def test_duplicate_review(self, db, customer, make_product):
        product_id = make_product()
        reviews.create_product_review(customer, product_id, 4, "Good")

        with pytest.raises(DuplicateReview):
            reviews.create_product_review(customer, product_id, 2, "Changed my mind")
        assert product_rating(product_id) == {"average": 4, "count": 1}

    def test_verified_purchase(self, db, customer, completed_order):
        product_id = completed_order["items"][0]["product"]

        review = reviews.create_product_review(customer, product_id, 5, "Worth it")

        assert review["is_verified_purchase"] is True
        assert review["order"] == str(completed_order["_id"])

    def test_update_recomputes(self, db, customer, make_product):
        product_id = make_product()
        review = reviews.create_product_review(customer, product_id, 2, "Meh")

        reviews.update_review(str(review["_id"]), customer, rating=5)

        assert product_rating(product_id)["average"] == 5

    def test_update_validation(self, db, customer, other_customer, make_product):
        review = reviews.create_product_review(customer, make_product(), 3, "Fine")

        with pytest.raises(Forbidden):
            reviews.update_review(str(review["_id"]), other_customer, rating=1)
        with pytest.raises(ValidationError):
            reviews.update_review(str(review["_id"]), customer, rating=6)

    def test_delete_resets_rating(self, db, customer, admin, make_product):
        product_id = make_product()
        review = reviews.create_product_review(customer, product_id, 3, "Fine")

        reviews.delete_review(str(review["_id"]), admin)

        assert product_rating(product_id) == {"average": 0, "count": 0}

    def test_rejected_reviews_excluded(self, db, customer, other_customer, make_product):
        product_id = make_product()
        reviews.create_product_review(customer, product_id, 5, "Love it")
        low = reviews.create_product_review(other_customer, product_id, 1, "Spam spam")

        reviews.moderate(str(low["_id"]), False)

        assert product_rating(product_id) == {"average": 5, "count": 1}
        assert [r["id"] for r in reviews.pending_reviews()] == [str(low["_id"])]
        items, meta, stats = reviews.product_reviews(product_id)
        assert meta["total"] == 1
        assert stats == [{"rating": 5, "count": 1}]
        assert items[0]["user"]["name"] == "Asha Rao"

    def test_helpful(self, db, customer, make_product):
        review = reviews.create_product_review(customer, make_product(), 4, "Good")
        assert reviews.mark_helpful(str(review["_id"]))["helpful_count"] == 1


class TestDeliveryReviews:
    def test_rates_partner(self, db, customer, partner, completed_order):
        review = reviews.create_delivery_review(customer, str(completed_order["_id"]), 5, "On time")

        assert review["delivery_partner"] == partner.id
        assert review["is_verified_purchase"] is True
        assert partner_rating(partner.id) == {"average": 5, "count": 1}

    def test_once_per_order(self, db, customer, completed_order):
        reviews.create_delivery_review(customer, str(completed_order["_id"]), 5, "On time")
        with pytest.raises(DuplicateReview):
            reviews.create_delivery_review(customer, str(completed_order["_id"]), 3, "Again")

    def test_order_must_be_delivered(self, db, customer, make_product, place_order):
        order = place_order(customer.id, (make_product(), 1))
        with pytest.raises(ValidationError):
            reviews.create_delivery_review(customer, str(order["_id"]), 5, "Too early")

    def test_only_the_buyer(self, db, other_customer, completed_order):
        with pytest.raises(Forbidden):
            reviews.create_delivery_review(other_customer, str(completed_order["_id"]), 1, "Not mine")

    def test_partner_reviews_visibility(self, db, customer, partner, other_partner, completed_order):
        reviews.create_delivery_review(customer, str(completed_order["_id"]), 4, "Polite")

        items, meta, _ = reviews.partner_reviews(partner.id, partner)
        assert meta["total"] == 1
        with pytest.raises(Forbidden):
            reviews.partner_reviews(partner.id, other_partner)
        with pytest.raises(Forbidden):
            reviews.partner_reviews(partner.id, customer)
