"""
Review aggregator

Product and delivery reviews live in one collection, told apart by
``type``. After every change the reviewed target's rating is recomputed
from all approved reviews (last write wins under concurrent changes).
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from auth import Principal
from catalog import get_product
from database import (create_document, find_by_id, get_db, get_documents, now, oid, paginate,
                      serialize_doc)
from errors import DuplicateReview, Forbidden, NotFound, ValidationError
from orders import get_order
from schemas import DeliveryReview, ProductReview

logger = logging.getLogger(__name__)

REVIEWABLE_ORDER_STATUSES = ("delivered", "completed")

SORT_OPTIONS = {
    "newest": [("created_at", -1)],
    "highest": [("rating", -1)],
    "lowest": [("rating", 1)],
    "helpful": [("helpful_count", -1)],
}


def round_rating(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _target(review: dict):
    """(collection, id, rating field, review filter) for what the review rates."""
    if review["type"] == "product":
        return "product", review["product"], "ratings", {"type": "product", "product": review["product"]}
    return ("user", review["delivery_partner"], "rating",
            {"type": "delivery", "delivery_partner": review["delivery_partner"]})


def recompute_rating(review: dict) -> dict:
    collection, target_id, field, query = _target(review)
    ratings = [r["rating"] for r in get_db()["review"].find({**query, "is_approved": True},
                                                           {"rating": 1})]
    average = round_rating(sum(ratings) / len(ratings)) if ratings else 0
    get_db()[collection].update_one(
        {"_id": oid(target_id)},
        {"$set": {f"{field}.average": average, f"{field}.count": len(ratings)}},
    )
    return {"average": average, "count": len(ratings)}


def get_review(review_id: str) -> dict:
    review = find_by_id("review", review_id)
    if not review:
        raise NotFound("Review", review_id)
    return review


def _insert(review) -> dict:
    try:
        review_id = create_document("review", review)
    except DuplicateKeyError:
        raise DuplicateReview("You have already reviewed this")
    created = get_review(review_id)
    recompute_rating(created)
    return created


def create_product_review(principal: Principal, product_id: str, rating: int, comment: str,
                          title: Optional[str] = None, order_id: Optional[str] = None) -> dict:
    get_product(product_id)
    existing = get_db()["review"].find_one({"type": "product", "product": product_id,
                                             "user": principal.id})
    if existing:
        raise DuplicateReview("You have already reviewed this product")

    purchase = get_db()["order"].find_one({
        "user": principal.id,
        "items.product": product_id,
        "status": {"$in": list(REVIEWABLE_ORDER_STATUSES)},
    })
    review = ProductReview(
        product=product_id,
        user=principal.id,
        rating=rating,
        title=title,
        comment=comment,
        is_verified_purchase=purchase is not None,
        order=order_id or (str(purchase["_id"]) if purchase else None),
    )
    logger.info("Product review on %s by %s (verified=%s)", product_id, principal.id,
                review.is_verified_purchase)
    return _insert(review)


def create_delivery_review(principal: Principal, order_id: str, rating: int, comment: str,
                           title: Optional[str] = None) -> dict:
    if not order_id:
        raise ValidationError("Order ID is required for delivery reviews")
    order = get_order(order_id)
    if order["user"] != principal.id:
        raise Forbidden("Not authorized to review this delivery")
    if order["status"] not in REVIEWABLE_ORDER_STATUSES:
        raise ValidationError("Order must be delivered to leave a review")
    partner_id = (order.get("delivery") or {}).get("partner")
    if not partner_id:
        raise ValidationError("No delivery partner assigned to this order")
    if get_db()["review"].find_one({"type": "delivery", "order": order_id}):
        raise DuplicateReview("You have already reviewed this delivery")

    review = DeliveryReview(
        order=order_id,
        delivery_partner=partner_id,
        user=principal.id,
        rating=rating,
        title=title,
        comment=comment,
        is_verified_purchase=True,
    )
    logger.info("Delivery review for order %s (partner %s)", order_id, partner_id)
    return _insert(review)


def update_review(review_id: str, principal: Principal, rating: Optional[int] = None,
                  title: Optional[str] = None, comment: Optional[str] = None) -> dict:
    review = get_review(review_id)
    if review["user"] != principal.id:
        raise Forbidden()
    if rating is not None and not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")

    fields = {"updated_at": now()}
    if rating is not None:
        fields["rating"] = rating
    if title:
        fields["title"] = title
    if comment:
        fields["comment"] = comment
    get_db()["review"].update_one({"_id": review["_id"]}, {"$set": fields})

    updated = get_review(review_id)
    recompute_rating(updated)
    return updated


def delete_review(review_id: str, principal: Principal):
    review = get_review(review_id)
    if review["user"] != principal.id and not principal.is_admin:
        raise Forbidden()
    get_db()["review"].delete_one({"_id": review["_id"]})
    recompute_rating(review)


def moderate(review_id: str, is_approved: bool) -> dict:
    review = get_review(review_id)
    get_db()["review"].update_one({"_id": review["_id"]},
                                  {"$set": {"is_approved": is_approved, "updated_at": now()}})
    updated = get_review(review_id)
    recompute_rating(updated)
    logger.info("Review %s %s", review_id, "approved" if is_approved else "rejected")
    return updated


def mark_helpful(review_id: str) -> dict:
    review = get_review(review_id)
    get_db()["review"].update_one({"_id": review["_id"]}, {"$inc": {"helpful_count": 1}})
    return get_review(review_id)


def _with_reviewer(reviews):
    out = []
    for review in reviews:
        item = serialize_doc(review)
        user = None
        if ObjectId.is_valid(review["user"]):
            user = get_db()["user"].find_one({"_id": ObjectId(review["user"])}, {"name": 1})
        item["user"] = {"id": review["user"], "name": user.get("name") if user else None}
        out.append(item)
    return out


def _rating_stats(query: dict):
    counts = {}
    for r in get_db()["review"].find(query, {"rating": 1}):
        counts[r["rating"]] = counts.get(r["rating"], 0) + 1
    return [{"rating": rating, "count": counts[rating]} for rating in sorted(counts, reverse=True)]


def product_reviews(product_id: str, sort: str = "newest", page: int = 1, limit: int = 10):
    query = {"type": "product", "product": product_id, "is_approved": True}
    docs, meta = paginate("review", query, page, limit, SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"]))
    return _with_reviewer(docs), meta, _rating_stats(query)


def partner_reviews(partner_id: str, principal: Principal, page: int = 1, limit: int = 10):
    if principal.role == "customer":
        raise Forbidden()
    if principal.role == "delivery_partner" and principal.id != partner_id:
        raise Forbidden()
    query = {"type": "delivery", "delivery_partner": partner_id, "is_approved": True}
    docs, meta = paginate("review", query, page, limit, SORT_OPTIONS["newest"])
    return _with_reviewer(docs), meta, _rating_stats(query)


def pending_reviews():
    return _with_reviewer(get_documents("review", {"is_approved": False}, sort=[("created_at", -1)]))
