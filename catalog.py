"""
Catalog store

Product documents and the public product listings. Stock counters are only
initialised here; afterwards the ledger in ``inventory.py`` owns them.
"""

import logging
import re
from typing import Optional

from database import (create_document, find_by_id, get_db, now, oid, paginate,
                      serialize_doc)
from errors import NotFound
from schemas import Inventory, Product, StockHistoryEntry

logger = logging.getLogger(__name__)

SORT_OPTIONS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating": [("ratings.average", -1)],
    "newest": [("created_at", -1)],
}


def unit_price(product: dict) -> float:
    """Price a customer pays right now: the discount price when one is set."""
    discount = product.get("discount_price") or 0
    return float(discount if discount > 0 else product.get("price", 0))


def present(product: dict) -> dict:
    out = serialize_doc(product)
    out["available_stock"] = product.get("stock", 0) - product.get("reserved_stock", 0)
    return out


def get_product(product_id: str) -> dict:
    product = find_by_id("product", product_id)
    if not product:
        raise NotFound("Product", product_id)
    return product


def create_product(data: dict, actor: Optional[str] = None) -> dict:
    product = Product(**{**data, "reserved_stock": 0})
    product_id = create_document("product", product)

    history = []
    if product.stock > 0:
        history.append(StockHistoryEntry(
            type="in",
            quantity=product.stock,
            previous_stock=0,
            new_stock=product.stock,
            reason="Initial stock",
            updated_by=actor,
            timestamp=now(),
        ))
    create_document("inventory", Inventory(
        product=product_id,
        total_stock=product.stock,
        low_stock_threshold=product.low_stock_threshold,
        stock_history=history,
        last_restocked=now() if product.stock > 0 else None,
    ))
    logger.info("Created product %s (%s) with %d units", product_id, product.name, product.stock)
    return get_product(product_id)


def update_product(product_id: str, fields: dict) -> dict:
    # Stock counters are never accepted here; see inventory.adjust / add_stock.
    fields = {k: v for k, v in fields.items() if k not in ("stock", "reserved_stock")}
    if not fields:
        return get_product(product_id)

    fields["updated_at"] = now()
    result = get_db()["product"].update_one({"_id": oid(product_id)}, {"$set": fields})
    if result.matched_count == 0:
        raise NotFound("Product", product_id)

    if "low_stock_threshold" in fields:
        get_db()["inventory"].update_one(
            {"product": product_id},
            {"$set": {"low_stock_threshold": fields["low_stock_threshold"], "updated_at": now()}},
        )
    return get_product(product_id)


def delete_product(product_id: str):
    result = get_db()["product"].delete_one({"_id": oid(product_id)})
    if result.deleted_count == 0:
        raise NotFound("Product", product_id)
    get_db()["inventory"].delete_one({"product": product_id})
    logger.info("Deleted product %s and its inventory record", product_id)


def list_products(category: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, brand: Optional[str] = None,
                  search: Optional[str] = None, featured: bool = False,
                  sort: Optional[str] = None, page: int = 1, limit: int = 12):
    query = {"is_available": True}

    if category:
        query["category"] = category
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if brand:
        query["specifications.brand"] = {"$regex": re.escape(brand), "$options": "i"}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [
            {"name": pattern},
            {"description": pattern},
            {"specifications.brand": pattern},
        ]
    if featured:
        query["is_featured"] = True

    docs, meta = paginate("product", query, page, limit,
                          SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"]))
    return [present(d) for d in docs], meta


def categories():
    counts = {}
    for product in get_db()["product"].find({"is_available": True}, {"category": 1}):
        name = product.get("category")
        counts[name] = counts.get(name, 0) + 1
    return [{"name": name, "count": count}
            for name, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


def featured(limit: int = 8):
    cursor = (get_db()["product"]
              .find({"is_featured": True, "is_available": True})
              .sort("created_at", -1)
              .limit(limit))
    return [present(p) for p in cursor]


def stats():
    """Public storefront numbers."""
    database = get_db()
    rated = list(database["product"].find({"ratings.count": {"$gt": 0}}, {"ratings": 1}))
    avg_rating = (sum(p["ratings"]["average"] for p in rated) / len(rated)) if rated else 0
    done = {"status": {"$in": ["delivered", "completed"]}}
    cities = {o.get("shipping_address", {}).get("city")
              for o in database["order"].find(done, {"shipping_address.city": 1})}
    cities.discard(None)

    return {
        "total_products": database["product"].count_documents({"is_available": True}),
        "total_customers": database["user"].count_documents({"role": "customer"}),
        "total_orders": database["order"].count_documents(done),
        "avg_rating": round(avg_rating, 1),
        "cities_delivered": len(cities),
    }
