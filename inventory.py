"""
Stock reservation ledger

Product documents hold the authoritative ``stock`` / ``reserved_stock``
counters; the inventory collection mirrors them and keeps the append-only
``stock_history`` audit log.

Counters are only ever written with a conditional update whose filter pins
the values that were read, so two requests racing for the last units cannot
both win: the loser re-reads and re-validates. This keeps
``0 <= reserved_stock <= stock`` without locks or transactions.

History quantities are signed relative to the counter they move: ``in`` and
``returned`` grow stock, ``out`` shrinks it, ``reserved`` / ``released`` grow
and shrink the reservation. For reservation entries ``previous_stock`` and
``new_stock`` hold the available (unreserved) stock.
"""

import logging
import math
from typing import Callable, Iterable, List, Optional, Tuple

import config
from database import find_by_id, get_db, now, oid, serialize_doc
from errors import InsufficientStock, NotFound, StockConflict, ValidationError
from schemas import StockHistoryEntry

logger = logging.getLogger(__name__)

REMOVAL_TYPES = ("out", "returned", "adjustment")


def available_stock(product: dict) -> int:
    return product.get("stock", 0) - product.get("reserved_stock", 0)


def _load_product(product_id: str) -> dict:
    product = find_by_id("product", product_id)
    if not product:
        raise NotFound("Product", product_id)
    return product


def _record(product_id: str, stock: int, reserved: int, entry: StockHistoryEntry,
            extra: Optional[dict] = None):
    """Mirror the product counters onto its inventory record and log the movement."""
    fields = {"total_stock": stock, "reserved_stock": reserved, "updated_at": now()}
    if extra:
        fields.update(extra)
    defaults = {"low_stock_threshold": 5, "location": {}, "created_at": now()}
    get_db()["inventory"].update_one(
        {"product": product_id},
        {
            "$set": fields,
            "$push": {"stock_history": entry.model_dump()},
            "$setOnInsert": {k: v for k, v in defaults.items() if k not in fields},
        },
        upsert=True,
    )


def _apply(product_id: str, compute: Callable[[dict, int, int], Tuple[int, int]]) -> Tuple[dict, int, int]:
    """Conditionally write new counters computed from a fresh read.

    ``compute(product, stock, reserved)`` validates and returns the new
    ``(stock, reserved)`` pair. Returns the product as read plus the old
    counters once the write matched.
    """
    database = get_db()
    for _ in range(max(config.STOCK_UPDATE_RETRIES, 1)):
        product = _load_product(product_id)
        stock = product.get("stock", 0)
        reserved = product.get("reserved_stock", 0)
        new_stock, new_reserved = compute(product, stock, reserved)
        result = database["product"].update_one(
            {"_id": product["_id"], "stock": stock, "reserved_stock": reserved},
            {"$set": {"stock": new_stock, "reserved_stock": new_reserved, "updated_at": now()}},
        )
        if result.matched_count == 1:
            product["stock"], product["reserved_stock"] = new_stock, new_reserved
            return product, stock, reserved
        logger.info("Stock of product %s changed during update, retrying", product_id)
    raise StockConflict(product_id)


def _entry(type_: str, quantity: int, previous: int, new: int, reason: Optional[str],
           reference: Optional[str] = None, actor: Optional[str] = None) -> StockHistoryEntry:
    return StockHistoryEntry(
        type=type_,
        quantity=quantity,
        previous_stock=previous,
        new_stock=new,
        reason=reason,
        reference=reference,
        updated_by=actor,
        timestamp=now(),
    )


def _require_positive(quantity: int):
    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be at least 1")


def reserve(product_id: str, quantity: int, reference: Optional[str] = None,
            actor: Optional[str] = None) -> dict:
    """Hold ``quantity`` units for an unpaid order."""
    _require_positive(quantity)

    def compute(product, stock, reserved):
        if quantity > stock - reserved:
            raise InsufficientStock(product.get("name", "product"), stock - reserved, quantity)
        return stock, reserved + quantity

    product, stock, reserved = _apply(product_id, compute)
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry("reserved", quantity, stock - reserved, available_stock(product),
                   "Reserved for order", reference, actor))
    logger.info("Reserved %d of product %s (ref=%s)", quantity, product_id, reference)
    return product


def release(product_id: str, quantity: int, reference: Optional[str] = None,
            actor: Optional[str] = None, reason: str = "Reservation released") -> dict:
    """Return held units to available stock; the reservation never goes below zero."""
    _require_positive(quantity)

    def compute(product, stock, reserved):
        return stock, max(reserved - quantity, 0)

    product, stock, reserved = _apply(product_id, compute)
    released = reserved - product["reserved_stock"]
    if released < quantity:
        logger.warning("Release of %d on product %s only found %d reserved",
                       quantity, product_id, reserved)
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry("released", -released, stock - reserved, available_stock(product),
                   reason, reference, actor))
    return product


def commit(product_id: str, quantity: int, reference: Optional[str] = None,
           actor: Optional[str] = None) -> dict:
    """Turn reserved units into sold units: both counters drop by ``quantity``."""
    _require_positive(quantity)

    def compute(product, stock, reserved):
        if reserved < quantity:
            raise ValidationError(
                f"Cannot commit {quantity} units of {product.get('name', 'product')}: "
                f"only {reserved} reserved"
            )
        return stock - quantity, reserved - quantity

    product, stock, _ = _apply(product_id, compute)
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry("out", -quantity, stock, product["stock"], "Sold", reference, actor),
            {"last_sold": now()})
    return product


def restock(product_id: str, quantity: int, reference: Optional[str] = None,
            actor: Optional[str] = None, reason: str = "Returned to stock") -> dict:
    """Put previously sold units back on hand (e.g. a paid order was cancelled)."""
    _require_positive(quantity)

    product, stock, _ = _apply(product_id, lambda p, s, r: (s + quantity, r))
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry("returned", quantity, stock, product["stock"], reason, reference, actor))
    return product


def add_stock(product_id: str, quantity: int, reason: Optional[str] = None,
              location: Optional[dict] = None, actor: Optional[str] = None) -> dict:
    _require_positive(quantity)

    product, stock, _ = _apply(product_id, lambda p, s, r: (s + quantity, r))
    extra = {"last_restocked": now()}
    if location:
        extra["location"] = location
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry("in", quantity, stock, product["stock"], reason or "Stock added", actor=actor),
            extra)
    logger.info("Added %d units to product %s", quantity, product_id)
    return get_inventory(product_id)


def remove_stock(product_id: str, quantity: int, reason: Optional[str] = None,
                 type_: str = "out", actor: Optional[str] = None) -> dict:
    """Remove unreserved units (damaged, lost, sent back to supplier)."""
    _require_positive(quantity)
    if type_ not in REMOVAL_TYPES:
        raise ValidationError(f"Invalid stock movement type: {type_}")

    def compute(product, stock, reserved):
        if quantity > stock - reserved:
            raise ValidationError(
                f"Cannot remove {quantity}. Only {stock - reserved} available (unreserved)."
            )
        return stock - quantity, reserved

    product, stock, _ = _apply(product_id, compute)
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry(type_, -quantity, stock, product["stock"], reason or "Stock removed", actor=actor))
    return get_inventory(product_id)


def adjust(product_id: str, new_total: int, reason: Optional[str] = None,
           actor: Optional[str] = None) -> dict:
    """Set on-hand stock to an absolute value after a count."""
    if new_total is None or new_total < 0:
        raise ValidationError("Total stock must be zero or more")

    def compute(product, stock, reserved):
        if new_total < reserved:
            raise ValidationError(
                f"Total stock cannot be below the {reserved} units reserved for open orders"
            )
        return new_total, reserved

    product, stock, _ = _apply(product_id, compute)
    _record(product_id, product["stock"], product["reserved_stock"],
            _entry("adjustment", new_total - stock, stock, new_total,
                   reason or "Manual adjustment", actor=actor))
    logger.info("Adjusted product %s stock %d -> %d", product_id, stock, new_total)
    return get_inventory(product_id)


def reserve_all(lines: Iterable[Tuple[str, int]], reference: Optional[str] = None,
                actor: Optional[str] = None):
    """Reserve every (product_id, quantity) line or none of them."""
    done: List[Tuple[str, int]] = []
    try:
        for product_id, quantity in lines:
            reserve(product_id, quantity, reference, actor)
            done.append((product_id, quantity))
    except Exception:
        logger.warning("Reservation failed after %d line(s), releasing", len(done))
        for product_id, quantity in reversed(done):
            release(product_id, quantity, reference, actor, reason="Checkout rolled back")
        raise


def release_all(lines: Iterable[Tuple[str, int]], reference: Optional[str] = None,
                actor: Optional[str] = None, reason: str = "Reservation released"):
    for product_id, quantity in lines:
        release(product_id, quantity, reference, actor, reason=reason)


# ----- Read projections -----

def _decorate(record: dict, product: Optional[dict]) -> dict:
    out = serialize_doc(record)
    available = record.get("total_stock", 0) - record.get("reserved_stock", 0)
    out["available_stock"] = available
    out["is_low_stock"] = available <= record.get("low_stock_threshold", 5)
    if product:
        out["product"] = {
            "id": str(product["_id"]),
            "name": product.get("name"),
            "category": product.get("category"),
            "images": product.get("images", []),
            "price": product.get("price", 0),
        }
    return out


def _products_by_id(records: List[dict]) -> dict:
    ids = [oid(r["product"]) for r in records if r.get("product")]
    products = get_db()["product"].find({"_id": {"$in": ids}})
    return {str(p["_id"]): p for p in products}


def get_inventory(product_id: str) -> dict:
    record = get_db()["inventory"].find_one({"product": product_id})
    if not record:
        raise NotFound("Inventory record", product_id)
    product = find_by_id("product", product_id)
    return _decorate(record, product)


def list_inventory(page: int = 1, limit: int = 20, low_stock: bool = False,
                   search: Optional[str] = None):
    records = list(get_db()["inventory"].find({}).sort("updated_at", -1))
    products = _products_by_id(records)
    items = [_decorate(r, products.get(r.get("product"))) for r in records]

    if low_stock:
        items = [i for i in items if i["is_low_stock"]]
    if search:
        needle = search.lower()
        items = [i for i in items
                 if isinstance(i.get("product"), dict) and needle in (i["product"]["name"] or "").lower()]

    page = max(int(page), 1)
    limit = min(max(int(limit), 1), config.MAX_PAGE_SIZE)
    total = len(items)
    start = (page - 1) * limit
    meta = {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}
    return items[start:start + limit], meta


def low_stock_items() -> List[dict]:
    records = list(get_db()["inventory"].find({}))
    products = _products_by_id(records)
    return [i for i in (_decorate(r, products.get(r.get("product"))) for r in records)
            if i["is_low_stock"]]


def summary() -> dict:
    """Totals across the whole inventory, broken down by product category."""
    records = list(get_db()["inventory"].find({}))
    products = _products_by_id(records)

    total_stock = reserved_stock = low_count = out_count = 0
    total_value = 0.0
    categories = {}
    for record in records:
        item = _decorate(record, None)
        total_stock += record.get("total_stock", 0)
        reserved_stock += record.get("reserved_stock", 0)
        if record.get("total_stock", 0) == 0:
            out_count += 1
        if item["is_low_stock"]:
            low_count += 1

        product = products.get(record.get("product"))
        if product:
            value = record.get("total_stock", 0) * product.get("price", 0)
            total_value += value
            bucket = categories.setdefault(product.get("category") or "uncategorized",
                                           {"count": 0, "stock": 0, "value": 0.0})
            bucket["count"] += 1
            bucket["stock"] += record.get("total_stock", 0)
            bucket["value"] += value

    return {
        "total_products": len(records),
        "total_stock": total_stock,
        "reserved_stock": reserved_stock,
        "available_stock": total_stock - reserved_stock,
        "total_inventory_value": round(total_value, 2),
        "low_stock_count": low_count,
        "out_of_stock_count": out_count,
        "category_breakdown": [
            {"name": name, "count": b["count"], "stock": b["stock"], "value": round(b["value"], 2)}
            for name, b in sorted(categories.items())
        ],
    }


def update_settings(product_id: str, low_stock_threshold: Optional[int] = None,
                    location: Optional[dict] = None) -> dict:
    fields = {"updated_at": now()}
    if low_stock_threshold is not None:
        if low_stock_threshold < 0:
            raise ValidationError("Low stock threshold must be zero or more")
        fields["low_stock_threshold"] = low_stock_threshold
        get_db()["product"].update_one({"_id": _load_product(product_id)["_id"]},
                                        {"$set": {"low_stock_threshold": low_stock_threshold}})
    if location:
        fields["location"] = location
    result = get_db()["inventory"].update_one({"product": product_id}, {"$set": fields})
    if result.matched_count == 0:
        raise NotFound("Inventory record", product_id)
    return get_inventory(product_id)
