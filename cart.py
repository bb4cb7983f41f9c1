"""
Cart aggregator

One cart per user, created on first access. A line's price is captured when
the product is added and is not refreshed afterwards.
"""

import logging

from pymongo import ReturnDocument

from catalog import get_product, unit_price
from database import get_db, now, oid, serialize_doc
from errors import InsufficientStock, NotFound, ValidationError
from inventory import available_stock
from schemas import Cart

logger = logging.getLogger(__name__)


def _totals(items):
    return {
        "total_amount": round(sum(i["price"] * i["quantity"] for i in items), 2),
        "total_items": sum(i["quantity"] for i in items),
    }


def _save(cart: dict, items) -> dict:
    fields = {"items": items, "updated_at": now(), **_totals(items)}
    get_db()["cart"].update_one({"_id": cart["_id"]}, {"$set": fields})
    cart.update(fields)
    return cart


def get_cart(user_id: str) -> dict:
    """Return the user's cart, creating an empty one on first use."""
    doc = Cart(user=user_id).model_dump()
    doc.pop("user")
    return get_db()["cart"].find_one_and_update(
        {"user": user_id},
        {"$setOnInsert": {**doc, "created_at": now(), "updated_at": now()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _purchasable(product_id: str, quantity: int) -> dict:
    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = get_product(product_id)
    if not product.get("is_available", True):
        raise ValidationError("Product is not available")
    if quantity > available_stock(product):
        raise InsufficientStock(product.get("name", "product"), available_stock(product), quantity)
    return product


def add_item(user_id: str, product_id: str, quantity: int = 1) -> dict:
    product = _purchasable(product_id, quantity)
    price = unit_price(product)
    cart = get_cart(user_id)
    items = list(cart.get("items", []))

    for item in items:
        if item["product"] == product_id:
            merged = item["quantity"] + quantity
            if merged > available_stock(product):
                raise InsufficientStock(product.get("name", "product"), available_stock(product), merged)
            item["quantity"] = merged
            item["price"] = price
            break
    else:
        items.append({"product": product_id, "quantity": quantity, "price": price})

    return _save(cart, items)


def update_item(user_id: str, product_id: str, quantity: int) -> dict:
    _purchasable(product_id, quantity)
    cart = get_db()["cart"].find_one({"user": user_id})
    if not cart:
        raise NotFound("Cart")

    items = list(cart.get("items", []))
    for item in items:
        if item["product"] == product_id:
            item["quantity"] = quantity
            break
    else:
        raise NotFound("Item in cart", product_id)

    return _save(cart, items)


def remove_item(user_id: str, product_id: str) -> dict:
    cart = get_db()["cart"].find_one({"user": user_id})
    if not cart:
        raise NotFound("Cart")
    items = [i for i in cart.get("items", []) if i["product"] != product_id]
    return _save(cart, items)


def clear(user_id: str):
    cart = get_db()["cart"].find_one({"user": user_id})
    if cart:
        _save(cart, [])


def present(cart: dict) -> dict:
    """Cart with each line's product summary filled in."""
    out = serialize_doc(cart)
    ids = [oid(i["product"]) for i in cart.get("items", [])]
    products = {str(p["_id"]): p for p in get_db()["product"].find({"_id": {"$in": ids}})}
    for line in out.get("items", []):
        product = products.get(line["product"])
        if product:
            line["product"] = {
                "id": line["product"],
                "name": product.get("name"),
                "price": product.get("price"),
                "discount_price": product.get("discount_price", 0),
                "images": product.get("images", []),
                "stock": product.get("stock", 0),
                "available_stock": available_stock(product),
            }
    return out
