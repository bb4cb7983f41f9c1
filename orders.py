"""
Order state machine

    created -> paid -> packed -> shipped -> delivered -> completed
    created | paid | packed -> cancelled

Checkout reserves stock, payment capture commits it, cancellation gives it
back. Steps that must happen once per order (payment capture, cancellation)
are claimed with a conditional update on the order's current status before
any stock moves, so retried callbacks or double clicks cannot move stock
twice.
"""

import logging
import time
from datetime import datetime
from html import escape
from typing import List, Optional

import config
import inventory
from auth import Principal
from cart import clear as clear_cart
from catalog import get_product
from database import create_document, find_by_id, get_db, next_sequence, now, oid, paginate
from errors import (AlreadyPaid, Forbidden, InsufficientStock, InvalidTransition, NotFound,
                    ValidationError)
from inventory import available_stock
from schemas import ORDER_STATUSES, Address, Order, OrderItem, StatusHistoryEntry

logger = logging.getLogger(__name__)

HAPPY_PATH = ("created", "paid", "packed", "shipped", "delivered", "completed")
CANCELLABLE = ("created", "paid", "packed")
TERMINAL = ("completed", "cancelled")


def history_entry(status: str, note: Optional[str], actor: Optional[str] = None) -> dict:
    return StatusHistoryEntry(status=status, note=note, updated_by=actor, timestamp=now()).model_dump()


def generate_order_number() -> str:
    return f"SON-{int(time.time() * 1000)}-{next_sequence('order'):04d}"


def generate_invoice_number() -> str:
    num = next_sequence("invoice")
    year = datetime.now().year
    return f"SON/{year}/{num:05d}"


def get_order(order_id: str) -> dict:
    order = find_by_id("order", order_id)
    if not order:
        raise NotFound("Order", order_id)
    return order


def get_order_for(principal: Principal, order_id: str) -> dict:
    order = get_order(order_id)
    if not principal.is_admin and order["user"] != principal.id:
        raise Forbidden("Not authorized to view this order")
    return order


def list_orders(principal: Principal, status: Optional[str] = None, page: int = 1,
                limit: int = 10):
    query = {}
    if not principal.is_admin:
        query["user"] = principal.id
    if status:
        query["status"] = status
    return paginate("order", query, page, limit, [("created_at", -1)])


def _split_lines(order: dict):
    """Lines whose stock was committed at payment, and lines still only reserved."""
    committed = set(order.get("committed_lines") or [])
    sold, held = [], []
    for index, line in enumerate(_lines(order)):
        (sold if index in committed else held).append(line)
    return sold, held


def _lines(order: dict):
    return [(item["product"], item["quantity"]) for item in order.get("items", [])]


# ----- Checkout -----

def checkout(user_id: str, shipping_address: dict) -> dict:
    """Turn the user's cart into an order, reserving stock for every line."""
    if not shipping_address:
        raise ValidationError("Shipping address is required")
    address = Address(**shipping_address)

    cart = get_db()["cart"].find_one({"user": user_id})
    if not cart or not cart.get("items"):
        raise ValidationError("Cart is empty")

    # Validate every line before reserving anything.
    items: List[OrderItem] = []
    for line in cart["items"]:
        product = get_product(line["product"])
        if not product.get("is_available", True):
            raise ValidationError(f"{product.get('name', 'Product')} is not available")
        if line["quantity"] > available_stock(product):
            raise InsufficientStock(product.get("name", "product"), available_stock(product),
                                    line["quantity"])
        items.append(OrderItem(
            product=line["product"],
            name=product.get("name", ""),
            quantity=line["quantity"],
            price=line["price"],
        ))

    order_number = generate_order_number()
    lines = [(i.product, i.quantity) for i in items]
    inventory.reserve_all(lines, reference=order_number, actor=user_id)

    try:
        order = Order(
            user=user_id,
            order_number=order_number,
            items=items,
            shipping_address=address,
            total_amount=round(sum(i.price * i.quantity for i in items), 2),
            status_history=[history_entry("created", "Order placed", user_id)],
        )
        order_id = create_document("order", order)
    except Exception:
        logger.exception("Could not store order %s, releasing its reservations", order_number)
        inventory.release_all(lines, reference=order_number, actor=user_id,
                              reason="Checkout failed")
        raise

    clear_cart(user_id)
    logger.info("Order %s placed by %s for %.2f", order_number, user_id, order.total_amount)
    return get_order(order_id)


# ----- Payment -----

def mark_paid(order_id: str, gateway_payment_id: Optional[str], gateway_order_id: Optional[str] = None,
              signature: Optional[str] = None, method: Optional[str] = None,
              actor: Optional[str] = None) -> dict:
    """Record a verified payment and commit the order's reserved stock.

    Raises AlreadyPaid when the payment was already recorded, so stock is
    committed at most once per order.
    """
    order = get_order(order_id)
    if (order.get("payment") or {}).get("status") == "completed":
        raise AlreadyPaid(order.get("order_number"))
    if order["status"] != "created":
        raise InvalidTransition("order", order["status"], "paid")

    fields = {
        "status": "paid",
        "payment.gateway_payment_id": gateway_payment_id,
        "payment.gateway_signature": signature,
        "payment.method": method,
        "payment.status": "completed",
        "payment.paid_at": now(),
        "updated_at": now(),
    }
    if gateway_order_id:
        fields["payment.gateway_order_id"] = gateway_order_id

    result = get_db()["order"].update_one(
        {"_id": order["_id"], "status": "created", "payment.status": {"$ne": "completed"}},
        {
            "$set": fields,
            "$push": {"status_history": history_entry(
                "paid", f"Payment completed via {method or 'gateway'}", actor)},
        },
    )
    if result.matched_count == 0:
        fresh = get_order(order_id)
        if (fresh.get("payment") or {}).get("status") == "completed":
            raise AlreadyPaid(fresh.get("order_number"))
        raise InvalidTransition("order", fresh["status"], "paid")

    for index, (product_id, quantity) in enumerate(_lines(order)):
        inventory.commit(product_id, quantity, reference=order["order_number"], actor=actor)
        get_db()["order"].update_one({"_id": order["_id"]},
                                     {"$addToSet": {"committed_lines": index}})

    get_db()["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"invoice.number": generate_invoice_number(), "invoice.generated_at": now()}},
    )
    logger.info("Order %s paid (payment %s)", order["order_number"], gateway_payment_id)
    return get_order(order_id)


def attach_gateway_order(order_id: str, gateway_order_id: str) -> dict:
    get_db()["order"].update_one(
        {"_id": oid(order_id)},
        {"$set": {"payment.gateway_order_id": gateway_order_id, "updated_at": now()}},
    )
    return get_order(order_id)


def find_by_gateway_order(gateway_order_id: str) -> Optional[dict]:
    return get_db()["order"].find_one({"payment.gateway_order_id": gateway_order_id})


def find_by_gateway_payment(gateway_payment_id: str) -> Optional[dict]:
    return get_db()["order"].find_one({"payment.gateway_payment_id": gateway_payment_id})


def mark_payment_failed(order: dict, description: Optional[str] = None) -> dict:
    get_db()["order"].update_one(
        {"_id": order["_id"], "payment.status": {"$ne": "completed"}},
        {
            "$set": {"payment.status": "failed", "updated_at": now()},
            "$push": {"status_history": history_entry(
                order["status"], f"Payment failed: {description or 'unknown error'}")},
        },
    )
    logger.warning("Payment failed for order %s: %s", order.get("order_number"), description)
    return get_order(str(order["_id"]))


def mark_refunded(order: dict, amount: float, reason: Optional[str] = None,
                  actor: Optional[Principal] = None) -> dict:
    """Record a refund; orders that can still be cancelled are cancelled too."""
    order_id = str(order["_id"])
    note = f"Refund processed: {amount:.2f}. {reason or ''}".strip()
    if order["status"] in CANCELLABLE:
        cancel(order_id, reason or "Refunded", actor or Principal(id="system", role="admin"))

    get_db()["order"].update_one(
        {"_id": order["_id"]},
        {
            "$set": {"payment.status": "refunded", "updated_at": now()},
            "$push": {"status_history": history_entry("refunded", note, actor.id if actor else None)},
        },
    )
    return get_order(order_id)


# ----- Status changes -----

def _allowed(current: str, target: str) -> bool:
    if target == "cancelled":
        return current in CANCELLABLE
    if current not in HAPPY_PATH or target not in HAPPY_PATH:
        return False
    return HAPPY_PATH.index(target) > HAPPY_PATH.index(current)


def update_status(order_id: str, status: str, note: Optional[str], actor: Principal) -> dict:
    """Admin status change.

    Any enumerated status is accepted unless STRICT_ORDER_TRANSITIONS is on,
    in which case only forward moves along the happy path are allowed.
    Cancelling always goes through ``cancel`` so reservations are released.
    """
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    if status == "cancelled":
        return cancel(order_id, note, actor)

    order = get_order(order_id)
    current = order["status"]
    if config.STRICT_ORDER_TRANSITIONS and not _allowed(current, status):
        raise InvalidTransition("order", current, status)

    result = get_db()["order"].update_one(
        {"_id": order["_id"], "status": current},
        {
            "$set": {"status": status, "updated_at": now()},
            "$push": {"status_history": history_entry(status, note, actor.id)},
        },
    )
    if result.matched_count == 0:
        raise InvalidTransition("order", get_order(order_id)["status"], status)
    logger.info("Order %s status %s -> %s by %s", order["order_number"], current, status, actor.id)
    return get_order(order_id)


def cancel(order_id: str, reason: Optional[str], actor: Principal) -> dict:
    """Cancel an order that has not shipped and give its stock back."""
    order = get_order(order_id)
    if not actor.is_admin and order["user"] != actor.id:
        raise Forbidden()

    current = order["status"]
    if current not in CANCELLABLE:
        raise InvalidTransition("order", current)

    result = get_db()["order"].update_one(
        {"_id": order["_id"], "status": current},
        {
            "$set": {"status": "cancelled", "cancellation_reason": reason, "updated_at": now()},
            "$push": {"status_history": history_entry("cancelled", reason or "Order cancelled", actor.id)},
        },
    )
    if result.matched_count == 0:
        raise InvalidTransition("order", get_order(order_id)["status"])

    sold, held = _split_lines(order)
    for product_id, quantity in sold:
        inventory.restock(product_id, quantity, reference=order["order_number"],
                          actor=actor.id, reason="Order cancelled")
    inventory.release_all(held, reference=order["order_number"], actor=actor.id,
                          reason="Order cancelled")

    logger.info("Order %s cancelled by %s (%s)", order["order_number"], actor.id, reason)
    return get_order(order_id)


# ----- Invoice -----

INVOICE_STYLE = """
  body { font-family: Helvetica, Arial, sans-serif; color: #1f2937; margin: 32px; }
  .invoice { max-width: 760px; margin: auto; }
  .invoice h1 { font-size: 22px; margin: 0 0 4px; color: #15803d; }
  .meta, .parties { display: flex; justify-content: space-between; margin: 16px 0; font-size: 14px; }
  .lines { width: 100%; border-collapse: collapse; font-size: 14px; }
  .lines th { border-bottom: 2px solid #15803d; text-align: left; padding: 6px; }
  .lines td { border-bottom: 1px solid #e5e7eb; padding: 6px; }
  .num { text-align: right; }
  .total td { font-weight: bold; border-bottom: none; }
"""


def _money(value: float) -> str:
    return f"₹{value:,.2f}"


def invoice_html(order: dict) -> str:
    invoice = order.get("invoice") or {}
    number = invoice.get("number") or "PENDING"
    issued = invoice.get("generated_at") or datetime.now()
    address = order.get("shipping_address") or {}
    payment = order.get("payment") or {}

    rows = "".join(
        "<tr><td>{}</td><td class='num'>{}</td><td class='num'>{}</td><td class='num'>{}</td></tr>".format(
            escape(item.get("name", "")), item["quantity"], _money(item["price"]),
            _money(item["price"] * item["quantity"]))
        for item in order.get("items", [])
    )
    ship_to = ", ".join(escape(str(address.get(k, ""))) for k in ("street", "city", "state", "pincode"))

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Invoice {number}</title>
<style>{INVOICE_STYLE}</style>
</head>
<body>
<div class="invoice">
  <h1>Sonica Bicycles</h1>
  <div class="meta">
    <span>Invoice <strong>{number}</strong></span>
    <span>Order {escape(order.get("order_number", ""))}</span>
    <span>{issued.strftime("%d %b %Y")}</span>
  </div>
  <div class="parties">
    <span><strong>Ship to:</strong> {ship_to}</span>
    <span><strong>Payment:</strong> {escape(payment.get("method") or "-")} ({payment.get("status", "pending")})</span>
  </div>
  <table class="lines">
    <thead><tr><th>Item</th><th class="num">Qty</th><th class="num">Unit price</th><th class="num">Amount</th></tr></thead>
    <tbody>
      {rows}
      <tr class="total"><td colspan="3" class="num">Total</td><td class="num">{_money(order.get("total_amount", 0))}</td></tr>
    </tbody>
  </table>
</div>
</body>
</html>
"""
