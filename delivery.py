"""
Delivery state machine

    assigned -> picked -> in_transit -> out_for_delivery -> delivered
                                                         -> failed

Each delivery transition is projected onto the parent order's status. Only
admins and the assigned partner may move a delivery.
"""

import logging
from datetime import datetime
from typing import Optional

import orders
from auth import Principal
from database import (create_document, find_by_id, get_db, get_documents, now, paginate,
                      serialize_doc)
from errors import Forbidden, InvalidTransition, NotFound, ValidationError
from schemas import DELIVERY_STATUSES, Address, Delivery, DeliveryStatusEntry

logger = logging.getLogger(__name__)

# Delivery status -> order status it implies
ORDER_PROJECTION = {
    "picked": "packed",
    "in_transit": "shipped",
    "out_for_delivery": "shipped",
    "delivered": "delivered",
}
TERMINAL = ("delivered", "failed")


def _entry(status: str, note: Optional[str], location: Optional[str] = None) -> dict:
    return DeliveryStatusEntry(status=status, note=note, location=location,
                               timestamp=now()).model_dump()


def get_delivery(delivery_id: str) -> dict:
    delivery = find_by_id("delivery", delivery_id)
    if not delivery:
        raise NotFound("Delivery", delivery_id)
    return delivery


def get_delivery_for(principal: Principal, delivery_id: str) -> dict:
    delivery = get_delivery(delivery_id)
    if principal.role == "delivery_partner" and delivery["partner"] != principal.id:
        raise Forbidden()
    if principal.role not in ("admin", "delivery_partner"):
        raise Forbidden()
    return delivery


def present(delivery: dict) -> dict:
    out = serialize_doc(delivery)
    order = find_by_id("order", delivery["order"])
    if order:
        out["order"] = {
            "id": delivery["order"],
            "order_number": order.get("order_number"),
            "status": order.get("status"),
            "total_amount": order.get("total_amount"),
            "shipping_address": order.get("shipping_address"),
            "items": serialize_doc(order.get("items", [])),
        }
    partner = find_by_id("user", delivery["partner"])
    if partner:
        out["partner"] = {"id": delivery["partner"], "name": partner.get("name"),
                          "phone": partner.get("phone")}
    return out


def _check_partner(partner_id: str) -> dict:
    partner = find_by_id("user", partner_id)
    if not partner:
        raise NotFound("Delivery partner", partner_id)
    if partner.get("role") != "delivery_partner" or not partner.get("is_active", True):
        raise ValidationError("Assigned user is not an active delivery partner")
    return partner


def assign(order_id: str, partner_id: str, actor: Principal,
           estimated_date: Optional[datetime] = None,
           pickup_address: Optional[dict] = None) -> dict:
    """Create the order's delivery, or hand an existing one to another partner."""
    order = orders.get_order(order_id)
    if order["status"] in orders.TERMINAL:
        raise InvalidTransition("order", order["status"])
    _check_partner(partner_id)
    pickup = Address(**pickup_address).model_dump() if pickup_address else None

    existing = get_db()["delivery"].find_one({"order": order_id})
    if existing:
        if existing["status"] == "delivered":
            raise InvalidTransition("delivery", "delivered", "assigned")
        fields = {"partner": partner_id, "estimated_date": estimated_date, "updated_at": now()}
        if pickup:
            fields["pickup_address"] = pickup
        update = {"$set": fields}
        if existing["status"] == "failed":
            fields["status"] = "assigned"
            fields["failure_reason"] = None
            update["$push"] = {"status_history": _entry("assigned", "Delivery reassigned")}
        get_db()["delivery"].update_one({"_id": existing["_id"]}, update)
        delivery_id = str(existing["_id"])
    else:
        delivery_id = create_document("delivery", Delivery(
            order=order_id,
            partner=partner_id,
            estimated_date=estimated_date,
            pickup_address=pickup,
            delivery_address=order.get("shipping_address"),
            status_history=[DeliveryStatusEntry(status="assigned", note="Delivery assigned",
                                                timestamp=now())],
        ))

    get_db()["order"].update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "delivery.partner": partner_id,
                "delivery.estimated_date": estimated_date,
                "updated_at": now(),
            },
            "$push": {"status_history": orders.history_entry(
                order["status"], "Delivery partner assigned", actor.id)},
        },
    )
    logger.info("Order %s assigned to delivery partner %s", order["order_number"], partner_id)
    return get_delivery(delivery_id)


def set_status(delivery_id: str, status: str, principal: Principal, note: Optional[str] = None,
               location: Optional[str] = None) -> dict:
    if status not in DELIVERY_STATUSES:
        raise ValidationError("Invalid status")
    delivery = get_delivery_for(principal, delivery_id)
    current = delivery["status"]
    if current in TERMINAL:
        raise InvalidTransition("delivery", current, status)

    order = find_by_id("order", delivery["order"])
    if order and order["status"] == "cancelled":
        raise InvalidTransition("order", "cancelled")

    fields = {"status": status, "updated_at": now()}
    update = {"$set": fields, "$push": {"status_history": _entry(status, note, location)}}
    if status == "delivered":
        fields["actual_delivery_date"] = now()
    elif status == "out_for_delivery":
        update["$inc"] = {"attempts": 1}
    elif status == "failed":
        fields["failure_reason"] = note or "Delivery failed"

    result = get_db()["delivery"].update_one({"_id": delivery["_id"], "status": current}, update)
    if result.matched_count == 0:
        raise InvalidTransition("delivery", get_delivery(delivery_id)["status"], status)

    if order and order["status"] not in orders.TERMINAL:
        target = ORDER_PROJECTION.get(status, order["status"])
        get_db()["order"].update_one(
            {"_id": order["_id"]},
            {
                "$set": {"status": target, "updated_at": now()},
                "$push": {"status_history": orders.history_entry(
                    target, f"Delivery status: {status}", principal.id)},
            },
        )
    logger.info("Delivery %s %s -> %s", delivery_id, current, status)
    return get_delivery(delivery_id)


def confirm(delivery_id: str, principal: Principal, signature: Optional[str] = None,
            proof_image: Optional[str] = None, note: Optional[str] = None) -> dict:
    """Close a delivery with the customer's signature; the order becomes completed."""
    delivery = get_delivery_for(principal, delivery_id)
    if delivery["status"] == "failed":
        raise InvalidTransition("delivery", "failed", "delivered")

    order = find_by_id("order", delivery["order"])
    if order and order["status"] in orders.TERMINAL:
        raise InvalidTransition("order", order["status"], "completed")

    stamp = now()
    get_db()["delivery"].update_one(
        {"_id": delivery["_id"]},
        {
            "$set": {
                "status": "delivered",
                "actual_delivery_date": stamp,
                "customer_signature": signature,
                "proof_of_delivery": proof_image,
                "updated_at": stamp,
            },
            "$push": {"status_history": _entry("delivered", note or "Delivery confirmed")},
        },
    )

    if order:
        get_db()["order"].update_one(
            {"_id": order["_id"]},
            {
                "$set": {"status": "completed", "delivery.actual_date": stamp, "updated_at": stamp},
                "$push": {"status_history": orders.history_entry(
                    "completed", "Order delivered and confirmed", principal.id)},
            },
        )
    logger.info("Delivery %s confirmed by %s", delivery_id, principal.id)
    return get_delivery(delivery_id)


def list_assigned(principal: Principal, status: Optional[str] = None):
    query = {}
    if principal.role == "delivery_partner":
        query["partner"] = principal.id
    if status:
        query["status"] = status
    return get_documents("delivery", query, sort=[("created_at", -1)])


def list_all(status: Optional[str] = None, partner_id: Optional[str] = None,
             page: int = 1, limit: int = 20):
    query = {}
    if status:
        query["status"] = status
    if partner_id:
        query["partner"] = partner_id
    return paginate("delivery", query, page, limit, [("created_at", -1)])


def partner_stats(partner_id: str) -> dict:
    deliveries = list(get_db()["delivery"].find({"partner": partner_id}))
    total = len(deliveries)
    delivered = sum(1 for d in deliveries if d["status"] == "delivered")
    failed = sum(1 for d in deliveries if d["status"] == "failed")
    partner = find_by_id("user", partner_id) or {}
    rating = partner.get("rating") or {}

    return {
        "total_deliveries": total,
        "delivered": delivered,
        "failed": failed,
        "in_progress": total - delivered - failed,
        "success_rate": round(delivered / total * 100) if total else 0,
        "rating": rating.get("average", 0),
        "rating_count": rating.get("count", 0),
    }


def list_partners():
    """Active delivery partners an admin can assign orders to."""
    partners = get_documents("user", {"role": "delivery_partner", "is_active": True},
                             sort=[("name", 1)])
    return [{"id": str(p["_id"]), "name": p.get("name"), "email": p.get("email"),
             "phone": p.get("phone")} for p in partners]
