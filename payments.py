"""
Payments

``PaymentGateway`` is a small client for the Razorpay REST API (orders,
payments, refunds) built on httpx. Nothing from the gateway is trusted
before its HMAC signature checks out:

* checkout confirmation: HMAC-SHA256 of ``"<gateway order id>|<payment id>"``
  keyed with the API key secret;
* webhooks: HMAC-SHA256 of the raw request body keyed with the webhook secret.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

import config
import orders
from auth import Principal
from database import paginate
from errors import (AlreadyPaid, Forbidden, InvalidTransition, PaymentGatewayError,
                    SignatureMismatch, ValidationError)

logger = logging.getLogger(__name__)


def to_subunits(amount: float) -> int:
    """Rupees to paise."""
    return int(round(amount * 100))


class PaymentGateway:
    """Sync Razorpay client; one instance is shared by the app."""

    def __init__(self, key_id: str, key_secret: str, api_url: str = config.RAZORPAY_API_URL,
                 timeout: float = config.PAYMENT_TIMEOUT):
        if not key_id or not key_secret:
            logger.warning("Payment gateway has no API credentials configured")
        self.key_id = key_id
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            auth=(key_id, key_secret),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout),
        )

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Payment gateway %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError("Payment gateway unreachable") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", {}).get("description")
            except ValueError:
                detail = response.text[:200]
            logger.error("Payment gateway %s %s -> %d: %s", method, path, response.status_code, detail)
            raise PaymentGatewayError(f"Payment gateway error: {detail or response.status_code}")
        return response.json()

    def create_payment_intent(self, amount: float, currency: str, reference: str,
                              notes: Optional[dict] = None) -> Dict[str, Any]:
        data = self._request("POST", "/orders", json={
            "amount": to_subunits(amount),
            "currency": currency,
            "receipt": reference,
            "notes": notes or {},
        })
        return {"intent_id": data["id"], "amount": data["amount"], "currency": data["currency"]}

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/payments/{payment_id}")

    def refund(self, payment_id: str, amount: float, reason: Optional[str] = None) -> Dict[str, Any]:
        data = self._request("POST", f"/payments/{payment_id}/refund", json={
            "amount": to_subunits(amount),
            "notes": {"reason": reason or "Customer refund request"},
        })
        return {"refund_id": data["id"], "amount": data["amount"] / 100, "status": data.get("status")}

    def close(self):
        self._client.close()


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)
    return _gateway


def close_gateway():
    global _gateway
    if _gateway is not None:
        _gateway.close()
        _gateway = None


# ----- Signatures -----

def _sign(secret: str, message: bytes) -> str:
    if not secret:
        raise PaymentGatewayError("Payment signature secret is not configured")
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(gateway_order_id: str, gateway_payment_id: str, signature: str):
    expected = _sign(config.RAZORPAY_KEY_SECRET, f"{gateway_order_id}|{gateway_payment_id}".encode())
    if not signature or not hmac.compare_digest(expected, signature):
        raise SignatureMismatch()


def verify_webhook_signature(body: bytes, signature: Optional[str]):
    expected = _sign(config.RAZORPAY_WEBHOOK_SECRET, body)
    if not signature or not hmac.compare_digest(expected, signature):
        raise SignatureMismatch("Invalid webhook signature")


# ----- Flows -----

def _own_order(order_id: str, principal: Principal) -> dict:
    order = orders.get_order(order_id)
    if order["user"] != principal.id:
        raise Forbidden()
    return order


def create_payment_order(order_id: str, principal: Principal, gateway: PaymentGateway) -> dict:
    order = _own_order(order_id, principal)
    if order["payment"].get("status") == "completed":
        raise AlreadyPaid(order["order_number"])
    if order["status"] != "created":
        raise InvalidTransition("order", order["status"], "paid")

    intent = gateway.create_payment_intent(
        order["total_amount"],
        config.PAYMENT_CURRENCY,
        order["order_number"],
        notes={"order_id": order_id, "user_id": principal.id},
    )
    orders.attach_gateway_order(order_id, intent["intent_id"])
    logger.info("Gateway order %s created for %s", intent["intent_id"], order["order_number"])
    return {
        "order_id": intent["intent_id"],
        "amount": intent["amount"],
        "currency": intent["currency"],
        "key": gateway.key_id,
    }


def verify_checkout_payment(order_id: str, gateway_order_id: str, gateway_payment_id: str,
                            signature: str, principal: Principal, gateway: PaymentGateway) -> dict:
    """Confirm a payment completed in the checkout widget."""
    verify_payment_signature(gateway_order_id, gateway_payment_id, signature)

    order = _own_order(order_id, principal)
    if order["payment"].get("gateway_order_id") != gateway_order_id:
        raise SignatureMismatch("Payment does not belong to this order")
    recorded = orders.find_by_gateway_payment(gateway_payment_id)
    if recorded and recorded["_id"] != order["_id"]:
        raise SignatureMismatch("Payment already recorded on another order")

    details = gateway.fetch_payment(gateway_payment_id)
    return orders.mark_paid(
        order_id,
        gateway_payment_id,
        gateway_order_id=gateway_order_id,
        signature=signature,
        method=details.get("method"),
        actor=principal.id,
    )


def handle_webhook(event: Dict[str, Any]) -> str:
    """Apply a verified webhook event. Returns what was done, for logging."""
    name = event.get("event")
    payload = event.get("payload") or {}

    if name == "payment.captured":
        entity = payload.get("payment", {}).get("entity", {})
        if not entity.get("order_id"):
            logger.warning("Captured payment %s has no gateway order", entity.get("id"))
            return "ignored"
        order = orders.find_by_gateway_order(entity.get("order_id"))
        if not order:
            logger.warning("Captured payment %s has no matching order", entity.get("id"))
            return "ignored"
        if order["payment"].get("status") == "completed":
            return "already_paid"
        try:
            orders.mark_paid(str(order["_id"]), entity.get("id"), method=entity.get("method"))
        except AlreadyPaid:
            return "already_paid"
        except InvalidTransition:
            logger.warning("Payment %s captured for order %s in status %s",
                           entity.get("id"), order["order_number"], order["status"])
            return "ignored"
        return "paid"

    if name == "payment.failed":
        entity = payload.get("payment", {}).get("entity", {})
        if not entity.get("order_id"):
            return "ignored"
        order = orders.find_by_gateway_order(entity.get("order_id"))
        if not order:
            return "ignored"
        orders.mark_payment_failed(order, entity.get("error_description"))
        return "failed"

    if name == "refund.created":
        entity = payload.get("refund", {}).get("entity", {})
        if not entity.get("payment_id"):
            return "ignored"
        order = orders.find_by_gateway_payment(entity.get("payment_id"))
        if not order or order["payment"].get("status") == "refunded":
            return "ignored"
        orders.mark_refunded(order, entity.get("amount", 0) / 100, "Refund initiated at gateway")
        return "refunded"

    logger.info("Unhandled webhook event %s", name)
    return "ignored"


def refund_order(order_id: str, amount: Optional[float], reason: Optional[str],
                 principal: Principal, gateway: PaymentGateway) -> dict:
    order = orders.get_order(order_id)
    payment_id = order["payment"].get("gateway_payment_id")
    if not payment_id or order["payment"].get("status") != "completed":
        raise ValidationError("No payment to refund")
    refund_amount = amount if amount else order["total_amount"]
    if refund_amount <= 0 or refund_amount > order["total_amount"]:
        raise ValidationError("Refund amount must be positive and at most the order total")

    refund = gateway.refund(payment_id, refund_amount, reason)
    orders.mark_refunded(order, refund["amount"], reason, principal)
    logger.info("Refunded %.2f on order %s", refund["amount"], order["order_number"])
    return refund


def list_transactions(status: Optional[str] = None, page: int = 1, limit: int = 20):
    query = {"payment.gateway_payment_id": {"$ne": None}}
    if status:
        query["payment.status"] = status
    docs, meta = paginate("order", query, page, limit, [("created_at", -1)])
    return [{
        "id": str(d["_id"]),
        "order_number": d.get("order_number"),
        "user": d.get("user"),
        "total_amount": d.get("total_amount"),
        "payment": d.get("payment"),
        "created_at": d.get("created_at"),
    } for d in docs], meta
