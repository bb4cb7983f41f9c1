import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import cart
import catalog
import config
import database
import delivery
import inventory
import orders
import payments
import reviews
from auth import Principal, admin_only, delivery_access, get_principal, inventory_access
from errors import ShopError, ValidationError
from schemas import Address, ProductCategory, Specifications, StockLocation

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("shop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes()
        logger.info("MongoDB connected (%s)", database.db.name)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; database routes will fail")
    yield
    payments.close_gateway()


app = FastAPI(title="Sonica Bicycles API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Responses & errors -----

def ok(data=None, message: Optional[str] = None, pagination: Optional[dict] = None, **extra):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    body.update(extra)
    return body


def _fail(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code,
                        content={"success": False, "message": message, **extra})


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _fail(exc.status_code, exc.message, error_type=type(exc).__name__)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
    return _fail(400, message, error_type="ValidationError")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    extra = {} if config.is_production() else {"error": str(exc)}
    return _fail(500, "Internal Server Error", **extra)


# ----- Request models -----

class ProductIn(BaseModel):
    name: str
    description: str
    category: ProductCategory
    price: float = Field(..., ge=0)
    discount_price: float = Field(0, ge=0)
    specifications: Specifications = Field(default_factory=Specifications)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0, description="Opening stock")
    low_stock_threshold: int = Field(5, ge=0)
    is_available: bool = True
    is_featured: bool = False
    tags: List[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[ProductCategory] = None
    price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    specifications: Optional[Specifications] = None
    images: Optional[List[str]] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    is_available: Optional[bool] = None
    is_featured: Optional[bool] = None
    tags: Optional[List[str]] = None


class CartAddIn(BaseModel):
    product_id: str
    quantity: int = 1


class CartUpdateIn(BaseModel):
    product_id: str
    quantity: int


class CheckoutIn(BaseModel):
    shipping_address: Optional[Address] = None


class StatusUpdateIn(BaseModel):
    status: str
    note: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class AssignDeliveryIn(BaseModel):
    partner_id: str
    estimated_date: Optional[datetime] = None
    pickup_address: Optional[Address] = None


class DeliveryAssignIn(AssignDeliveryIn):
    order_id: str


class DeliveryStatusIn(BaseModel):
    status: str
    note: Optional[str] = None
    location: Optional[str] = None


class DeliveryConfirmIn(BaseModel):
    signature: Optional[str] = None
    proof_image: Optional[str] = Field(None, description="URL of the proof photo")
    note: Optional[str] = None


class AddStockIn(BaseModel):
    product_id: str
    quantity: int
    reason: Optional[str] = None
    location: Optional[StockLocation] = None


class InventoryUpdateIn(BaseModel):
    total_stock: Optional[int] = None
    low_stock_threshold: Optional[int] = None
    location: Optional[StockLocation] = None
    reason: Optional[str] = None


class RemoveStockIn(BaseModel):
    quantity: int
    reason: Optional[str] = None
    type: str = "out"


class CreatePaymentIn(BaseModel):
    order_id: str


class VerifyPaymentIn(BaseModel):
    order_id: str
    gateway_order_id: str
    gateway_payment_id: str
    signature: str


class RefundIn(BaseModel):
    order_id: str
    amount: Optional[float] = None
    reason: Optional[str] = None


class ProductReviewIn(BaseModel):
    type: Literal["product"] = "product"
    product_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str = Field(..., min_length=1)


class DeliveryReviewIn(BaseModel):
    type: Literal["delivery"]
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str = Field(..., min_length=1)


ReviewIn = Annotated[Union[ProductReviewIn, DeliveryReviewIn], Field(discriminator="type")]


class ReviewUpdateIn(BaseModel):
    rating: Optional[int] = None
    title: Optional[str] = None
    comment: Optional[str] = None


class ModerateIn(BaseModel):
    is_approved: bool


# ----- Health -----

@app.get("/")
def read_root():
    return {"message": "Sonica Bicycles backend running"}


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "Sonica Bicycle API is running"}


@app.get("/test")
def test_database():
    """Database connectivity check."""
    response = {
        "backend": "running",
        "database": "not configured",
        "database_name": None,
        "collections": [],
    }
    if database.db is None:
        return response

    response["database_name"] = database.db.name
    try:
        response["collections"] = sorted(database.db.list_collection_names())
        response["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        response["database"] = f"error: {str(exc)[:80]}"
    return response


# ----- Products -----

@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
    featured: bool = False,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
):
    items, meta = catalog.list_products(category, min_price, max_price, brand, search,
                                        featured, sort, page, limit)
    return ok(items, pagination=meta)


@app.get("/api/products/stats")
def product_stats():
    return ok(catalog.stats())


@app.get("/api/products/categories")
def product_categories():
    return ok(catalog.categories())


@app.get("/api/products/featured")
def featured_products():
    return ok(catalog.featured())


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return ok(catalog.present(catalog.get_product(product_id)))


@app.post("/api/products", status_code=201)
def create_product(payload: ProductIn, principal: Principal = Depends(admin_only)):
    product = catalog.create_product(payload.model_dump(), actor=principal.id)
    return ok(catalog.present(product))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, principal: Principal = Depends(admin_only)):
    fields = payload.model_dump(exclude_none=True)
    return ok(catalog.present(catalog.update_product(product_id, fields)))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, principal: Principal = Depends(admin_only)):
    catalog.delete_product(product_id)
    return ok(message="Product deleted successfully")


# ----- Cart -----

@app.get("/api/cart")
def get_cart(principal: Principal = Depends(get_principal)):
    return ok(cart.present(cart.get_cart(principal.id)))


@app.post("/api/cart/add")
def add_to_cart(payload: CartAddIn, principal: Principal = Depends(get_principal)):
    return ok(cart.present(cart.add_item(principal.id, payload.product_id, payload.quantity)))


@app.put("/api/cart/update")
def update_cart(payload: CartUpdateIn, principal: Principal = Depends(get_principal)):
    return ok(cart.present(cart.update_item(principal.id, payload.product_id, payload.quantity)))


@app.delete("/api/cart/remove/{product_id}")
def remove_from_cart(product_id: str, principal: Principal = Depends(get_principal)):
    return ok(cart.present(cart.remove_item(principal.id, product_id)))


@app.delete("/api/cart/clear")
def clear_cart(principal: Principal = Depends(get_principal)):
    cart.clear(principal.id)
    return ok(message="Cart cleared")


# ----- Orders -----

@app.post("/api/orders", status_code=201)
def create_order(payload: CheckoutIn, principal: Principal = Depends(get_principal)):
    address = payload.shipping_address.model_dump() if payload.shipping_address else None
    order = orders.checkout(principal.id, address)
    return ok(database.serialize_doc(order))


@app.get("/api/orders")
def list_orders(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = config.DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(get_principal),
):
    docs, meta = orders.list_orders(principal, status, page, limit)
    return ok(database.serialize_doc(docs), pagination=meta)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(get_principal)):
    return ok(database.serialize_doc(orders.get_order_for(principal, order_id)))


@app.put("/api/orders/{order_id}")
@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateIn, principal: Principal = Depends(admin_only)):
    order = orders.update_status(order_id, payload.status, payload.note, principal)
    return ok(database.serialize_doc(order))


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelIn] = None,
                 principal: Principal = Depends(get_principal)):
    order = orders.cancel(order_id, payload.reason if payload else None, principal)
    return ok(database.serialize_doc(order))


@app.put("/api/orders/{order_id}/assign-delivery")
def assign_order_delivery(order_id: str, payload: AssignDeliveryIn, principal: Principal = Depends(admin_only)):
    delivery.assign(order_id, payload.partner_id, principal, payload.estimated_date,
                    payload.pickup_address.model_dump() if payload.pickup_address else None)
    return ok(database.serialize_doc(orders.get_order(order_id)))


@app.get("/api/orders/{order_id}/invoice", response_class=HTMLResponse)
def get_invoice(order_id: str, principal: Principal = Depends(get_principal)):
    return orders.invoice_html(orders.get_order_for(principal, order_id))


# ----- Payments -----

@app.post("/api/payments/create-order")
def create_payment_order(payload: CreatePaymentIn, principal: Principal = Depends(get_principal),
                         gateway: payments.PaymentGateway = Depends(payments.get_gateway)):
    return ok(payments.create_payment_order(payload.order_id, principal, gateway))


@app.post("/api/payments/verify")
def verify_payment(payload: VerifyPaymentIn, principal: Principal = Depends(get_principal),
                   gateway: payments.PaymentGateway = Depends(payments.get_gateway)):
    order = payments.verify_checkout_payment(payload.order_id, payload.gateway_order_id,
                                             payload.gateway_payment_id, payload.signature,
                                             principal, gateway)
    return ok(database.serialize_doc(order), message="Payment verified successfully")


@app.post("/api/payments/webhook")
async def payment_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(None)):
    body = await request.body()
    payments.verify_webhook_signature(body, x_razorpay_signature)
    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("Malformed webhook payload")
    if not isinstance(event, dict):
        raise ValidationError("Malformed webhook payload")
    action = await run_in_threadpool(payments.handle_webhook, event)
    logger.info("Webhook %s -> %s", event.get("event"), action)
    return ok(action=action)


@app.post("/api/payments/refund")
def refund_payment(payload: RefundIn, principal: Principal = Depends(admin_only),
                   gateway: payments.PaymentGateway = Depends(payments.get_gateway)):
    return ok(payments.refund_order(payload.order_id, payload.amount, payload.reason, principal, gateway))


@app.get("/api/payments/transactions")
def payment_transactions(status: Optional[str] = None, page: int = 1, limit: int = 20,
                         principal: Principal = Depends(admin_only)):
    items, meta = payments.list_transactions(status, page, limit)
    return ok(database.serialize_doc(items), pagination=meta)


# ----- Inventory -----

@app.get("/api/inventory")
def list_inventory(low_stock: bool = False, search: Optional[str] = None, page: int = 1,
                   limit: int = 20, principal: Principal = Depends(inventory_access)):
    items, meta = inventory.list_inventory(page, limit, low_stock, search)
    return ok(items, pagination=meta)


@app.get("/api/inventory/low-stock")
def low_stock(principal: Principal = Depends(inventory_access)):
    items = inventory.low_stock_items()
    return ok(items, count=len(items))


@app.get("/api/inventory/analytics")
def inventory_analytics(principal: Principal = Depends(inventory_access)):
    return ok(inventory.summary())


@app.get("/api/inventory/{product_id}")
def get_inventory(product_id: str, principal: Principal = Depends(inventory_access)):
    return ok(inventory.get_inventory(product_id))


@app.post("/api/inventory/add-stock")
def add_stock(payload: AddStockIn, principal: Principal = Depends(inventory_access)):
    location = payload.location.model_dump() if payload.location else None
    return ok(inventory.add_stock(payload.product_id, payload.quantity, payload.reason,
                                  location, principal.id))


@app.put("/api/inventory/{product_id}")
def update_inventory(product_id: str, payload: InventoryUpdateIn,
                     principal: Principal = Depends(inventory_access)):
    record = None
    if payload.total_stock is not None:
        record = inventory.adjust(product_id, payload.total_stock, payload.reason, principal.id)
    if payload.low_stock_threshold is not None or payload.location:
        location = payload.location.model_dump() if payload.location else None
        record = inventory.update_settings(product_id, payload.low_stock_threshold, location)
    return ok(record or inventory.get_inventory(product_id))


@app.post("/api/inventory/{product_id}/remove-stock")
def remove_stock(product_id: str, payload: RemoveStockIn,
                 principal: Principal = Depends(inventory_access)):
    return ok(inventory.remove_stock(product_id, payload.quantity, payload.reason,
                                     payload.type, principal.id))


# ----- Delivery -----

@app.get("/api/delivery/assigned")
def assigned_deliveries(status: Optional[str] = None, principal: Principal = Depends(delivery_access)):
    return ok([delivery.present(d) for d in delivery.list_assigned(principal, status)])


@app.get("/api/delivery/all")
def all_deliveries(status: Optional[str] = None, partner_id: Optional[str] = None, page: int = 1,
                   limit: int = 20, principal: Principal = Depends(admin_only)):
    docs, meta = delivery.list_all(status, partner_id, page, limit)
    return ok([delivery.present(d) for d in docs], pagination=meta)


@app.get("/api/delivery/stats")
def delivery_stats(partner_id: Optional[str] = None, principal: Principal = Depends(delivery_access)):
    if principal.role == "delivery_partner" or not partner_id:
        partner_id = principal.id
    return ok(delivery.partner_stats(partner_id))


@app.get("/api/admin/delivery-partners")
def delivery_partners(principal: Principal = Depends(admin_only)):
    return ok(delivery.list_partners())


@app.post("/api/delivery/assign")
def assign_delivery(payload: DeliveryAssignIn, principal: Principal = Depends(admin_only)):
    record = delivery.assign(payload.order_id, payload.partner_id, principal, payload.estimated_date,
                             payload.pickup_address.model_dump() if payload.pickup_address else None)
    return ok(delivery.present(record))


@app.get("/api/delivery/{delivery_id}")
def get_delivery(delivery_id: str, principal: Principal = Depends(delivery_access)):
    return ok(delivery.present(delivery.get_delivery_for(principal, delivery_id)))


@app.put("/api/delivery/{delivery_id}/status")
def update_delivery_status(delivery_id: str, payload: DeliveryStatusIn,
                           principal: Principal = Depends(delivery_access)):
    record = delivery.set_status(delivery_id, payload.status, principal, payload.note, payload.location)
    return ok(delivery.present(record))


@app.post("/api/delivery/{delivery_id}/confirm")
def confirm_delivery(delivery_id: str, payload: Optional[DeliveryConfirmIn] = None,
                     principal: Principal = Depends(delivery_access)):
    payload = payload or DeliveryConfirmIn()
    record = delivery.confirm(delivery_id, principal, payload.signature, payload.proof_image, payload.note)
    return ok(delivery.present(record), message="Delivery confirmed successfully")


# ----- Reviews -----

@app.get("/api/reviews/product/{product_id}")
def product_reviews(product_id: str, sort: str = "newest", page: int = 1, limit: int = 10):
    items, meta, stats = reviews.product_reviews(product_id, sort, page, limit)
    return ok(items, pagination=meta, rating_stats=stats)


@app.get("/api/reviews/delivery/{partner_id}")
def partner_reviews(partner_id: str, page: int = 1, limit: int = 10,
                    principal: Principal = Depends(get_principal)):
    items, meta, stats = reviews.partner_reviews(partner_id, principal, page, limit)
    return ok(items, pagination=meta, rating_stats=stats)


@app.get("/api/reviews/pending")
def pending_reviews(principal: Principal = Depends(admin_only)):
    return ok(reviews.pending_reviews())


@app.post("/api/reviews", status_code=201)
def create_review(payload: ReviewIn, principal: Principal = Depends(get_principal)):
    if isinstance(payload, ProductReviewIn):
        review = reviews.create_product_review(principal, payload.product_id, payload.rating,
                                               payload.comment, payload.title, payload.order_id)
    else:
        review = reviews.create_delivery_review(principal, payload.order_id, payload.rating,
                                                payload.comment, payload.title)
    return ok(database.serialize_doc(review))


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdateIn, principal: Principal = Depends(get_principal)):
    review = reviews.update_review(review_id, principal, payload.rating, payload.title, payload.comment)
    return ok(database.serialize_doc(review))


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, principal: Principal = Depends(get_principal)):
    reviews.delete_review(review_id, principal)
    return ok(message="Review deleted")


@app.put("/api/reviews/{review_id}/moderate")
def moderate_review(review_id: str, payload: ModerateIn, principal: Principal = Depends(admin_only)):
    return ok(database.serialize_doc(reviews.moderate(review_id, payload.is_approved)))


@app.post("/api/reviews/{review_id}/helpful")
def helpful_review(review_id: str, principal: Principal = Depends(get_principal)):
    return ok(database.serialize_doc(reviews.mark_helpful(review_id)))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
