"""
Database Schemas for the bicycle shop

Pydantic models that define the MongoDB collections used by the app.
Each top-level class name (lowercased) maps to a collection name.
References to other documents are stored as hex id strings.
"""

from datetime import datetime
from typing import List, Literal, Optional, get_args

from pydantic import BaseModel, Field

ProductCategory = Literal["mountain", "road", "hybrid", "electric", "kids", "accessories"]
OrderStatus = Literal["created", "paid", "packed", "shipped", "delivered", "completed", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
DeliveryStatus = Literal["assigned", "picked", "in_transit", "out_for_delivery", "delivered", "failed"]
StockMovement = Literal["in", "out", "reserved", "released", "returned", "adjustment"]
Role = Literal["customer", "admin", "inventory_manager", "delivery_partner"]

CATEGORIES = get_args(ProductCategory)
ORDER_STATUSES = get_args(OrderStatus)
DELIVERY_STATUSES = get_args(DeliveryStatus)


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)


class Ratings(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


# User collection (owned by the auth service; read here for roles and ratings)
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    phone: Optional[str] = Field(None, description="Phone number")
    role: Role = Field("customer", description="customer|admin|inventory_manager|delivery_partner")
    rating: Ratings = Field(default_factory=Ratings, description="Delivery partner rating")
    is_active: bool = Field(True, description="Whether user is active")


# Product collection
class Specifications(BaseModel):
    brand: str = ""
    model: str = ""
    frame_size: str = ""
    wheel_size: str = ""
    weight: str = ""
    color: str = ""
    material: str = ""
    gears: int = 1
    brake_type: str = ""


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    description: str = Field(..., description="Product description")
    category: ProductCategory = Field(..., description="Bicycle category")
    price: float = Field(..., ge=0, description="List price")
    discount_price: float = Field(0, ge=0, description="Sale price, 0 when not discounted")
    specifications: Specifications = Field(default_factory=Specifications)
    images: List[str] = Field(default_factory=list, description="Image URLs")
    stock: int = Field(0, ge=0, description="Committed on-hand units")
    reserved_stock: int = Field(0, ge=0, description="Units held for unpaid orders")
    low_stock_threshold: int = Field(5, ge=0)
    is_available: bool = Field(True, description="Listed for purchase")
    is_featured: bool = False
    ratings: Ratings = Field(default_factory=Ratings)
    tags: List[str] = Field(default_factory=list)


# Inventory collection (one per product, audit log of stock movements)
class StockHistoryEntry(BaseModel):
    type: StockMovement
    quantity: int = Field(..., description="Signed change of the affected counter")
    previous_stock: int
    new_stock: int
    reason: Optional[str] = None
    reference: Optional[str] = Field(None, description="Order id or other reference")
    updated_by: Optional[str] = None
    timestamp: datetime


class StockLocation(BaseModel):
    warehouse: Optional[str] = None
    shelf: Optional[str] = None
    bin: Optional[str] = None


class Inventory(BaseModel):
    product: str
    total_stock: int = Field(0, ge=0)
    reserved_stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    location: StockLocation = Field(default_factory=StockLocation)
    stock_history: List[StockHistoryEntry] = Field(default_factory=list)
    last_restocked: Optional[datetime] = None
    last_sold: Optional[datetime] = None


# Cart collection (one per user)
class CartItem(BaseModel):
    product: str = Field(...)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured when added")


class Cart(BaseModel):
    user: str
    items: List[CartItem] = Field(default_factory=list)
    total_amount: float = 0
    total_items: int = 0


# Order collection
class OrderItem(BaseModel):
    product: str
    name: str = Field(..., description="Snapshot of product name at order time")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at order time")


class Payment(BaseModel):
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    method: Optional[str] = None
    status: PaymentStatus = "pending"
    paid_at: Optional[datetime] = None


class OrderDelivery(BaseModel):
    partner: Optional[str] = None
    estimated_date: Optional[datetime] = None
    actual_date: Optional[datetime] = None
    notes: Optional[str] = None


class StatusHistoryEntry(BaseModel):
    status: str
    note: Optional[str] = None
    updated_by: Optional[str] = None
    timestamp: datetime


class Invoice(BaseModel):
    number: Optional[str] = None
    generated_at: Optional[datetime] = None


class Order(BaseModel):
    user: str = Field(..., description="Id of the ordering user")
    order_number: str = Field(..., description="SON-<epochMillis>-<sequence>")
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: Address
    status: OrderStatus = "created"
    payment: Payment = Field(default_factory=Payment)
    delivery: OrderDelivery = Field(default_factory=OrderDelivery)
    total_amount: float = Field(..., ge=0)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    cancellation_reason: Optional[str] = None
    committed_lines: List[int] = Field(default_factory=list, description="Items committed at payment")
    invoice: Invoice = Field(default_factory=Invoice)


# Delivery collection (one per order)
class DeliveryStatusEntry(BaseModel):
    status: DeliveryStatus
    location: Optional[str] = None
    note: Optional[str] = None
    timestamp: datetime


class Delivery(BaseModel):
    order: str
    partner: str
    status: DeliveryStatus = "assigned"
    estimated_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None
    pickup_address: Optional[Address] = None
    delivery_address: Optional[Address] = None
    notes: Optional[str] = None
    customer_signature: Optional[str] = None
    proof_of_delivery: Optional[str] = Field(None, description="URL of the proof photo")
    status_history: List[DeliveryStatusEntry] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    attempts: int = Field(0, ge=0)


# Review collection: product and delivery reviews share it, split on `type`
class _ReviewBase(BaseModel):
    user: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str = Field(..., min_length=1)
    is_verified_purchase: bool = False
    is_approved: bool = True
    helpful_count: int = Field(0, ge=0)


class ProductReview(_ReviewBase):
    type: Literal["product"] = "product"
    product: str
    order: Optional[str] = None


class DeliveryReview(_ReviewBase):
    type: Literal["delivery"] = "delivery"
    order: str
    delivery_partner: str
