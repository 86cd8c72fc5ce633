"""
Database Schemas for the storefront

Each Pydantic model represents a document in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

OrderStatus = Literal["pending", "pending_inventory", "completed", "cancelled", "refunded"]

InventoryReason = Literal[
    "sale",
    "return",
    "restock",
    "adjustment",
    "damage",
    "theft",
    "transfer",
    "reservation_expired",
    "manual_correction",
]

StockStatus = Literal["in_stock", "low_stock", "out_of_stock", "backordered"]

MAX_ADJUSTMENT = 10000
NEGATIVE_ONLY_REASONS = ("sale", "damage", "theft", "transfer")
POSITIVE_ONLY_REASONS = ("return", "restock")


# ---------------------- Catalog ----------------------

class Variant(BaseModel):
    variant_id: Optional[str] = None
    attributes: Dict[str, str] = {}
    price: Optional[float] = Field(None, ge=0, description="Overrides the product price")
    stock: int = Field(0, ge=0)
    reserved: int = Field(0, ge=0)
    sku: Optional[str] = None


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    reserved: int = Field(0, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    allow_backorder: bool = False
    image: Optional[str] = None
    variants: List[Variant] = []


class ProductUpdate(BaseModel):
    """Catalog edits. Stock only changes through inventory adjustments."""

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    allow_backorder: Optional[bool] = None
    image: Optional[str] = None
    variants: Optional[List[Variant]] = None


# ---------------------- Users & Cart ----------------------

class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class AppliedCoupon(BaseModel):
    code: str
    discount_percentage: float


class User(BaseModel):
    name: str
    email: EmailStr
    cart_items: List[CartItem] = []
    applied_coupon: Optional[AppliedCoupon] = None


# ---------------------- Coupons ----------------------

class Coupon(BaseModel):
    code: str = Field(..., min_length=3, max_length=32)
    discount_percentage: float = Field(..., ge=0, le=100)
    expires_at: datetime
    active: bool = True
    user_id: Optional[str] = None
    max_uses: Optional[int] = Field(None, ge=1)
    current_uses: int = Field(0, ge=0)
    minimum_purchase_amount: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def uses_within_cap(self):
        if self.max_uses is not None and self.current_uses > self.max_uses:
            raise ValueError("current_uses cannot exceed max_uses")
        return self


class CouponUpdate(BaseModel):
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    expires_at: Optional[datetime] = None
    active: Optional[bool] = None
    user_id: Optional[str] = None
    max_uses: Optional[int] = Field(None, ge=1)
    minimum_purchase_amount: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None


# ---------------------- Orders ----------------------

class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class StatusChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_status: Optional[OrderStatus] = Field(None, alias="from")
    to_status: OrderStatus = Field(..., alias="to")
    timestamp: datetime
    actor_id: Optional[str] = None
    reason: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    subtotal: float
    discount: float = 0
    total_amount: float
    coupon_code: Optional[str] = None
    payment_session_id: str
    payment_intent_id: Optional[str] = None
    webhook_event_id: Optional[str] = None
    status: OrderStatus = "pending"
    status_history: List[StatusChange] = []
    inventory_issues: List[str] = []


# ---------------------- Inventory ----------------------

class InventoryHistoryEntry(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    previous_quantity: int
    new_quantity: int
    adjustment: int
    reason: InventoryReason
    actor_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = {}


class InventoryUpdate(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    adjustment: int
    reason: InventoryReason
    metadata: Dict[str, Any] = {}

    @model_validator(mode="after")
    def adjustment_matches_reason(self):
        if abs(self.adjustment) > MAX_ADJUSTMENT:
            raise ValueError(f"Adjustment value is too large (max: ±{MAX_ADJUSTMENT})")
        if self.reason in NEGATIVE_ONLY_REASONS and self.adjustment > 0:
            raise ValueError("Adjustment sign does not match the reason")
        if self.reason in POSITIVE_ONLY_REASONS and self.adjustment < 0:
            raise ValueError("Adjustment sign does not match the reason")
        return self


# ---------------------- Checkout ----------------------

class CheckoutSession(BaseModel):
    user_id: str
    lines: List[OrderItem]
    coupon_code: Optional[str] = None
    subtotal: float
    discount: float
    total: float
    status: Literal["open", "completed", "failed"] = "open"
    order_id: Optional[str] = None


class WebhookEvent(BaseModel):
    type: str
    processed: bool = False
    order_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
