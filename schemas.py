"""
Database Schemas for the Storefront API

Each Pydantic model describes a document shape stored in MongoDB (or the body
of a request that produces one). Collection name is the lowercase singular of
the entity: user, admin, product, category, order, review, setting,
color_analytics, size_analytics, product_analytics.

Request bodies accept both snake_case field names and their camelCase aliases
(customerInfo, zipCode, totalAmount, ...).
"""
from datetime import datetime
from typing import Any, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed"]
PaymentMethod = Literal["cash_on_delivery", "stripe"]
AdminRole = Literal["admin", "super-admin"]
ReviewStatus = Literal["pending", "approved", "rejected"]
InteractionAction = Literal["view", "select", "add_to_cart", "purchase"]
CombinationAction = Literal["color_size_combination", "add_to_cart_combination", "purchase_combination"]

ORDER_STATUSES = get_args(OrderStatus)


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# ---------- Accounts ----------

class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=6)


class User(ApiModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: str = Field("customer")
    is_active: bool = Field(True)
    phone: Optional[str] = None
    address: Optional[str] = None
    stripe_customer_id: Optional[str] = None


class CustomerUpdate(ApiModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = None


class ProfileUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class Admin(ApiModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: AdminRole = "admin"
    is_active: bool = True


class AdminCreate(ApiModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: AdminRole = "admin"


class AdminUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[AdminRole] = None
    is_active: Optional[bool] = None


# ---------- Catalog ----------

class Category(ApiModel):
    name: str = Field(..., min_length=1)
    description: str = Field(...)
    image: str = Field(...)
    parent_id: Optional[str] = Field(None, description="Parent category id")
    featured: bool = False


class CategoryUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    parent_id: Optional[str] = None
    featured: Optional[bool] = None


class ColorVariant(ApiModel):
    name: str
    hex: str
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)


class Product(ApiModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category_id: str = Field(..., description="Category id")
    brand: str
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    color_variants: List[ColorVariant] = Field(default_factory=list)
    simple_colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    featured: bool = False
    is_new_product: bool = True

    @model_validator(mode="after")
    def discount_below_price(self):
        if self.discount_price is not None and self.discount_price >= self.price:
            raise ValueError(f"Discount price ({self.discount_price}) should be below regular price")
        return self


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category_id: Optional[str] = None
    brand: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    color_variants: Optional[List[ColorVariant]] = None
    simple_colors: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    features: Optional[List[str]] = None
    featured: Optional[bool] = None
    is_new_product: Optional[bool] = None


# ---------- Reviews ----------

class ReviewCreate(ApiModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=500)
    title: Optional[str] = Field(None, max_length=100)

    @field_validator("comment", "title", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class ReviewUpdate(ReviewCreate):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=10, max_length=500)


class ReviewStatusUpdate(ApiModel):
    status: ReviewStatus
    admin_response: Optional[str] = None


# ---------- Orders ----------

class CustomerInfo(ApiModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)


class ShippingAddress(ApiModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "US"


class OrderItem(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    color: Optional[str] = None
    size: Optional[str] = None


class OrderCreate(ApiModel):
    """
    Checkout submission. status / payment_status are not part of the schema,
    so client values for them are dropped; the server sets both to pending.
    """
    customer_info: Optional[CustomerInfo] = None
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "cash_on_delivery"
    total_amount: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    idempotency_key: Optional[str] = Field(None, max_length=128)


class OrderStatusUpdate(ApiModel):
    status: str


# ---------- Payments ----------

class PaymentIntentRequest(ApiModel):
    amount: float = Field(..., gt=0, description="Amount in major currency units")
    currency: str = "usd"
    order_id: str
    items: List[dict] = Field(default_factory=list)


class ConfirmPaymentRequest(ApiModel):
    payment_intent_id: str
    order_id: str


class CreateCustomerRequest(ApiModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = None


class SavePaymentMethodRequest(ApiModel):
    payment_method_id: str


class RefundRequest(ApiModel):
    payment_intent_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: str = "requested_by_customer"


# ---------- Settings ----------

class SettingUpdate(ApiModel):
    value: Any
    description: str = ""


# ---------- Analytics ----------

class ColorTrackRequest(ApiModel):
    product_id: str
    color_name: str
    color_hex: str
    action: InteractionAction
    session_id: str


class SizeTrackRequest(ApiModel):
    product_id: str
    size_name: str
    action: InteractionAction
    session_id: str


class CombinationTrackRequest(ApiModel):
    product_id: str
    color_name: str
    color_hex: str
    size_name: str
    action: CombinationAction
    session_id: str


# ---------- Reporting ----------

class TopProduct(ApiModel):
    product_id: Optional[str] = None
    name: str
    sold: int
    revenue: float


class DashboardStats(ApiModel):
    """Admin dashboard figures; rendered with camelCase keys (totalSales, recentOrders, ...)."""
    total_sales: float
    total_orders: int
    total_customers: int
    recent_orders: List[dict]
    top_products: List[TopProduct]
    generated_at: datetime
