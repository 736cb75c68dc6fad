"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Model name lowercased is the collection name:
- User -> "user"
- Product -> "product"
- Cart -> "cart"
- Order -> "order"
- Review -> "review"

Reference fields (user_id, product_id, ...) are stored as ObjectId.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

Category = Literal[
    "Electronics",
    "Clothing",
    "Books",
    "Home & Garden",
    "Sports & Outdoors",
    "Health & Beauty",
    "Toys & Games",
    "Food & Beverages",
    "Automotive",
    "Jewelry",
    "Others",
]
Role = Literal["user", "admin"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "stripe", "cash_on_delivery"]
OrderSource = Literal["web", "mobile", "admin", "api"]
FlagReason = Literal["inappropriate", "spam", "fake", "offensive", "other"]


class Mongo(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class User(Mongo):
    name: str = Field(..., min_length=2, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field("user", description="Role: user | admin")
    address: Address = Field(default_factory=Address)
    phone_number: Optional[str] = None
    profile_picture: str = ""
    is_email_verified: bool = False
    is_active: bool = Field(True, description="False once the account is soft-deleted")
    last_login: Optional[datetime] = None
    refresh_token: Optional[str] = None
    password_reset_token: Optional[str] = Field(None, description="sha256 of the emailed reset token")
    password_reset_expires: Optional[datetime] = None
    email_verification_token: Optional[str] = Field(None, description="sha256 of the emailed verification token")
    wishlist: List[Any] = Field(default_factory=list, description="Product ObjectIds")

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower()


class ProductImage(BaseModel):
    url: str
    public_id: Optional[str] = None
    alt: Optional[str] = None


class ProductFeature(BaseModel):
    name: str
    value: str


class Product(Mongo):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    category: Category
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    images: List[ProductImage] = Field(default_factory=list)
    thumbnail: str = ""
    tags: List[str] = Field(default_factory=list)
    features: List[ProductFeature] = Field(default_factory=list)
    specifications: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    is_featured: bool = False
    average_rating: float = Field(0, ge=0, le=5)
    num_reviews: int = Field(0, ge=0)
    total_sold: int = Field(0, ge=0)
    views: int = Field(0, ge=0)
    created_by: Any = None
    updated_by: Any = None

    @field_validator("price", "original_price", "sale_price")
    @classmethod
    def round_price(cls, v):
        return round(v, 2) if v is not None else v


class ProductSnapshot(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None
    sku: Optional[str] = None
    stock: Optional[int] = None


class CartItem(Mongo):
    product_id: Any
    quantity: int = Field(..., ge=1, le=99)
    price: float = Field(..., ge=0)
    product_snapshot: ProductSnapshot = Field(default_factory=ProductSnapshot)
    added_at: Optional[datetime] = None


class SavedItem(Mongo):
    product_id: Any
    saved_at: Optional[datetime] = None


class Cart(Mongo):
    user_id: Any
    items: List[CartItem] = Field(default_factory=list)
    saved_items: List[SavedItem] = Field(default_factory=list)
    subtotal: float = Field(0, ge=0)
    total_items: int = Field(0, ge=0)
    last_activity: Optional[datetime] = None


class OrderItem(Mongo):
    product_id: Any
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: str = ""
    sku: Optional[str] = None


class ShippingAddress(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "United States"


class StatusEntry(Mongo):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Any = None


class Order(Mongo):
    order_number: str
    user_id: Any
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    tax_rate: float = Field(0, ge=0, le=1)
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod = "credit_card"
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: OrderStatus = "pending"
    status_history: List[StatusEntry] = Field(default_factory=list)
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    customer_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    return_reason: Optional[str] = None
    delivered_at: Optional[datetime] = None
    source: OrderSource = "web"
    invoice_number: Optional[str] = None
    invoice_date: Optional[datetime] = None


class HelpfulVote(Mongo):
    user_id: Any
    is_helpful: bool
    voted_at: datetime


class ReviewFlag(Mongo):
    reason: FlagReason
    reported_by: Any
    reported_at: datetime


class Review(Mongo):
    user_id: Any
    product_id: Any
    order_id: Any = None
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    is_verified_purchase: bool = False
    is_approved: bool = True
    helpful_count: int = Field(0, ge=0)
    not_helpful_count: int = Field(0, ge=0)
    helpful_votes: List[HelpfulVote] = Field(default_factory=list)
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    product_quality: Optional[int] = Field(None, ge=1, le=5)
    value_for_money: Optional[int] = Field(None, ge=1, le=5)
    delivery_speed: Optional[int] = Field(None, ge=1, le=5)
    customer_service: Optional[int] = Field(None, ge=1, le=5)
    flagged_count: int = Field(0, ge=0)
    flagged_reasons: List[ReviewFlag] = Field(default_factory=list)
    admin_notes: Optional[str] = None
    moderated_by: Any = None
    moderated_at: Optional[datetime] = None
