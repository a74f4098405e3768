"""
Database Schemas for the Haru Sora Café backend

Each Pydantic model represents a collection in the document store.
Collection name is the lowercase of the class name.

Fields are stored snake_case; on the wire they are camelCase
(e.g. orderNumber, estimatedReadyTime). Both spellings are accepted on input.

We store:
- Product
- Cart (with embedded CartItem lines)
- Order (with embedded OrderItem snapshots)
- User
- Review
- Reservation
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CafeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Document(CafeModel):
    id: Optional[str] = None

    def to_document(self) -> dict:
        """Snake_case dict ready for storage (identifier excluded)."""
        return self.model_dump(exclude={"id"})


# ----------------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------------

CATEGORIES = ["Sushi", "Rolls", "Coffee", "Desserts", "Drinks", "Specials"]


class ProductRating(CafeModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(Document):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Menu item name")
    description: str = Field(..., description="Menu item description")
    price: float = Field(..., ge=0, description="Price in ৳")
    category: str = Field("Sushi", description="One of CATEGORIES")
    image: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_available: bool = True
    stock: int = Field(100, ge=0, description="Available inventory")
    preparation_time: int = Field(15, ge=0, description="Minutes")
    is_vegetarian: bool = False
    is_spicy: bool = False
    is_featured: bool = False
    rating: ProductRating = Field(default_factory=ProductRating)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

class CartItem(CafeModel):
    product_id: str = Field(..., description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")
    special_instructions: Optional[str] = Field(None, max_length=500)
    added_at: datetime = Field(default_factory=utcnow)


class Cart(Document):
    """
    Carts collection schema
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)


class CartTotals(CafeModel):
    subtotal: float = 0
    tax: int = 0
    delivery_fee: int = 0
    total: float = 0
    item_count: int = 0


class CartLine(CafeModel):
    """A cart item joined with the current state of its product."""
    product_id: str
    name: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None
    stock: int = 0
    is_available: bool = False
    quantity: int
    special_instructions: Optional[str] = None
    added_at: Optional[datetime] = None
    line_total: float = 0


class CartView(CafeModel):
    items: List[CartLine] = Field(default_factory=list)
    totals: CartTotals = Field(default_factory=CartTotals)
    last_updated: Optional[datetime] = None


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

class OrderItem(CafeModel):
    product_id: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    special_instructions: Optional[str] = None


class Order(Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    order_number: str
    items: List[OrderItem]
    subtotal: float
    tax: int
    delivery_fee: int
    total: float
    loyalty_points_earned: int = 0
    order_type: str = Field("dine-in", description="dine-in | delivery | takeout")
    table_number: Optional[int] = None
    delivery_address: Optional[str] = None
    payment_method: str = Field("cash", description="cash | card | mobile")
    payment_status: str = "pending"
    notes: Optional[str] = None
    status: str = Field("pending", description="see orders.OrderStatus")
    estimated_ready_time: datetime
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class OrderReceipt(CafeModel):
    id: str
    order_number: str
    status: str
    total: float
    estimated_ready_time: datetime


class OrderTracking(CafeModel):
    order_number: str
    status: str
    order_type: str
    items: List[OrderItem]
    total: float
    estimated_ready_time: datetime
    created_at: datetime


# ----------------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------------

class UserPublic(Document):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    phone: Optional[str] = None
    is_active: bool = Field(True, description="Whether user is active")
    is_admin: bool = Field(False, description="Admin flag")

    # Order statistics, maintained by order creation only
    total_orders: int = 0
    total_spent: float = 0
    loyalty_points: int = 0
    last_order_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class User(UserPublic):
    """
    Users collection schema
    Collection name: "user"
    """
    # Stored in DB, never returned in public responses
    password_hash: Optional[str] = Field(None, description="Hashed password")


# ----------------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------------

class HelpfulVotes(CafeModel):
    count: int = 0
    users: List[str] = Field(default_factory=list)


class ReviewResponse(CafeModel):
    text: str
    responded_at: datetime = Field(default_factory=utcnow)
    responded_by: Optional[str] = None


class Review(Document):
    """
    Reviews collection schema
    Collection name: "review"
    """
    product_id: str
    user_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)
    is_verified_purchase: bool = False
    helpful: HelpfulVotes = Field(default_factory=HelpfulVotes)
    response: Optional[ReviewResponse] = None
    is_visible: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------------
# Reservations
# ----------------------------------------------------------------------------

OCCASIONS = ["none", "birthday", "anniversary", "business", "date", "celebration", "other"]


class Reservation(Document):
    """
    Reservations collection schema
    Collection name: "reservation"
    """
    user_id: Optional[str] = None
    guest_name: str = Field(..., min_length=1)
    guest_email: EmailStr
    guest_phone: str = Field(..., min_length=1)
    date: datetime
    time: str = Field(..., description="Slot start, HH:MM")
    party_size: int = Field(..., ge=1, le=20, description="For parties larger than 20, please call us")
    table_number: Optional[int] = Field(None, ge=1)
    occasion: Optional[str] = None
    special_requests: Optional[str] = Field(None, max_length=500)
    status: str = Field("pending", description="see reservations.ReservationStatus")
    confirmation_code: str
    reminder_sent: bool = False
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Pagination(CafeModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=-(-total // limit) if limit else 1)
