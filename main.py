from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from pydantic import EmailStr, Field

import cart as carts
import catalog
import config
import orders
import reservations
import reviews
from database import Storage, get_storage
from errors import CafeError, ConflictError, NotFoundError
from logconfig import configure_logging
from schemas import (
    CafeModel,
    CartView,
    Order,
    OrderReceipt,
    OrderTracking,
    Product,
    Reservation,
    Review,
    User,
    UserPublic,
)

configure_logging()
logger = structlog.get_logger(__name__)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

app = FastAPI(title="Haru Sora Café API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)
    return await call_next(request)


@app.exception_handler(CafeError)
async def cafe_error_handler(request: Request, exc: CafeError):
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

class TokenResponse(CafeModel):
    access_token: str
    token_type: str = "bearer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALG)


def get_current_user(token: str = Depends(oauth2_scheme), storage: Storage = Depends(get_storage)) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    uid = payload.get("sub")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = storage.get("user", uid)
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(CafeModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginRequest(CafeModel):
    email: EmailStr
    password: str


class ProductCreateRequest(CafeModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(..., ge=0)
    category: str = "Sushi"
    image: Optional[str] = None
    tags: List[str] = []
    is_available: bool = True
    stock: int = Field(100, ge=0)
    preparation_time: int = Field(15, ge=0)
    is_vegetarian: bool = False
    is_spicy: bool = False
    is_featured: bool = False


class ProductUpdateRequest(CafeModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    image: Optional[str] = None
    tags: Optional[List[str]] = None
    is_available: Optional[bool] = None
    stock: Optional[int] = Field(None, ge=0)
    preparation_time: Optional[int] = Field(None, ge=0)
    is_vegetarian: Optional[bool] = None
    is_spicy: Optional[bool] = None
    is_featured: Optional[bool] = None


class AddCartRequest(CafeModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    special_instructions: Optional[str] = Field(None, max_length=500)


class UpdateCartRequest(CafeModel):
    user_id: str
    product_id: str
    quantity: int


class RemoveCartRequest(CafeModel):
    user_id: str
    product_id: str


class CreateOrderRequest(CafeModel):
    user_id: str
    order_type: str = orders.OrderType.DINE_IN.value
    table_number: Optional[int] = Field(None, ge=1)
    delivery_address: Optional[str] = None
    payment_method: str = orders.PaymentMethod.CASH.value
    notes: Optional[str] = Field(None, max_length=500)


class StatusRequest(CafeModel):
    status: str
    reason: Optional[str] = None
    table_number: Optional[int] = Field(None, ge=1)


class CancelRequest(CafeModel):
    reason: Optional[str] = Field(None, max_length=500)


class CreateReviewRequest(CafeModel):
    user_id: str
    product_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)


class UpdateReviewRequest(CafeModel):
    user_id: str
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)


class UserRequest(CafeModel):
    user_id: str


class RespondRequest(CafeModel):
    response: str = Field(..., min_length=1)


class ReservationRequest(CafeModel):
    user_id: Optional[str] = None
    guest_name: str = Field(..., min_length=1)
    guest_email: EmailStr
    guest_phone: str = Field(..., min_length=1)
    date: datetime
    time: str
    party_size: int = Field(..., ge=1, le=20)
    occasion: Optional[str] = None
    special_requests: Optional[str] = Field(None, max_length=500)


class ReservationUpdateRequest(CafeModel):
    date: Optional[datetime] = None
    time: Optional[str] = None
    party_size: Optional[int] = Field(None, ge=1, le=20)
    special_requests: Optional[str] = Field(None, max_length=500)


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@app.post("/auth/register", response_model=TokenResponse)
def register(body: RegisterRequest, storage: Storage = Depends(get_storage)):
    email = body.email.lower()
    if storage.find_one("user", {"email": email}):
        raise ConflictError("Email already registered")
    user = User(name=body.name, email=email, phone=body.phone, password_hash=hash_password(body.password))
    uid = storage.insert("user", user.to_document())
    logger.info("user_registered", user_id=uid)
    return TokenResponse(access_token=create_access_token({"sub": uid}))


@app.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, storage: Storage = Depends(get_storage)):
    user = storage.find_one("user", {"email": body.email.lower()})
    if not user or not user.get("password_hash") or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(access_token=create_access_token({"sub": user["id"]}))


@app.get("/me", response_model=UserPublic)
def me(current=Depends(get_current_user)):
    return current


@app.get("/users/{user_id}", response_model=UserPublic)
def get_user(user_id: str, storage: Storage = Depends(get_storage)):
    user = storage.get("user", user_id)
    if not user:
        raise NotFoundError("User")
    return user


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/products")
def list_products(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    is_available: Optional[bool] = Query(None, alias="isAvailable"),
    is_vegetarian: bool = Query(False, alias="isVegetarian"),
    is_spicy: bool = Query(False, alias="isSpicy"),
    is_featured: bool = Query(False, alias="isFeatured"),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    storage: Storage = Depends(get_storage),
):
    products, pagination = catalog.list_products(
        storage,
        category=category,
        search=search,
        min_price=min_price,
        max_price=max_price,
        is_available=is_available,
        is_vegetarian=is_vegetarian,
        is_spicy=is_spicy,
        is_featured=is_featured,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {"products": products, "pagination": pagination}


@app.get("/products/categories")
def list_categories(storage: Storage = Depends(get_storage)):
    return catalog.categories(storage)


@app.get("/products/featured", response_model=List[Product])
def list_featured(storage: Storage = Depends(get_storage)):
    return catalog.featured(storage)


@app.get("/products/{product_id}", response_model=Product)
def get_product(product_id: str, storage: Storage = Depends(get_storage)):
    return catalog.get_product(storage, product_id)


# ----------------------------------------------------------------------------
# Admin: Product Management
# ----------------------------------------------------------------------------

@app.post("/admin/products", response_model=Product, status_code=201)
def admin_create_product(body: ProductCreateRequest, user=Depends(get_current_admin), storage: Storage = Depends(get_storage)):
    return catalog.create_product(storage, Product(**body.model_dump()))


@app.put("/admin/products/{product_id}", response_model=Product)
def admin_update_product(
    product_id: str, body: ProductUpdateRequest, user=Depends(get_current_admin), storage: Storage = Depends(get_storage)
):
    return catalog.update_product(storage, product_id, body.model_dump(exclude_none=True))


@app.patch("/admin/products/{product_id}/availability", response_model=Product)
def admin_toggle_availability(product_id: str, user=Depends(get_current_admin), storage: Storage = Depends(get_storage)):
    return catalog.toggle_availability(storage, product_id)


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@app.get("/cart/{user_id}", response_model=CartView)
def get_cart(user_id: str, storage: Storage = Depends(get_storage)):
    return carts.get_cart(storage, user_id)


@app.post("/cart/add", response_model=CartView)
def add_to_cart(body: AddCartRequest, storage: Storage = Depends(get_storage)):
    return carts.add_item(storage, body.user_id, body.product_id, body.quantity, body.special_instructions)


@app.put("/cart/update", response_model=CartView)
def update_cart(body: UpdateCartRequest, storage: Storage = Depends(get_storage)):
    return carts.update_item(storage, body.user_id, body.product_id, body.quantity)


@app.delete("/cart/remove", response_model=CartView)
def remove_from_cart(body: RemoveCartRequest, storage: Storage = Depends(get_storage)):
    return carts.remove_item(storage, body.user_id, body.product_id)


@app.delete("/cart/clear/{user_id}", response_model=CartView)
def clear_cart(user_id: str, storage: Storage = Depends(get_storage)):
    return carts.clear_cart(storage, user_id)


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

@app.post("/orders", response_model=OrderReceipt, status_code=201)
def create_order(body: CreateOrderRequest, storage: Storage = Depends(get_storage)):
    order = orders.create_order(
        storage,
        body.user_id,
        order_type=body.order_type,
        table_number=body.table_number,
        delivery_address=body.delivery_address,
        payment_method=body.payment_method,
        notes=body.notes,
    )
    return orders.receipt(order)


@app.get("/orders/user/{user_id}")
def list_user_orders(
    user_id: str,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    storage: Storage = Depends(get_storage),
):
    items, pagination = orders.list_orders(storage, user_id=user_id, status=status, page=page, limit=limit)
    return {"orders": items, "pagination": pagination}


@app.get("/orders/track/{order_number}", response_model=OrderTracking)
def track_order(order_number: str, storage: Storage = Depends(get_storage)):
    return orders.track_order(storage, order_number)


@app.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, storage: Storage = Depends(get_storage)):
    return orders.get_order(storage, order_id)


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusRequest, storage: Storage = Depends(get_storage)):
    order = orders.update_status(storage, order_id, body.status)
    return {"message": "Order status updated", "status": order.status}


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[CancelRequest] = None, storage: Storage = Depends(get_storage)):
    orders.cancel_order(storage, order_id, reason=body.reason if body else None)
    return {"message": "Order cancelled successfully"}


@app.get("/orders")
@app.get("/admin/orders")
def admin_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user=Depends(get_current_admin),
    storage: Storage = Depends(get_storage),
):
    items, pagination = orders.list_orders(storage, status=status, page=page, limit=limit)
    return {"orders": items, "pagination": pagination}


# ----------------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------------

@app.get("/reviews/product/{product_id}")
def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    storage: Storage = Depends(get_storage),
):
    items, pagination, breakdown = reviews.list_product_reviews(storage, product_id, page, limit, sort_by, sort_order)
    return {"reviews": items, "pagination": pagination, "ratingBreakdown": breakdown}


@app.post("/reviews", response_model=Review, status_code=201)
def create_review(body: CreateReviewRequest, storage: Storage = Depends(get_storage)):
    return reviews.create_review(
        storage, body.user_id, body.product_id, body.rating, body.title, body.comment, body.order_id
    )


@app.put("/reviews/{review_id}", response_model=Review)
def update_review(review_id: str, body: UpdateReviewRequest, storage: Storage = Depends(get_storage)):
    return reviews.update_review(storage, review_id, body.user_id, body.rating, body.title, body.comment)


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, body: UserRequest, storage: Storage = Depends(get_storage)):
    reviews.delete_review(storage, review_id, body.user_id)
    return {"message": "Review deleted"}


@app.post("/reviews/{review_id}/helpful")
def mark_helpful(review_id: str, body: UserRequest, storage: Storage = Depends(get_storage)):
    return {"helpfulCount": reviews.toggle_helpful(storage, review_id, body.user_id)}


@app.get("/admin/reviews")
def admin_reviews(
    is_visible: Optional[bool] = Query(None, alias="isVisible"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_admin),
    storage: Storage = Depends(get_storage),
):
    items, pagination = reviews.list_reviews(storage, is_visible, page, limit)
    return {"reviews": items, "pagination": pagination}


@app.put("/admin/reviews/{review_id}/visibility")
def admin_toggle_review(review_id: str, user=Depends(get_current_admin), storage: Storage = Depends(get_storage)):
    visible = reviews.toggle_visibility(storage, review_id)
    return {"message": f"Review {'shown' if visible else 'hidden'}", "isVisible": visible}


@app.post("/admin/reviews/{review_id}/respond", response_model=Review)
def admin_respond(review_id: str, body: RespondRequest, user=Depends(get_current_admin), storage: Storage = Depends(get_storage)):
    return reviews.respond(storage, review_id, body.response, user["id"])


# ----------------------------------------------------------------------------
# Reservations
# ----------------------------------------------------------------------------

@app.post("/reservations", response_model=Reservation, status_code=201)
def create_reservation(body: ReservationRequest, storage: Storage = Depends(get_storage)):
    return reservations.create_reservation(storage, **body.model_dump())


@app.get("/reservations/user/{user_id}", response_model=List[Reservation])
def user_reservations(
    user_id: str, status: Optional[str] = None, upcoming: bool = False, storage: Storage = Depends(get_storage)
):
    return reservations.list_user_reservations(storage, user_id, status=status, upcoming=upcoming)


@app.get("/reservations/lookup/{code}")
def lookup_reservation(code: str, storage: Storage = Depends(get_storage)):
    r = reservations.lookup(storage, code)
    return r.model_dump(
        by_alias=True,
        include={"confirmation_code", "guest_name", "date", "time", "party_size", "status", "table_number"},
    )


@app.get("/reservations/available-slots/{day}")
def reservation_slots(day: date, storage: Storage = Depends(get_storage)):
    return reservations.available_slots(storage, day)


@app.get("/reservations/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: str, storage: Storage = Depends(get_storage)):
    return reservations.get_reservation(storage, reservation_id)


@app.put("/reservations/{reservation_id}", response_model=Reservation)
def update_reservation(reservation_id: str, body: ReservationUpdateRequest, storage: Storage = Depends(get_storage)):
    return reservations.update_reservation(storage, reservation_id, **body.model_dump())


@app.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: str, body: Optional[CancelRequest] = None, storage: Storage = Depends(get_storage)):
    reservations.cancel_reservation(storage, reservation_id, reason=body.reason if body else None)
    return {"message": "Reservation cancelled"}


@app.put("/admin/reservations/{reservation_id}/status", response_model=Reservation)
def admin_reservation_status(
    reservation_id: str, body: StatusRequest, user=Depends(get_current_admin), storage: Storage = Depends(get_storage)
):
    return reservations.change_status(storage, reservation_id, body.status, body.reason, body.table_number)


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Haru Sora Café API running"}


@app.get("/health")
def health(storage: Storage = Depends(get_storage)):
    try:
        collections = storage.collections()
        return {"backend": "ok", "storage": type(storage).__name__, "db": "ok", "collections": collections}
    except Exception as e:
        logger.warning("health_check_failed", error=str(e))
        return {"backend": "ok", "storage": type(storage).__name__, "db": f"error: {e}"}


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

def seed_data(storage: Storage) -> None:
    if not storage.find_one("user", {"email": config.ADMIN_EMAIL}):
        admin = User(
            name="Admin",
            email=config.ADMIN_EMAIL,
            password_hash=hash_password(config.ADMIN_PASSWORD),
            is_admin=True,
        )
        storage.insert("user", admin.to_document())
        logger.info("admin_seeded", email=config.ADMIN_EMAIL)
    catalog.seed_products(storage)


@app.post("/admin/seed")
def trigger_seed(user=Depends(get_current_admin), storage: Storage = Depends(get_storage)):
    seed_data(storage)
    return {"seeded": True}


@app.on_event("startup")
def on_startup():
    if not config.SEED_ON_STARTUP:
        return
    try:
        seed_data(get_storage())
    except Exception as e:
        logger.warning("seed_failed", error=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
