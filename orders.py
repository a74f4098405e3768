"""
Order workflow: turns a user's cart into an immutable order and drives the
order through its status lifecycle.

State machine:
    pending → confirmed → preparing → ready → (out-for-delivery →) delivered
    ready → completed | no-show
    pending | confirmed → cancelled

Terminal states: delivered, cancelled, completed, no-show.

Order creation is a small saga: stock decrements, the order record, the
user's statistics and the emptied cart are applied one after another, each
registering a compensation. If any step fails the compensations run in
reverse, so stock is never left decremented without an order (or the other
way around).
"""

import secrets
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from cart import cart_lock_key, cart_lines, load_cart
from database import Storage
from errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    ProductUnavailableError,
)
from pricing import calculate_totals, loyalty_points_for
from schemas import Order, OrderItem, OrderReceipt, OrderTracking, Pagination, utcnow

logger = structlog.get_logger(__name__)

ESTIMATED_READY_MINUTES = 30
ORDER_NUMBER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    NO_SHOW = "no-show"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    DINE_IN = "dine-in"
    DELIVERY = "delivery"
    TAKEOUT = "takeout"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE = "mobile"


_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY},
    OrderStatus.READY: {
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
        OrderStatus.NO_SHOW,
    },
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.COMPLETED: set(),
    OrderStatus.NO_SHOW: set(),
    OrderStatus.CANCELLED: set(),
}

CANCELLABLE_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}
TERMINAL_STATES = {s for s, targets in _VALID_TRANSITIONS.items() if not targets}
_COMPLETION_STATES = {OrderStatus.READY, OrderStatus.DELIVERED, OrderStatus.COMPLETED}


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidRequestError(f"Invalid status: {value}")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in _VALID_TRANSITIONS[current]


# ----------------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------------

class _Compensations:
    """Undo actions for the steps of a multi-step write, run newest first."""

    def __init__(self):
        self._actions: List[Tuple[str, Callable[[], Any]]] = []

    def add(self, description: str, action: Callable[[], Any]) -> None:
        self._actions.append((description, action))

    def rollback(self) -> None:
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
            except Exception:
                logger.exception("compensation_failed", step=description)


def generate_order_number(storage: Storage, attempts: int = 10) -> str:
    prefix = "HS" + utcnow().strftime("%y%m%d")
    for _ in range(attempts):
        suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
        number = f"{prefix}-{suffix}"
        if storage.find_one("order", {"order_number": number}) is None:
            return number
    raise RuntimeError("Could not allocate a unique order number")


def _validate_lines(lines) -> List[OrderItem]:
    items = []
    for item, product in lines:
        if not product or not product.get("is_available"):
            raise ProductUnavailableError(product.get("name", "Product") if product else "Product")
        if product.get("stock", 0) < item.quantity:
            raise InsufficientStockError(product["name"])
        items.append(
            OrderItem(
                product_id=item.product_id,
                name=product["name"],
                price=product["price"],
                quantity=item.quantity,
                special_instructions=item.special_instructions,
            )
        )
    return items


def create_order(
    storage: Storage,
    user_id: str,
    order_type: str = OrderType.DINE_IN.value,
    table_number: Optional[int] = None,
    delivery_address: Optional[str] = None,
    payment_method: str = PaymentMethod.CASH.value,
    notes: Optional[str] = None,
) -> Order:
    try:
        order_type = OrderType(order_type)
    except ValueError:
        raise InvalidRequestError(f"Invalid order type: {order_type}")
    try:
        payment_method = PaymentMethod(payment_method)
    except ValueError:
        raise InvalidRequestError(f"Invalid payment method: {payment_method}")

    with storage.lock(cart_lock_key(user_id)):
        if storage.get("user", user_id) is None:
            raise NotFoundError("User")

        cart = load_cart(storage, user_id)
        if cart is None or not cart.items:
            raise EmptyCartError()

        # All-or-nothing: every line is checked before anything is written
        items = _validate_lines(cart_lines(storage, cart))
        totals = calculate_totals((i.price, i.quantity) for i in items)
        points = loyalty_points_for(totals.total)

        now = utcnow()
        order = Order(
            user_id=user_id,
            order_number=generate_order_number(storage),
            items=items,
            subtotal=totals.subtotal,
            tax=totals.tax,
            delivery_fee=totals.delivery_fee,
            total=totals.total,
            loyalty_points_earned=points,
            order_type=order_type.value,
            table_number=table_number if order_type == OrderType.DINE_IN else None,
            delivery_address=delivery_address if order_type == OrderType.DELIVERY else None,
            payment_method=payment_method.value,
            notes=notes,
            status=OrderStatus.PENDING.value,
            estimated_ready_time=now + timedelta(minutes=ESTIMATED_READY_MINUTES),
            created_at=now,
            updated_at=now,
        )

        saga = _Compensations()
        try:
            for item in items:
                # Conditional decrement: a concurrent order may have taken the stock
                if not storage.increment_if("product", item.product_id, "stock", -item.quantity, {"is_available": True}):
                    raise InsufficientStockError(item.name)
                saga.add(f"restore stock {item.product_id}", _restock(storage, item))

            order.id = storage.insert("order", order.to_document())
            saga.add(f"delete order {order.id}", lambda: storage.delete("order", order.id))

            storage.update(
                "user",
                user_id,
                set_fields={"last_order_date": now},
                inc={"total_orders": 1, "total_spent": totals.total, "loyalty_points": points},
            )
            saga.add(
                f"revert stats {user_id}",
                lambda: storage.update(
                    "user",
                    user_id,
                    inc={"total_orders": -1, "total_spent": -totals.total, "loyalty_points": -points},
                ),
            )

            storage.update("cart", cart.id, set_fields={"items": [], "last_updated": now})
        except Exception:
            logger.warning("order_creation_rolled_back", user_id=user_id, order_number=order.order_number)
            saga.rollback()
            raise

    logger.info(
        "order_created",
        order_number=order.order_number,
        user_id=user_id,
        total=order.total,
        items=len(items),
    )
    return order


def _restock(storage: Storage, item: OrderItem) -> Callable[[], bool]:
    return lambda: storage.update("product", item.product_id, inc={"stock": item.quantity})


def receipt(order: Order) -> OrderReceipt:
    return OrderReceipt(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        total=order.total,
        estimated_ready_time=order.estimated_ready_time,
    )


# ----------------------------------------------------------------------------
# Status lifecycle
# ----------------------------------------------------------------------------

def get_order(storage: Storage, order_id: str) -> Order:
    doc = storage.get("order", order_id)
    if not doc:
        raise NotFoundError("Order")
    return Order.model_validate(doc)


def transition(storage: Storage, order: Order, target: OrderStatus, reason: Optional[str] = None) -> Order:
    """The single way an order changes status.

    Entering `cancelled` restores stock for every line. The write is a
    compare-and-set on the previous status, so a concurrent transition
    cannot apply the same side effects twice.
    """
    current = OrderStatus(order.status)
    if not can_transition(current, target):
        raise InvalidStateError(current.value, target.value)

    now = utcnow()
    changes: Dict[str, Any] = {"status": target.value, "updated_at": now}
    if target in _COMPLETION_STATES:
        changes["completed_at"] = now
    if target == OrderStatus.CANCELLED:
        changes["cancelled_at"] = now
        changes["cancellation_reason"] = reason

    if not storage.update("order", order.id, set_fields=changes, query={"status": current.value}):
        latest = get_order(storage, order.id)
        raise InvalidStateError(latest.status, target.value)

    if target == OrderStatus.CANCELLED:
        for item in order.items:
            try:
                storage.update("product", item.product_id, inc={"stock": item.quantity})
            except Exception:
                logger.exception(
                    "restock_failed", order_id=order.id, product_id=item.product_id, quantity=item.quantity
                )

    logger.info("order_status_changed", order_number=order.order_number, old=current.value, new=target.value)
    return order.model_copy(update=changes)


def cancel_order(storage: Storage, order_id: str, reason: Optional[str] = None) -> Order:
    # Loyalty points and spend accrued at creation are intentionally kept.
    order = get_order(storage, order_id)
    if OrderStatus(order.status) not in CANCELLABLE_STATES:
        raise InvalidStateError(order.status)
    return transition(storage, order, OrderStatus.CANCELLED, reason=reason)


def update_status(storage: Storage, order_id: str, status: str) -> Order:
    target = parse_status(status)
    order = get_order(storage, order_id)
    return transition(storage, order, target)


# ----------------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------------

def track_order(storage: Storage, order_number: str) -> OrderTracking:
    doc = storage.find_one("order", {"order_number": order_number.upper()})
    if not doc:
        raise NotFoundError("Order")
    return OrderTracking.model_validate(doc)


def list_orders(
    storage: Storage,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Order], Pagination]:
    query: Dict[str, Any] = {}
    if user_id:
        query["user_id"] = user_id
    if status:
        query["status"] = parse_status(status).value

    skip = max(0, (page - 1) * limit)
    docs = storage.find("order", query, sort=[("created_at", -1)], skip=skip, limit=limit)
    total = storage.count("order", query)
    return [Order.model_validate(d) for d in docs], Pagination.build(page, limit, total)
