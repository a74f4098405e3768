"""
Cart aggregate: one cart per user, created lazily on first mutation.

Every mutation runs under the user's cart lock (shared with order creation),
so a cart is never modified while it is being turned into an order.
"""

from typing import Any, Dict, List, Optional, Tuple

import structlog

from database import Storage
from errors import InsufficientStockError, NotFoundError, ProductUnavailableError
from pricing import calculate_totals
from schemas import Cart, CartItem, CartLine, CartView, utcnow

logger = structlog.get_logger(__name__)


def cart_lock_key(user_id: str) -> str:
    return f"cart:{user_id}"


def load_cart(storage: Storage, user_id: str) -> Optional[Cart]:
    doc = storage.find_one("cart", {"user_id": user_id})
    return Cart.model_validate(doc) if doc else None


def _get_or_create_cart(storage: Storage, user_id: str) -> Cart:
    cart = load_cart(storage, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        cart.id = storage.insert("cart", cart.to_document())
    return cart


def _save_items(storage: Storage, cart: Cart) -> None:
    cart.last_updated = utcnow()
    storage.update(
        "cart",
        cart.id,
        set_fields={
            "items": [item.model_dump() for item in cart.items],
            "last_updated": cart.last_updated,
        },
    )


def cart_lines(storage: Storage, cart: Optional[Cart]) -> List[Tuple[CartItem, Optional[Dict[str, Any]]]]:
    """Pair every cart item with the current product document (None if it was removed)."""
    if cart is None:
        return []
    return [(item, storage.get("product", item.product_id)) for item in cart.items]


def build_view(storage: Storage, cart: Optional[Cart]) -> CartView:
    lines = cart_lines(storage, cart)
    if not lines:
        return CartView(last_updated=cart.last_updated if cart else None)

    view_items = []
    priced = []
    for item, product in lines:
        available = bool(product and product.get("is_available"))
        price = product.get("price") if product else None
        view_items.append(
            CartLine(
                product_id=item.product_id,
                name=product.get("name") if product else None,
                price=price,
                image=product.get("image") if product else None,
                stock=product.get("stock", 0) if product else 0,
                is_available=available,
                quantity=item.quantity,
                special_instructions=item.special_instructions,
                added_at=item.added_at,
                line_total=price * item.quantity if available else 0,
            )
        )
        if available:
            priced.append((price, item.quantity))

    # Unavailable lines still count as items but are not priced
    totals = calculate_totals(priced).model_copy(update={"item_count": sum(item.quantity for item, _ in lines)})
    return CartView(items=view_items, totals=totals, last_updated=cart.last_updated)


def get_cart(storage: Storage, user_id: str) -> CartView:
    return build_view(storage, load_cart(storage, user_id))


def _available_product(storage: Storage, product_id: str) -> Dict[str, Any]:
    product = storage.get("product", product_id)
    if not product:
        raise NotFoundError("Product")
    if not product.get("is_available"):
        raise ProductUnavailableError(product.get("name", "Product"))
    return product


def add_item(
    storage: Storage,
    user_id: str,
    product_id: str,
    quantity: int = 1,
    special_instructions: Optional[str] = None,
) -> CartView:
    product = _available_product(storage, product_id)

    with storage.lock(cart_lock_key(user_id)):
        cart = _get_or_create_cart(storage, user_id)
        existing = next((i for i in cart.items if i.product_id == product_id), None)
        new_quantity = quantity + (existing.quantity if existing else 0)
        if product.get("stock", 0) < new_quantity:
            raise InsufficientStockError(product["name"])

        if existing:
            existing.quantity = new_quantity
            if special_instructions:
                existing.special_instructions = special_instructions
        else:
            cart.items.append(
                CartItem(product_id=product_id, quantity=quantity, special_instructions=special_instructions)
            )
        _save_items(storage, cart)

    logger.info("cart_item_added", user_id=user_id, product=product["name"], quantity=quantity)
    return build_view(storage, cart)


def update_item(storage: Storage, user_id: str, product_id: str, quantity: int) -> CartView:
    with storage.lock(cart_lock_key(user_id)):
        cart = load_cart(storage, user_id)
        if cart is None:
            raise NotFoundError("Cart")
        existing = next((i for i in cart.items if i.product_id == product_id), None)
        if existing is None:
            raise NotFoundError("Item in cart")

        if quantity <= 0:
            cart.items.remove(existing)
        else:
            product = storage.get("product", product_id)
            if not product:
                raise NotFoundError("Product")
            if product.get("stock", 0) < quantity:
                raise InsufficientStockError(product["name"])
            existing.quantity = quantity
        _save_items(storage, cart)

    return build_view(storage, cart)


def remove_item(storage: Storage, user_id: str, product_id: str) -> CartView:
    with storage.lock(cart_lock_key(user_id)):
        cart = load_cart(storage, user_id)
        if cart is None:
            raise NotFoundError("Cart")
        cart.items = [i for i in cart.items if i.product_id != product_id]
        _save_items(storage, cart)

    return build_view(storage, cart)


def clear_cart(storage: Storage, user_id: str) -> CartView:
    with storage.lock(cart_lock_key(user_id)):
        cart = load_cart(storage, user_id)
        if cart is None:
            raise NotFoundError("Cart")
        cart.items = []
        _save_items(storage, cart)

    return CartView(last_updated=cart.last_updated)
