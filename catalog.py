"""Menu items: queries, admin edits and the sample menu used for seeding."""

import re
from typing import Any, Dict, List, Optional, Tuple

import structlog

from database import Storage
from errors import InvalidRequestError, NotFoundError
from schemas import CATEGORIES, Pagination, Product, utcnow

logger = structlog.get_logger(__name__)

SORTABLE_FIELDS = {"created_at", "price", "name", "rating.average", "preparation_time"}
# Updated only through the order workflow and rating recalculation
_PROTECTED_FIELDS = {"id", "rating", "created_at"}


def get_product(storage: Storage, product_id: str) -> Product:
    doc = storage.get("product", product_id)
    if not doc:
        raise NotFoundError("Product")
    return Product.model_validate(doc)


def list_products(
    storage: Storage,
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    is_available: Optional[bool] = None,
    is_vegetarian: bool = False,
    is_spicy: bool = False,
    is_featured: bool = False,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Product], Pagination]:
    query: Dict[str, Any] = {}
    if category and category != "All":
        query["category"] = category
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if is_available is not None:
        query["is_available"] = is_available
    if is_vegetarian:
        query["is_vegetarian"] = True
    if is_spicy:
        query["is_spicy"] = True
    if is_featured:
        query["is_featured"] = True

    if sort_by not in SORTABLE_FIELDS:
        sort_by = "created_at"
    direction = 1 if sort_order == "asc" else -1

    skip = max(0, (page - 1) * limit)
    docs = storage.find("product", query, sort=[(sort_by, direction)], skip=skip, limit=limit)
    total = storage.count("product", query)
    return [Product.model_validate(d) for d in docs], Pagination.build(page, limit, total)


def categories(storage: Storage) -> List[Dict[str, Any]]:
    return [
        {"name": c, "count": storage.count("product", {"category": c, "is_available": True})}
        for c in CATEGORIES
        if storage.count("product", {"category": c})
    ]


def featured(storage: Storage, limit: int = 8) -> List[Product]:
    docs = storage.find(
        "product", {"is_featured": True, "is_available": True}, sort=[("rating.average", -1)], limit=limit
    )
    return [Product.model_validate(d) for d in docs]


def _check_category(category: Optional[str]) -> None:
    if category is not None and category not in CATEGORIES:
        raise InvalidRequestError(f"Invalid category: {category}")


def create_product(storage: Storage, product: Product) -> Product:
    _check_category(product.category)
    product.id = storage.insert("product", product.to_document())
    logger.info("product_created", product_id=product.id, name=product.name)
    return product


def update_product(storage: Storage, product_id: str, changes: Dict[str, Any]) -> Product:
    changes = {k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS}
    _check_category(changes.get("category"))
    changes["updated_at"] = utcnow()
    if not storage.update("product", product_id, set_fields=changes):
        raise NotFoundError("Product")
    logger.info("product_updated", product_id=product_id, fields=sorted(changes))
    return get_product(storage, product_id)


def toggle_availability(storage: Storage, product_id: str) -> Product:
    product = get_product(storage, product_id)
    return update_product(storage, product_id, {"is_available": not product.is_available})


# ----------------------------------------------------------------------------
# Seed data
# ----------------------------------------------------------------------------

SAMPLE_PRODUCTS = [
    {
        "name": "Salmon Nigiri",
        "description": "Hand-pressed rice topped with fresh Atlantic salmon.",
        "price": 320,
        "category": "Sushi",
        "tags": ["salmon", "classic"],
        "is_featured": True,
    },
    {
        "name": "Spicy Tuna Roll",
        "description": "Tuna, chili mayo and cucumber wrapped in nori.",
        "price": 380,
        "category": "Rolls",
        "tags": ["tuna", "spicy"],
        "is_spicy": True,
    },
    {
        "name": "Avocado Maki",
        "description": "Creamy avocado roll, a vegetarian favourite.",
        "price": 240,
        "category": "Rolls",
        "tags": ["avocado"],
        "is_vegetarian": True,
    },
    {
        "name": "Iced Matcha Mocha",
        "description": "Ceremonial matcha layered over chocolate espresso.",
        "price": 260,
        "category": "Coffee",
        "tags": ["matcha", "iced"],
        "is_featured": True,
        "preparation_time": 5,
    },
    {
        "name": "Mochi Trio",
        "description": "Strawberry, mango and black sesame mochi.",
        "price": 210,
        "category": "Desserts",
        "tags": ["mochi", "sweet"],
        "is_vegetarian": True,
        "preparation_time": 5,
    },
    {
        "name": "Yuzu Lemonade",
        "description": "Sparkling lemonade with Japanese yuzu.",
        "price": 150,
        "category": "Drinks",
        "tags": ["citrus"],
        "is_vegetarian": True,
        "preparation_time": 3,
    },
]


def seed_products(storage: Storage) -> int:
    if storage.count("product") > 0:
        return 0
    for p in SAMPLE_PRODUCTS:
        create_product(storage, Product(**p))
    logger.info("products_seeded", count=len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)
