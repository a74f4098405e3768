"""
Product reviews and the rating aggregate kept on each product.

Any change to a review's rating or visibility, and any deletion, is followed
by recalculate_rating for the owning product.
"""

from typing import Any, Dict, List, Optional, Tuple

import structlog

from database import Storage, matches
from errors import ConflictError, NotFoundError
from orders import OrderStatus
from pricing import round_half_up
from schemas import Pagination, ProductRating, Review, ReviewResponse, utcnow

logger = structlog.get_logger(__name__)

_PURCHASE_STATES = [OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value]
SORTABLE_FIELDS = {"created_at", "rating", "helpful.count"}


def recalculate_rating(storage: Storage, product_id: str) -> ProductRating:
    ratings = [r["rating"] for r in storage.find("review", {"product_id": product_id, "is_visible": True})]
    if ratings:
        rating = ProductRating(
            average=float(round_half_up(sum(ratings) / len(ratings), 1)),
            count=len(ratings),
        )
    else:
        rating = ProductRating(average=0, count=0)

    storage.update("product", product_id, set_fields={"rating": rating.model_dump()})
    logger.debug("product_rating_recalculated", product_id=product_id, average=rating.average, count=rating.count)
    return rating


def _get_review(storage: Storage, review_id: str, user_id: Optional[str] = None) -> Review:
    doc = storage.get("review", review_id)
    if not doc or (user_id is not None and doc.get("user_id") != user_id):
        raise NotFoundError("Review")
    return Review.model_validate(doc)


def _is_verified_purchase(storage: Storage, user_id: str, product_id: str, order_id: Optional[str]) -> bool:
    query: Dict[str, Any] = {
        "user_id": user_id,
        "items.product_id": product_id,
        "status": {"$in": _PURCHASE_STATES},
    }
    if order_id:
        order = storage.get("order", order_id)
        return bool(order) and matches(order, query)
    return storage.count("order", query) > 0


def list_product_reviews(
    storage: Storage,
    product_id: str,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> Tuple[List[Review], Pagination, Dict[int, int]]:
    query = {"product_id": product_id, "is_visible": True}
    if sort_by not in SORTABLE_FIELDS:
        sort_by = "created_at"
    direction = 1 if sort_order == "asc" else -1

    skip = max(0, (page - 1) * limit)
    docs = storage.find("review", query, sort=[(sort_by, direction)], skip=skip, limit=limit)
    total = storage.count("review", query)

    breakdown: Dict[int, int] = {}
    for doc in storage.find("review", query):
        breakdown[doc["rating"]] = breakdown.get(doc["rating"], 0) + 1
    breakdown = dict(sorted(breakdown.items(), reverse=True))

    return [Review.model_validate(d) for d in docs], Pagination.build(page, limit, total), breakdown


def list_reviews(
    storage: Storage, is_visible: Optional[bool] = None, page: int = 1, limit: int = 20
) -> Tuple[List[Review], Pagination]:
    query: Dict[str, Any] = {}
    if is_visible is not None:
        query["is_visible"] = is_visible
    skip = max(0, (page - 1) * limit)
    docs = storage.find("review", query, sort=[("created_at", -1)], skip=skip, limit=limit)
    return [Review.model_validate(d) for d in docs], Pagination.build(page, limit, storage.count("review", query))


def create_review(
    storage: Storage,
    user_id: str,
    product_id: str,
    rating: int,
    title: Optional[str] = None,
    comment: Optional[str] = None,
    order_id: Optional[str] = None,
) -> Review:
    if storage.get("product", product_id) is None:
        raise NotFoundError("Product")
    if storage.find_one("review", {"user_id": user_id, "product_id": product_id}):
        raise ConflictError("You have already reviewed this product")

    review = Review(
        user_id=user_id,
        product_id=product_id,
        order_id=order_id,
        rating=rating,
        title=title,
        comment=comment,
        is_verified_purchase=_is_verified_purchase(storage, user_id, product_id, order_id),
    )
    review.id = storage.insert("review", review.to_document())
    recalculate_rating(storage, product_id)

    logger.info("review_created", product_id=product_id, rating=rating, verified=review.is_verified_purchase)
    return review


def update_review(
    storage: Storage,
    review_id: str,
    user_id: str,
    rating: Optional[int] = None,
    title: Optional[str] = None,
    comment: Optional[str] = None,
) -> Review:
    review = _get_review(storage, review_id, user_id)
    changes: Dict[str, Any] = {"updated_at": utcnow()}
    if rating is not None:
        changes["rating"] = rating
    if title is not None:
        changes["title"] = title
    if comment is not None:
        changes["comment"] = comment

    storage.update("review", review_id, set_fields=changes)
    if rating is not None:
        recalculate_rating(storage, review.product_id)
    return review.model_copy(update=changes)


def delete_review(storage: Storage, review_id: str, user_id: str) -> None:
    review = _get_review(storage, review_id, user_id)
    storage.delete("review", review_id)
    recalculate_rating(storage, review.product_id)
    logger.info("review_deleted", review_id=review_id, product_id=review.product_id)


def toggle_helpful(storage: Storage, review_id: str, user_id: str) -> int:
    with storage.lock(f"review:{review_id}"):
        review = _get_review(storage, review_id)
        votes = review.helpful
        if user_id in votes.users:
            votes.users.remove(user_id)
            votes.count = max(0, votes.count - 1)
        else:
            votes.users.append(user_id)
            votes.count += 1
        storage.update("review", review_id, set_fields={"helpful": votes.model_dump()})
    return votes.count


def toggle_visibility(storage: Storage, review_id: str) -> bool:
    review = _get_review(storage, review_id)
    visible = not review.is_visible
    storage.update("review", review_id, set_fields={"is_visible": visible, "updated_at": utcnow()})
    recalculate_rating(storage, review.product_id)
    logger.info("review_visibility_changed", review_id=review_id, is_visible=visible)
    return visible


def respond(storage: Storage, review_id: str, text: str, responder_id: str) -> Review:
    review = _get_review(storage, review_id)
    response = ReviewResponse(text=text, responded_by=responder_id)
    storage.update("review", review_id, set_fields={"response": response.model_dump(), "updated_at": utcnow()})
    return review.model_copy(update={"response": response})
