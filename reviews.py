import logging
from typing import Mapping, Optional

from pymongo import ReturnDocument

from database import oid, utcnow
from errors import NotFoundError, ValidationError
from schemas import Review

logger = logging.getLogger(__name__)


def add_review(db, product_id: str, reviewer: Mapping, rating: int, comment: Optional[str] = None) -> dict:
    """Append a review to a product and recompute its rating average and count.

    One review per reviewer per product: the update is filtered on the
    reviewer not being present yet, so the check and the write happen in the
    same single-document update.
    """
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be an integer between 1 and 5")

    product = db["product"].find_one({"_id": oid(product_id), "is_active": True})
    if not product:
        raise NotFoundError("Product not found")

    reviews = product.get("reviews") or []
    if any(r.get("user") == reviewer["id"] for r in reviews):
        raise ValidationError("Product already reviewed")

    ratings = [r["rating"] for r in reviews] + [rating]
    review = Review(
        user=reviewer["id"],
        name=reviewer.get("name", ""),
        rating=rating,
        comment=comment,
        created_at=utcnow(),
    ).model_dump()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"], "reviews.user": {"$ne": reviewer["id"]}, "ratings.count": len(reviews)},
        {
            "$push": {"reviews": review},
            "$set": {
                "ratings": {"average": sum(ratings) / len(ratings), "count": len(ratings)},
                "updated_at": utcnow(),
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ValidationError("Product already reviewed or modified concurrently, please retry")
    logger.info("Review by %s added to product %s (%s stars)", reviewer["id"], product_id, rating)
    return updated
