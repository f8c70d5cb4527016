"""
Rating and inventory rules for products.

Every function receives the database handle explicitly. Product rating
fields are only ever written by recompute_product_rating, and stock only
ever goes down through decrement_inventory.
"""

import logging
import math
from fractions import Fraction
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import UNLIMITED_INVENTORY
from database import create_document, now
from schemas import Comment, Review as ReviewSchema

logger = logging.getLogger(__name__)


# -----------------
# Ratings
# -----------------

def round_rating(total: int, count: int) -> float:
    """Mean of ``count`` ratings summing to ``total``, half-up to one decimal."""
    if not count:
        return 0.0
    return math.floor(Fraction(total * 10, count) + Fraction(1, 2)) / 10


def recompute_product_rating(db, product_id: str) -> Optional[Dict[str, Any]]:
    """Rewrite avg_rating/total_ratings from the full set of the product's reviews.

    Runs after the triggering review write has committed, so a failure here
    only leaves a stale display value: it is logged and None is returned.
    """
    try:
        agg = list(db["review"].aggregate([
            {"$match": {"product": product_id}},
            {"$group": {"_id": "$product", "total": {"$sum": "$rating"}, "count": {"$sum": 1}}},
        ]))
        total, count = (agg[0]["total"], agg[0]["count"]) if agg else (0, 0)
        fields = {"avg_rating": round_rating(total, count), "total_ratings": count}
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": fields})
    except PyMongoError:
        logger.exception("Rating recompute failed for product %s", product_id)
        return None
    return fields


# -----------------
# Inventory
# -----------------

def apply_inventory_rules(fields: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Normalise inventory/in_stock in ``fields`` right before they are written.

    ``current`` is the stored product for updates and None for creates.
    """
    current = current or {}
    manage = fields.get("manage_inventory", current.get("manage_inventory", True))
    if not manage:
        fields["inventory"] = UNLIMITED_INVENTORY
        if "in_stock" not in fields and current.get("manage_inventory", True):
            fields["in_stock"] = True
        return fields
    inventory = fields.get("inventory", current.get("inventory", 0))
    fields["inventory"] = inventory
    fields["in_stock"] = inventory > 0
    return fields


def decrement_inventory(db, product: Dict[str, Any], quantity: int) -> Optional[Dict[str, Any]]:
    """Take ``quantity`` units out of stock, flooring at zero.

    Each branch is a single conditional document update that writes
    inventory and in_stock together, so concurrent checkouts cannot drive
    stock negative or leave the two fields disagreeing. Unmanaged products
    are returned unchanged. Returns None if the product disappeared.
    """
    if not product.get("manage_inventory", True):
        return product
    _id = product["_id"]
    updated = db["product"].find_one_and_update(
        {"_id": _id, "manage_inventory": True, "inventory": {"$gt": quantity}},
        {"$inc": {"inventory": -quantity}, "$set": {"in_stock": True, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        updated = db["product"].find_one_and_update(
            {"_id": _id, "manage_inventory": True, "inventory": {"$lte": quantity}},
            {"$set": {"inventory": 0, "in_stock": False, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
    if updated is None:
        # deleted, or switched to unmanaged since it was read
        return db["product"].find_one({"_id": _id})
    logger.info("Product %s inventory -%d -> %d", _id, quantity, updated["inventory"])
    return updated


def delete_product_cascade(db, product: Dict[str, Any]) -> int:
    """Delete every review of the product, then the product. Returns reviews removed."""
    product_id = str(product["_id"])
    removed = db["review"].delete_many({"product": product_id}).deleted_count
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Deleted product %s and %d review(s)", product_id, removed)
    return removed


# -----------------
# Reviews
# -----------------

def create_review(db, product: Dict[str, Any], tester_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    if product.get("status") == "closed":
        raise HTTPException(status_code=409, detail="This product is no longer accepting reviews")
    product_id = str(product["_id"])
    if db["review"].find_one({"product": product_id, "tester": tester_id}):
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    review = ReviewSchema(**fields, tester=tester_id, product=product_id)
    try:
        doc = create_document(db, "review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    recompute_product_rating(db, product_id)
    return doc


def update_review(db, review: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    if not changes:
        return review
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {**changes, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Review not found")
    if "rating" in changes and changes["rating"] != review.get("rating"):
        recompute_product_rating(db, review["product"])
    return updated


def delete_review(db, review: Dict[str, Any]) -> None:
    db["review"].delete_one({"_id": review["_id"]})
    recompute_product_rating(db, review["product"])


def add_comment(db, review: Dict[str, Any], user_id: str, text: str) -> Dict[str, Any]:
    comment = Comment(id=str(ObjectId()), text=text, user=user_id, created_at=now())
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$push": {"comments": comment.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Review not found")
    return updated


def remove_comment(db, review: Dict[str, Any], comment_id: str) -> Dict[str, Any]:
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$pull": {"comments": {"id": comment_id}}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Review not found")
    return updated
