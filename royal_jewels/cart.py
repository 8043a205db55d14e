"""
Per-user shopping cart.

A duplicate add replaces the line's quantity; the storefront always sends the
absolute quantity it wants. Every mutation is a single update on the cart
document so concurrent requests cannot lose each other's lines.
"""

import logging
from typing import List

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .auth import AuthContext
from .database import object_id, serialize, utcnow
from .errors import InvalidInput, NotFound
from .schemas import CartLine

logger = logging.getLogger(__name__)


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise InvalidInput("Quantity must be at least 1")


def ensure_cart(db: Database, user_id: str) -> dict:
    try:
        return db["cart"].find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"user_id": user_id, "items": [], "created_at": utcnow()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # lost the race to create it
        return db["cart"].find_one({"user_id": user_id})


def resolve_lines(db: Database, cart: dict) -> List[dict]:
    items = cart.get("items", [])
    ids = [ObjectId(item["product_id"]) for item in items]
    products = {str(p["_id"]): serialize(p) for p in db["product"].find({"_id": {"$in": ids}})}
    return [
        {
            "id": item["id"],
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "product": products.get(item["product_id"]),
        }
        for item in items
    ]


def get_cart(db: Database, ctx: AuthContext) -> List[dict]:
    return resolve_lines(db, ensure_cart(db, ctx.user_id))


def add_or_update(db: Database, ctx: AuthContext, product_id: str, quantity: int) -> List[dict]:
    _check_quantity(quantity)
    if not db["product"].find_one({"_id": object_id(product_id)}):
        raise NotFound("Product not found")
    ensure_cart(db, ctx.user_id)

    now = utcnow()
    existing = {"user_id": ctx.user_id, "items.product_id": product_id}
    replace = {"$set": {"items.$.quantity": quantity, "updated_at": now}}
    if db["cart"].update_one(existing, replace).matched_count == 0:
        line = CartLine(id=str(ObjectId()), product_id=product_id, quantity=quantity).model_dump()
        pushed = db["cart"].update_one(
            {"user_id": ctx.user_id, "items.product_id": {"$ne": product_id}},
            {"$push": {"items": line}, "$set": {"updated_at": now}},
        )
        if pushed.matched_count == 0:
            # a concurrent add created the line first
            db["cart"].update_one(existing, replace)
    return get_cart(db, ctx)


def update_quantity(db: Database, ctx: AuthContext, line_id: str, quantity: int) -> List[dict]:
    _check_quantity(quantity)
    result = db["cart"].update_one(
        {"user_id": ctx.user_id, "items.id": line_id},
        {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        if not db["cart"].find_one({"user_id": ctx.user_id}):
            raise NotFound("Cart not found")
        raise NotFound("Item not found in cart")
    return get_cart(db, ctx)


def remove(db: Database, ctx: AuthContext, line_or_product_id: str) -> List[dict]:
    """Drop a line by line id or product id. Removing something absent is not an error."""
    cart = ensure_cart(db, ctx.user_id)
    for field in ("id", "product_id"):
        result = db["cart"].update_one({"_id": cart["_id"]}, {"$pull": {"items": {field: line_or_product_id}}})
        if result.modified_count:
            logger.debug("Removed cart line %s for user %s", line_or_product_id, ctx.user_id)
            break
    return get_cart(db, ctx)


def remove_lines(db: Database, user_id: str, lines: List[dict]) -> None:
    """Drop lines that were ordered. A line re-added or re-quantified since the snapshot stays."""
    for line in lines:
        db["cart"].update_one(
            {"user_id": user_id},
            {"$pull": {"items": {"id": line["id"], "quantity": line["quantity"]}}},
        )
