"""
Orders: cart snapshots with frozen prices, checkout handoff and payment verification.

Status flow: Pending -> Processing (payment verified) -> Completed (gateway
webhook). Cancelled is set by admins. Every transition is a conditional update
on the previous status, so repeating a verification or a webhook is a no-op.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from . import cart as cart_service
from . import config, giftcards
from .auth import AuthContext
from .database import object_id, serialize, utcnow
from .errors import Conflict, Forbidden, InvalidInput, InvalidState, NotFound, PaymentIncomplete, UpstreamFailure
from .notifications import Mailer
from .payments import CheckoutSession, LineItem, StripeGateway, is_paid, to_minor_units
from .schemas import ORDER_STATUSES, Order, OrderItem

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def build_line_items(lines: List[dict], products: Dict[str, dict]) -> Tuple[List[dict], float]:
    """Freeze current product prices into order lines and total them."""
    if not lines:
        raise InvalidState("Cart is empty")
    items = []
    for line in lines:
        product = products.get(line["product_id"])
        if product is None:
            raise NotFound(f"Product not found: {line['product_id']}")
        items.append(
            OrderItem(
                product_id=line["product_id"],
                name=product["name"],
                quantity=line["quantity"],
                price=product["price"],
            ).model_dump()
        )
    total = round(sum(item["price"] * item["quantity"] for item in items), 2)
    return items, total


def amount_due(order: dict) -> float:
    return round(max(0.0, order["total_value"] - order.get("discount", 0.0)), 2)


def gateway_items(order: dict) -> List[LineItem]:
    if order.get("discount"):
        # the provider has no per-line discount, so charge the reduced total as one line
        return [
            LineItem(
                name=f"Royal Jewels order {order['_id']}",
                unit_amount=amount_due(order),
                description=f"Gift card {order['gift_card_code']} applied",
            )
        ]
    return [LineItem(name=item["name"], unit_amount=item["price"], quantity=item["quantity"]) for item in order["items"]]


def _open_session(gateway: StripeGateway, order: dict, idempotency_key: str) -> CheckoutSession:
    return gateway.create_session(
        gateway_items(order),
        success_url=f"{config.FRONTEND_URL}/checkout?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{config.FRONTEND_URL}/cart",
        metadata={"kind": "order", "order_id": str(order["_id"]), "user_id": order["user_id"]},
        idempotency_key=idempotency_key,
    )


def create_order(db: Database, gateway: StripeGateway, ctx: AuthContext) -> Dict[str, str]:
    cart = db["cart"].find_one({"user_id": ctx.user_id})
    lines = cart.get("items", []) if cart else []
    if not lines:
        raise InvalidState("Cart is empty")

    ids = [ObjectId(line["product_id"]) for line in lines]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}
    items, total = build_line_items(lines, products)

    # Open the payment session before writing anything, so a gateway failure leaves no order behind
    order_oid = ObjectId()
    draft = {"_id": order_oid, "user_id": ctx.user_id, "items": items, "total_value": total}
    session = _open_session(gateway, draft, idempotency_key=f"order-{order_oid}")

    now = utcnow()
    doc = Order(
        user_id=ctx.user_id,
        items=items,
        total_value=total,
        payment_session_id=session.id,
        payment_session_ids=[session.id],
        checkout_url=session.url,
    ).model_dump()
    doc.update(_id=order_oid, created_at=now, updated_at=now)
    db["order"].insert_one(doc)
    cart_service.remove_lines(db, ctx.user_id, lines)
    logger.info("Order %s created for user %s, total %.2f", order_oid, ctx.user_id, total)
    return {"orderId": str(order_oid), "checkoutUrl": session.url}


def _owned_order(db: Database, ctx: AuthContext, order_id: str) -> dict:
    order = db["order"].find_one({"_id": object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != ctx.user_id and not ctx.is_admin:
        raise Forbidden("Not authorized")
    return order


def get_order(db: Database, ctx: AuthContext, order_id: str) -> dict:
    return serialize(_owned_order(db, ctx, order_id))


def list_orders(db: Database, ctx: AuthContext) -> List[dict]:
    return [serialize(o) for o in db["order"].find({"user_id": ctx.user_id}).sort(NEWEST_FIRST)]


def apply_gift_card(db: Database, order: dict, code: str, user_id: str) -> dict:
    """Redeem ``code`` against a pending order and record the discount on it.

    The card is redeemed first with the order id attached; if the order can no
    longer take the discount the card is released again.
    """
    if order.get("gift_card_code"):
        raise Conflict("A gift card is already applied to this order")
    order_id = str(order["_id"])
    card = giftcards.redeem(db, code, user_id, order_id=order_id)
    discount = round(min(card["amount"], order["total_value"]), 2)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "Pending", "gift_card_code": {"$exists": False}},
        {"$set": {"gift_card_code": card["code"], "discount": discount, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        giftcards.release(db, card["code"], order_id)
        raise Conflict("Order can no longer take a gift card")
    logger.info("Gift card %s applied to order %s (discount %.2f)", card["_id"], order_id, discount)
    return updated


def remove_gift_card(db: Database, order: dict) -> None:
    code = order.get("gift_card_code")
    if not code:
        return
    db["order"].update_one(
        {"_id": order["_id"], "gift_card_code": code, "status": "Pending"},
        {"$unset": {"gift_card_code": "", "discount": ""}},
    )
    giftcards.release(db, code, str(order["_id"]))


def find_by_session(db: Database, session_id: str) -> Optional[dict]:
    """The order any of whose issued sessions is ``session_id``."""
    return db["order"].find_one({"payment_session_ids": session_id})


def mark_processing(db: Database, session_id: str) -> Optional[dict]:
    """Pending -> Processing. Returns the order only if this call made the transition."""
    return db["order"].find_one_and_update(
        {"payment_session_ids": session_id, "status": "Pending"},
        {"$set": {"status": "Processing", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def mark_completed(db: Database, session_id: str) -> Optional[dict]:
    """Pending|Processing -> Completed. Returns the order as it was before the change."""
    return db["order"].find_one_and_update(
        {"payment_session_ids": session_id, "status": {"$in": ["Pending", "Processing"]}},
        {"$set": {"status": "Completed", "updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )


def send_confirmation(db: Database, mailer: Mailer, order: dict, email: Optional[str] = None) -> None:
    if email is None:
        user = db["user"].find_one({"_id": object_id(order["user_id"])})
        email = user.get("email") if user else None
    if email:
        mailer.send_order_confirmation(order, email)


def checkout(
    db: Database,
    gateway: StripeGateway,
    mailer: Mailer,
    ctx: AuthContext,
    order_id: str,
    gift_card_code: Optional[str] = None,
) -> Dict[str, Any]:
    order = _owned_order(db, ctx, order_id)
    if order["status"] != "Pending":
        raise InvalidState("Order is not awaiting payment")

    applied = False
    if gift_card_code:
        order = apply_gift_card(db, order, gift_card_code, ctx.user_id)
        applied = True

    due = amount_due(order)
    if due == 0:
        paid = db["order"].find_one_and_update(
            {"_id": order["_id"], "status": "Pending"},
            {"$set": {"status": "Processing", "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if paid:
            logger.info("Order %s settled in full by gift card", order["_id"])
            send_confirmation(db, mailer, paid, ctx.email)
        return {"url": None, "status": "Processing"}

    if not order.get("discount") and order.get("checkout_url"):
        # amount due is unchanged, so the session opened with the order still applies
        return {"url": order["checkout_url"], "status": "Pending"}

    try:
        session = _open_session(gateway, order, idempotency_key=f"order-{order['_id']}-{to_minor_units(due)}")
    except UpstreamFailure:
        if applied:
            remove_gift_card(db, order)
        raise

    # earlier sessions stay attached so paying any of them still settles the order
    db["order"].update_one(
        {"_id": order["_id"], "status": "Pending"},
        {
            "$set": {"payment_session_id": session.id, "checkout_url": session.url, "updated_at": utcnow()},
            "$addToSet": {"payment_session_ids": session.id},
        },
    )
    return {"url": session.url, "status": "Pending"}


def verify_payment(
    db: Database,
    gateway: StripeGateway,
    mailer: Mailer,
    ctx: AuthContext,
    session_id: str,
) -> Dict[str, Any]:
    order = find_by_session(db, session_id)
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != ctx.user_id:
        raise Forbidden("Not authorized")

    session = gateway.retrieve_session(session_id)
    if not is_paid(session):
        raise PaymentIncomplete()

    advanced = mark_processing(db, session_id)
    if advanced:
        logger.info("Order %s payment verified", advanced["_id"])
        send_confirmation(db, mailer, advanced, ctx.email)
        return {"success": True, "status": advanced["status"]}
    current = db["order"].find_one({"_id": order["_id"]})
    return {"success": True, "status": current["status"]}


def set_status(db: Database, order_id: str, status: str) -> dict:
    if status not in ORDER_STATUSES:
        raise InvalidInput(f"Unknown status: {status}")
    order = db["order"].find_one_and_update(
        {"_id": object_id(order_id)},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFound("Order not found")
    logger.info("Order %s set to %s by admin", order_id, status)
    return serialize(order)
