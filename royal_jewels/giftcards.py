"""
Gift card issue and redemption.

Redemption is one conditional update (unredeemed and unexpired), so two
concurrent redeems of the same code cannot both succeed.
"""

import logging
import math
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from . import config
from .auth import AuthContext
from .database import utcnow
from .errors import (
    AlreadyRedeemed,
    AppError,
    Conflict,
    Forbidden,
    GiftCardExpired,
    InvalidInput,
    InvalidState,
    NotFound,
    PaymentIncomplete,
)
from .notifications import Mailer
from .payments import LineItem, StripeGateway, is_paid
from .schemas import GiftCard

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 5


def validate_amount(amount: Optional[float]) -> float:
    if amount is None or not math.isfinite(amount) or not config.GIFT_CARD_MIN <= amount <= config.GIFT_CARD_MAX:
        raise InvalidInput(f"Gift card amount must be between {config.GIFT_CARD_MIN} and {config.GIFT_CARD_MAX}")
    return float(amount)


def generate_code(length: int = config.GIFT_CARD_CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def public_view(card: dict) -> dict:
    return {
        "code": card["code"],
        "amount": card["amount"],
        "is_redeemed": card.get("is_redeemed", False),
        "expires_at": card["expires_at"],
    }


def issue(
    db: Database,
    amount: float,
    issued_by: Optional[str] = None,
    recipient_email: Optional[str] = None,
    purchase_session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Insert a new card with a fresh code, retrying on the rare code collision."""
    amount = validate_amount(amount)
    now = now or utcnow()
    for _ in range(MAX_CODE_ATTEMPTS):
        card = GiftCard(
            code=generate_code(),
            amount=amount,
            user_id=issued_by,
            expires_at=now + timedelta(days=config.GIFT_CARD_VALIDITY_DAYS),
        ).model_dump()
        card["created_at"] = now
        if recipient_email:
            card["recipient_email"] = recipient_email
        if purchase_session_id:
            card["purchase_session_id"] = purchase_session_id
        try:
            card["_id"] = db["giftcard"].insert_one(card).inserted_id
        except DuplicateKeyError:
            if purchase_session_id and db["giftcard"].find_one({"purchase_session_id": purchase_session_id}):
                raise
            logger.warning("Gift card code collision, retrying")
            continue
        logger.info("Issued gift card %s for %.2f", card["_id"], amount)
        return card
    raise Conflict("Could not allocate a unique gift card code")


def start_purchase(
    db: Database,
    gateway: StripeGateway,
    ctx: AuthContext,
    amount: float,
    recipient_email: Optional[str] = None,
) -> Dict[str, str]:
    amount = validate_amount(amount)
    metadata: Dict[str, Any] = {"kind": "giftcard", "user_id": ctx.user_id, "amount": amount}
    if recipient_email:
        metadata["recipient_email"] = recipient_email
    session = gateway.create_session(
        [LineItem(name="Gift Card", unit_amount=amount, description=f"Gift Card worth Rs. {amount:.2f}")],
        success_url=f"{config.FRONTEND_URL}/gift-card?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{config.FRONTEND_URL}/gift-card",
        metadata=metadata,
        idempotency_key=f"giftcard-{uuid.uuid4().hex}",
    )
    return {"url": session.url, "sessionId": session.id}


def fulfil_purchase(db: Database, session: Dict[str, Any], mailer: Mailer) -> dict:
    """Issue the card paid for by ``session``. Calling it again returns the same card."""
    existing = db["giftcard"].find_one({"purchase_session_id": session["id"]})
    if existing:
        return existing
    metadata = session.get("metadata") or {}
    try:
        amount = float(metadata["amount"])
    except (KeyError, TypeError, ValueError):
        raise InvalidState("Session is not a gift card purchase")
    try:
        card = issue(
            db,
            amount,
            issued_by=metadata.get("user_id"),
            recipient_email=metadata.get("recipient_email") or None,
            purchase_session_id=session["id"],
        )
    except DuplicateKeyError:
        return db["giftcard"].find_one({"purchase_session_id": session["id"]})
    if card.get("recipient_email"):
        mailer.send_gift_card(card, card["recipient_email"])
    return card


def verify_purchase(
    db: Database,
    gateway: StripeGateway,
    mailer: Mailer,
    ctx: AuthContext,
    session_id: str,
    amount: Optional[float] = None,
) -> Dict[str, Any]:
    session = gateway.retrieve_session(session_id)
    metadata = session.get("metadata") or {}
    if metadata.get("kind") != "giftcard":
        raise NotFound("Gift card purchase not found")
    if metadata.get("user_id") != ctx.user_id:
        raise Forbidden("Not authorized")
    if not is_paid(session):
        raise PaymentIncomplete()
    if amount is not None and float(metadata.get("amount", 0)) != float(amount):
        raise InvalidInput("Amount does not match the paid amount")
    card = fulfil_purchase(db, session, mailer)
    return {"success": True, "code": card["code"]}


def lookup(db: Database, code: str) -> dict:
    card = db["giftcard"].find_one({"code": normalize_code(code)})
    if not card:
        raise NotFound("Gift card not found")
    return public_view(card)


def _redeem_failure(db: Database, code: str) -> AppError:
    card = db["giftcard"].find_one({"code": code})
    if not card:
        return NotFound("Gift card not found")
    if card.get("is_redeemed"):
        return AlreadyRedeemed()
    return GiftCardExpired()


def redeem(db: Database, code: str, user_id: str, order_id: Optional[str] = None) -> dict:
    """Mark the card used and return it. Fails for unknown, used or expired cards."""
    code = normalize_code(code)
    now = utcnow()
    changes = {"is_redeemed": True, "redeemed_at": now, "redeemed_by": user_id}
    if order_id:
        changes["applied_to_order"] = order_id
    card = db["giftcard"].find_one_and_update(
        {"code": code, "is_redeemed": False, "expires_at": {"$gt": now}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if card is None:
        raise _redeem_failure(db, code)
    logger.info("Gift card %s redeemed by %s", card["_id"], user_id)
    return card


def release(db: Database, code: str, order_id: str) -> bool:
    """Undo a redemption made for ``order_id``; used when the order could not take the discount."""
    result = db["giftcard"].update_one(
        {"code": normalize_code(code), "applied_to_order": order_id},
        {"$set": {"is_redeemed": False}, "$unset": {"redeemed_at": "", "redeemed_by": "", "applied_to_order": ""}},
    )
    if result.modified_count:
        logger.warning("Released gift card %s from order %s", code, order_id)
    return bool(result.modified_count)
