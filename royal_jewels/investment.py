"""
Digital gold and silver.

Purchases are paid through the gateway and credited once the payment is
confirmed; sales are settled immediately. The ledger in the ``investment``
collection is append-only, and each balance change is a single conditional
``$inc`` on the user document.
"""

import logging
import math
import uuid
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from . import config
from .auth import AuthContext
from .database import object_id, serialize, utcnow
from .errors import Conflict, Forbidden, InsufficientBalance, InvalidInput, InvalidState, NotFound, PaymentIncomplete
from .notifications import Mailer
from .payments import LineItem, StripeGateway, is_paid
from .schemas import METALS, Investment

logger = logging.getLogger(__name__)

RATES_KEY = "metals"
BALANCE_FIELDS = {"Gold": "gold_balance", "Silver": "silver_balance"}
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def get_rates(db: Database) -> Dict[str, Any]:
    doc = db["rate"].find_one({"_id": RATES_KEY})
    if not doc:
        return {"Gold": config.DEFAULT_RATES["Gold"], "Silver": config.DEFAULT_RATES["Silver"], "version": 0}
    return {"Gold": doc["Gold"], "Silver": doc["Silver"], "version": doc["version"]}


def update_rates(db: Database, gold: float, silver: float, expected_version: Optional[int] = None) -> Dict[str, Any]:
    """Store new per-gram rates. With ``expected_version`` the write only lands on that version."""
    for rate in (gold, silver):
        if not math.isfinite(rate) or rate <= 0:
            raise InvalidInput("Rates must be positive numbers")
    now = utcnow()
    if expected_version == 0:
        try:
            db["rate"].insert_one({"_id": RATES_KEY, "Gold": gold, "Silver": silver, "version": 1, "updated_at": now})
        except DuplicateKeyError:
            raise Conflict("Rates were changed by someone else")
    else:
        query: Dict[str, Any] = {"_id": RATES_KEY}
        if expected_version is not None:
            query["version"] = expected_version
        doc = db["rate"].find_one_and_update(
            query,
            {"$set": {"Gold": gold, "Silver": silver, "updated_at": now}, "$inc": {"version": 1}},
            upsert=expected_version is None,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise Conflict("Rates were changed by someone else")
    rates = get_rates(db)
    logger.info("Rates updated to gold=%s silver=%s (version %s)", gold, silver, rates["version"])
    return rates


def quote(metal: str, grams: Any, rates: Dict[str, Any]) -> float:
    """Price of ``grams`` of ``metal`` at ``rates``, rounded to paise."""
    if metal not in METALS:
        raise InvalidInput("Type must be Gold or Silver")
    if isinstance(grams, bool) or not isinstance(grams, (int, float)) or not math.isfinite(grams) or grams <= 0:
        raise InvalidInput("Amount must be a positive number")
    return round(grams * rates[metal], 2)


def buy(db: Database, gateway: StripeGateway, ctx: AuthContext, metal: str, grams: float) -> Dict[str, Any]:
    rates = get_rates(db)
    price = quote(metal, grams, rates)
    session = gateway.create_session(
        [LineItem(name=f"Digital {metal}", unit_amount=price, description=f"{grams}g of Digital {metal}")],
        success_url=f"{config.FRONTEND_URL}/investment?session_id={{CHECKOUT_SESSION_ID}}&type=buy",
        cancel_url=f"{config.FRONTEND_URL}/investment",
        metadata={
            "kind": "investment",
            "user_id": ctx.user_id,
            "type": metal,
            "amount": grams,
            "price": price,
            "rate_version": rates["version"],
        },
        idempotency_key=f"investment-{uuid.uuid4().hex}",
    )
    return {"url": session.url, "sessionId": session.id, "price": price}


def credit_purchase(db: Database, session: Dict[str, Any], mailer: Mailer) -> dict:
    """Record a paid purchase and credit the balance. Calling it again for the same session does nothing."""
    existing = db["investment"].find_one({"session_id": session["id"]})
    if existing:
        return existing
    metadata = session.get("metadata") or {}
    try:
        metal = metadata["type"]
        grams = float(metadata["amount"])
        price = float(metadata["price"])
        user_id = metadata["user_id"]
    except (KeyError, TypeError, ValueError):
        raise InvalidState("Session is not an investment purchase")
    if metal not in BALANCE_FIELDS:
        raise InvalidState("Session is not an investment purchase")

    user_oid = object_id(user_id)
    if db["user"].find_one({"_id": user_oid}, {"_id": 1}) is None:
        logger.error("Session %s paid by unknown user %s, nothing credited", session["id"], user_id)
        raise NotFound("User not found")

    entry = Investment(user_id=user_id, type=metal, amount=grams, price=price).model_dump()
    entry.update(session_id=session["id"], created_at=utcnow())
    try:
        db["investment"].insert_one(entry)
    except DuplicateKeyError:
        return db["investment"].find_one({"session_id": session["id"]})

    user = db["user"].find_one_and_update(
        {"_id": user_oid},
        {"$inc": {BALANCE_FIELDS[metal]: grams}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        # ledger row and balance move together
        db["investment"].delete_one({"_id": entry["_id"]})
        logger.error("User %s vanished before session %s was credited", user_id, session["id"])
        raise NotFound("User not found")
    logger.info("Credited %sg %s to user %s", grams, metal, user_id)
    mailer.send_investment_confirmation(entry, user["email"])
    return entry


def verify_buy(
    db: Database,
    gateway: StripeGateway,
    mailer: Mailer,
    ctx: AuthContext,
    session_id: str,
) -> Dict[str, Any]:
    session = gateway.retrieve_session(session_id)
    metadata = session.get("metadata") or {}
    if metadata.get("kind") != "investment":
        raise NotFound("Investment purchase not found")
    if metadata.get("user_id") != ctx.user_id:
        raise Forbidden("Not authorized")
    if not is_paid(session):
        raise PaymentIncomplete()
    entry = credit_purchase(db, session, mailer)
    return {"success": True, "investment": with_rate(serialize(entry))}


def sell(db: Database, mailer: Mailer, ctx: AuthContext, metal: str, grams: float) -> dict:
    price = quote(metal, grams, get_rates(db))
    field = BALANCE_FIELDS[metal]
    user_oid = object_id(ctx.user_id)
    user = db["user"].find_one_and_update(
        {"_id": user_oid, field: {"$gte": grams}},
        {"$inc": {field: -grams}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        raise InsufficientBalance(f"Insufficient {metal.lower()} balance")

    entry = Investment(user_id=ctx.user_id, type=metal, amount=-grams, price=price).model_dump()
    entry["created_at"] = utcnow()
    try:
        db["investment"].insert_one(entry)
    except PyMongoError:
        db["user"].update_one({"_id": user_oid}, {"$inc": {field: grams}})
        logger.exception("Ledger write failed, restored %sg %s to user %s", grams, metal, ctx.user_id)
        raise
    logger.info("User %s sold %sg %s for %.2f", ctx.user_id, grams, metal, price)
    mailer.send_investment_confirmation(entry, ctx.email)
    return with_rate(serialize(entry))


def balances(db: Database, ctx: AuthContext) -> Dict[str, float]:
    user = db["user"].find_one({"_id": object_id(ctx.user_id)})
    if not user:
        raise NotFound("User not found")
    return {"goldBalance": user.get("gold_balance", 0.0), "silverBalance": user.get("silver_balance", 0.0)}


def with_rate(entry: dict) -> dict:
    entry["rate"] = round(entry["price"] / abs(entry["amount"]), 2) if entry["amount"] else 0.0
    return entry


def history(db: Database, user_id: str) -> List[dict]:
    return [with_rate(serialize(e)) for e in db["investment"].find({"user_id": user_id}).sort(NEWEST_FIRST)]
