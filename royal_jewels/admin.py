"""
Admin dashboard rollups and management helpers.

Rollups fetch the relevant documents and aggregate in Python; sales only
count orders that have been paid (Processing or Completed).
"""

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from . import giftcards, investment
from .database import create_document, object_id, serialize, utcnow
from .errors import NotFound
from .schemas import Product

logger = logging.getLogger(__name__)

PAID_STATUSES = ["Processing", "Completed"]
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def _day(doc: dict) -> str:
    return doc["created_at"].strftime("%Y-%m-%d")


def sales_by_day(orders: Iterable[dict], limit: int = 30) -> List[Dict[str, Any]]:
    totals: Dict[str, float] = defaultdict(float)
    for order in orders:
        totals[_day(order)] += order["total_value"]
    return [{"date": day, "totalSales": round(totals[day], 2)} for day in sorted(totals)[-limit:]]


def category_sales(orders: Iterable[dict], products: Dict[str, dict]) -> List[Dict[str, Any]]:
    totals: Dict[str, float] = defaultdict(float)
    for order in orders:
        for item in order["items"]:
            product = products.get(item["product_id"])
            category = product["category"] if product else "Uncategorized"
            totals[category] += item["price"] * item["quantity"]
    return [{"category": name, "sales": round(value, 2)} for name, value in sorted(totals.items())]


def net_grams(entries: Iterable[dict]) -> Dict[str, float]:
    net = {"gold": 0.0, "silver": 0.0}
    for entry in entries:
        net[entry["type"].lower()] += entry["amount"]
    return net


def overview(db: Database) -> Dict[str, Any]:
    orders = list(db["order"].find({"status": {"$in": PAID_STATUSES}}))
    products = {str(p["_id"]): p for p in db["product"].find({}, {"category": 1})}
    return {
        "totalSales": round(sum(o["total_value"] for o in orders), 2),
        "activeUsers": db["user"].count_documents({"is_active": True, "is_banned": {"$ne": True}}),
        "productsSold": sum(item["quantity"] for o in orders for item in o["items"]),
        "giftCardsIssued": db["giftcard"].count_documents({}),
        "salesOverTime": sales_by_day(orders),
        "productCategorySales": category_sales(orders, products),
        "goldVsSilverSales": net_grams(db["investment"].find({}, {"type": 1, "amount": 1})),
    }


def sales_data(db: Database) -> List[Dict[str, Any]]:
    return sales_by_day(db["order"].find({"status": {"$in": PAID_STATUSES}}, {"total_value": 1, "created_at": 1}))


def investment_summary(db: Database) -> Dict[str, Any]:
    bought = {"Gold": 0.0, "Silver": 0.0}
    sold = {"Gold": 0.0, "Silver": 0.0}
    trends: Dict[str, Dict[str, float]] = defaultdict(lambda: {"goldAmount": 0.0, "silverAmount": 0.0})
    for entry in db["investment"].find({}):
        if entry["amount"] > 0:
            bought[entry["type"]] += entry["amount"]
        else:
            sold[entry["type"]] += abs(entry["amount"])
        trends[_day(entry)][f"{entry['type'].lower()}Amount"] += entry["amount"]
    rates = investment.get_rates(db)
    return {
        "totalGoldBought": bought["Gold"],
        "totalSilverBought": bought["Silver"],
        "totalGoldSold": sold["Gold"],
        "totalSilverSold": sold["Silver"],
        "goldRate": rates["Gold"],
        "silverRate": rates["Silver"],
        "ratesVersion": rates["version"],
        "investmentTrends": [{"date": day, **trends[day]} for day in sorted(trends)[-30:]],
    }


def gift_card_stats(db: Database) -> Dict[str, Any]:
    cards = list(db["giftcard"].find({}, {"amount": 1, "is_redeemed": 1}))
    return {
        "totalIssued": len(cards),
        "totalRedeemed": sum(1 for c in cards if c.get("is_redeemed")),
        "totalValue": round(sum(c["amount"] for c in cards), 2),
    }


def list_gift_cards(db: Database) -> List[dict]:
    return [serialize(c) for c in db["giftcard"].find().sort(NEWEST_FIRST)]


def issue_gift_card(db: Database, amount: float) -> dict:
    return serialize(giftcards.issue(db, amount))


# Users
def _public_user(doc: dict) -> dict:
    doc = serialize(doc)
    doc.pop("password_hash", None)
    return doc


def list_users(db: Database) -> List[dict]:
    return [_public_user(u) for u in db["user"].find()]


def user_detail(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": object_id(user_id)})
    if not user:
        raise NotFound("User not found")
    detail = _public_user(user)
    detail["orders"] = [serialize(o) for o in db["order"].find({"user_id": user_id}).sort(NEWEST_FIRST)]
    detail["investments"] = investment.history(db, user_id)
    return detail


def ban_user(db: Database, user_id: str) -> dict:
    user = db["user"].find_one_and_update(
        {"_id": object_id(user_id)},
        {"$set": {"is_banned": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFound("User not found")
    logger.info("User %s banned", user_id)
    return _public_user(user)


# Products and orders
def list_orders(db: Database) -> List[dict]:
    return [serialize(o) for o in db["order"].find().sort(NEWEST_FIRST)]


def create_product(db: Database, product: Product) -> str:
    return create_document(db, "product", product)


def update_product(db: Database, product_id: str, product: Product) -> dict:
    doc = db["product"].find_one_and_update(
        {"_id": object_id(product_id)},
        {"$set": {**product.model_dump(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound("Product not found")
    return serialize(doc)


def delete_product(db: Database, product_id: str) -> None:
    if db["product"].delete_one({"_id": object_id(product_id)}).deleted_count == 0:
        raise NotFound("Product not found")


DEMO_PRODUCTS = [
    {
        "name": "Kundan Bridal Necklace",
        "description": "22k gold necklace set with kundan stones.",
        "price": 185000.0,
        "weight": 32.5,
        "category": "Necklaces",
        "image": "https://images.unsplash.com/photo-1599643478518-a784e5dc4c8f?q=80&w=1200&auto=format&fit=crop",
    },
    {
        "name": "Solitaire Diamond Ring",
        "description": "Half carat solitaire on an 18k white gold band.",
        "price": 96000.0,
        "weight": 3.2,
        "category": "Rings",
        "image": "https://images.unsplash.com/photo-1605100804763-247f67b3557e?q=80&w=1200&auto=format&fit=crop",
    },
    {
        "name": "Temple Jhumka Earrings",
        "description": "Handcrafted gold jhumkas with temple motifs.",
        "price": 54000.0,
        "weight": 9.8,
        "category": "Earrings",
        "image": "https://images.unsplash.com/photo-1535632066927-ab7c9ab60908?q=80&w=1200&auto=format&fit=crop",
    },
    {
        "name": "Sterling Silver Anklets",
        "description": "Pair of 925 silver anklets with ghungroo bells.",
        "price": 3200.0,
        "weight": 40.0,
        "category": "Anklets",
        "image": "https://images.unsplash.com/photo-1611591437281-460bfbe1220a?q=80&w=1200&auto=format&fit=crop",
    },
    {
        "name": "Polki Bangle Pair",
        "description": "Uncut diamond polki bangles in 22k gold.",
        "price": 142000.0,
        "weight": 24.0,
        "category": "Bangles",
        "image": "https://images.unsplash.com/photo-1611085583191-a3b181a88401?q=80&w=1200&auto=format&fit=crop",
    },
]


def seed_products(db: Database) -> int:
    if db["product"].count_documents({}) > 0:
        return 0
    for doc in DEMO_PRODUCTS:
        create_document(db, "product", Product(**doc))
    return len(DEMO_PRODUCTS)
