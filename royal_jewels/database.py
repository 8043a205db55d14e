"""
MongoDB access helpers.

Collections are named after the lowercase schema class ("user", "product",
"cart", "order", "investment", "giftcard", "rate").
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from . import config
from .errors import InvalidInput

client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[config.DATABASE_NAME]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    # BSON dates come back naive UTC, so everything stored and compared is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidInput("Invalid id")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])
    database["order"].create_index([("payment_session_ids", ASCENDING)])
    database["giftcard"].create_index([("code", ASCENDING)], unique=True)
    # only cards bought through the gateway carry a session id
    database["giftcard"].create_index([("purchase_session_id", ASCENDING)], unique=True, sparse=True)
    database["investment"].create_index([("user_id", ASCENDING)])
    database["investment"].create_index([("session_id", ASCENDING)], unique=True, sparse=True)
