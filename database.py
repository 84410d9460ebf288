"""
MongoDB access for the storefront.

``db`` is ``None`` when DATABASE_URL / DATABASE_NAME are not configured. Route
handlers receive the database through the ``get_db`` dependency so tests can
substitute an in-memory one.
"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import config
from errors import NotFound

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["coupon"].create_index("code", unique=True)
    database["order"].create_index("order_id", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    # One return per order, enforced by the store rather than a prior read
    database["return"].create_index("order_id", unique=True)
    database["return"].create_index("return_id", unique=True)
    database["checkout"].create_index("gateway_order_id", unique=True, sparse=True)
    database["checkout"].create_index(
        [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"idempotency_key": {"$exists": True}},
    )
    database["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


def to_object_id(value: Any, what: str = "Resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise NotFound(f"{what} not found")
    return ObjectId(str(value))


def public_id(database: Database, collection_name: str, prefix: str, skip: int = 0) -> str:
    """Human-facing identifier such as ``SE17297...0042``; ``skip`` moves past a taken sequence number."""
    count = database[collection_name].count_documents({})
    return f"{prefix}{int(time.time() * 1000)}{count + 1 + skip:04d}"


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    now = datetime.utcnow()
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: ``_id`` -> ``id``, ObjectId -> str, datetime -> ISO."""
    if isinstance(doc, list):
        return [serialize(x) for x in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize(v)
    return out
