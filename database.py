"""
MongoDB access helpers.

Collections are named after the document they hold (Product -> "product").
Handles are created by the app factory and passed into the services.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationError


def connect(database_url: str, database_name: str) -> Database:
    client = MongoClient(database_url, tz_aware=True)
    return client[database_name]


def ensure_indexes(db: Database) -> None:
    db["order"].create_index("payment_session_id", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["coupon"].create_index("code", unique=True)
    db["inventory_history"].create_index(
        [("product_id", ASCENDING), ("variant_id", ASCENDING), ("timestamp", DESCENDING)]
    )
    db["inventory_history"].create_index([("reason", ASCENDING), ("timestamp", ASCENDING)])


# ---------------------- Utilities ----------------------

def oid(id_str: str) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid ID")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz-aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if isinstance(out.get("_id"), ObjectId):
        out["_id"] = str(out["_id"])
    return out


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    doc = dict(data)
    doc.setdefault("created_at", now_utc())
    doc.setdefault("updated_at", now_utc())
    res = db[collection_name].insert_one(doc)
    return str(res.inserted_id)


def version_filter(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Filter matching ``doc`` only if no one has written it since it was read."""
    if "version" in doc:
        return {"_id": doc["_id"], "version": doc["version"]}
    return {"_id": doc["_id"], "version": {"$exists": False}}
