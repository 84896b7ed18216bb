"""
MongoDB access for the shop.

Collections are named after the lowercase schema class (``user``,
``product``, ``order``...). References between documents are stored as
string ids; only ``_id`` is an ObjectId.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

import config
from errors import NotFoundError

client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=30000, socketTimeoutMS=45000)
db = client[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes unless the client is tz aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def object_id(value: str, label: str = "Resource") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found with id of {value}")


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes() -> None:
    db["user"].create_index("email", unique=True)
    db["category"].create_index("name", unique=True)
    db["cart"].create_index("user_id", unique=True)
    db["wishlist"].create_index("user_id", unique=True)
    db["review"].create_index([("product_id", 1), ("user_id", 1)], unique=True)
    db["order"].create_index("user_id")
    db["order"].create_index("seller_ids")
    db["outbox"].create_index("status")
