"""
Database helpers

MongoDB connection and small helpers shared by the route handlers.
Collections are named after the lowercase schema class (Order -> "order").
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes; make them comparable with utcnow()."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_db():
    """FastAPI dependency returning the active database handle."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database) -> None:
    database["order"].create_index("orderId", unique=True)
    database["order"].create_index("customerInfo.email")
    database["order"].create_index("status")
    database["order"].create_index([("createdAt", DESCENDING)])
    database["product"].create_index("slug", unique=True)
    database["coupon"].create_index("code", unique=True)
    database["usedcoupon"].create_index([("couponCode", ASCENDING), ("email", ASCENDING)], unique=True)
    database["usedcoupon"].create_index([("couponCode", ASCENDING), ("phone", ASCENDING)], unique=True)
    database["config"].create_index("key", unique=True)
    database["user"].create_index("email", unique=True)
    database["otp"].create_index("phone")
    database["shippingcharge"].create_index("type", unique=True)
    database["banner"].create_index([("order", ASCENDING), ("isActive", ASCENDING)])
    logger.info("Indexes ensured on %s", getattr(database, "name", "database"))
