"""
MongoDB access layer

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; routes get
the handle through the `get_db` dependency so tests can swap in another one.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import NotFoundError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(500, "Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless tz_aware is set
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_object_id(value: str, what: str = "Resource") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def serialize_document(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data = data.model_dump()
    data = dict(data)
    now = now_utc()
    data.setdefault("created_at", now)
    data["updated_at"] = now
    inserted_id = target[collection_name].insert_one(data).inserted_id
    return str(inserted_id)


def ensure_indexes(database: Database) -> None:
    """Uniqueness constraints the services rely on instead of application locks."""
    database["user"].create_index("email", unique=True)
    database["admin"].create_index("email", unique=True)
    database["category"].create_index("slug", unique=True)
    database["category"].create_index("name", unique=True)
    database["setting"].create_index("key", unique=True)
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["review"].create_index([("product_id", ASCENDING), ("status", ASCENDING)])
    database["order"].create_index("idempotency_key", unique=True, sparse=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    for name in ("color_analytics", "size_analytics", "product_analytics"):
        database[name].create_index([("timestamp", DESCENDING)])
        database[name].create_index("session_id")
    logger.info("MongoDB indexes ensured")
