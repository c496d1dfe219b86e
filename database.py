"""
MongoDB helpers.

Collections are named after the lower-cased schema class ("user", "chat",
"message"). Every document written through ``create_document`` carries
``created_at``/``updated_at`` timestamps in UTC.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import NotFoundError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
    return _client


def get_database() -> Database:
    return get_client().get_default_database(config.DATABASE_NAME)


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["user"].create_index([("created_at", DESCENDING)])
    # One chat per unordered participant pair
    db["chat"].create_index("pair_key", unique=True)
    db["chat"].create_index("participants")
    db["message"].create_index([("chat_id", ASCENDING), ("created_at", ASCENDING)])
    db["message"].create_index("sender_id")
    logger.info("MongoDB indexes ensured on %s", db.name)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[list] = None,
    limit: Optional[int] = None,
) -> list:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any, label: str = "Document") -> ObjectId:
    """Parse a client-supplied id; anything malformed is reported as missing."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
