"""
Database helpers

MongoDB access for the API. Each Pydantic model in schemas.py maps to the
collection named after the lowercased class name. Route handlers receive the
database through the ``get_db`` dependency so tests can swap it out.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import settings
from errors import AppError, NotFound

logger = structlog.get_logger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=10000, maxPoolSize=10)
    db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise AppError("Database not configured", code="DATABASE_ERROR")
    return db


def utcnow() -> datetime:
    # pymongo hands datetimes back naive (UTC); store them the same way
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Union[str, ObjectId], message: str = "Resource not found") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise NotFound(message, code="RESOURCE_NOT_FOUND")
    return ObjectId(value)


def _serialize(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = _serialize(v)
        else:
            out[k] = _serialize(v)
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document, stamping created_at/updated_at unless already set. Returns the stored doc."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    database[collection_name].insert_one(doc)
    return doc


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    limit: int = 0,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(page: int, limit: int, total: int, total_key: str = "total") -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        total_key: total,
        "has_next": page < total_pages,
        "has_prev": page > 1,
        "limit": limit,
    }


def ensure_indexes(database: Database):
    database["user"].create_index("email", unique=True)
    database["user"].create_index("role")
    database["product"].create_index("sku", unique=True, sparse=True)
    database["product"].create_index("category")
    database["product"].create_index([("created_at", DESCENDING)])
    database["cart"].create_index("user_id", unique=True)
    database["cart"].create_index("last_activity")
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    logger.info("indexes_ensured", database=database.name)
