"""
Database helpers

MongoDB access for the storefront. Each Pydantic model in schemas.py maps to a
collection named after the lowercased class name:
- Product -> "product"
- DownloadToken -> "downloadtoken"
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Config

logger = logging.getLogger(__name__)

client = MongoClient(Config.DATABASE_URL)
db = client[Config.DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the shared database handle"""
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = as_utc(v)
        elif isinstance(v, dict) and "_id" in v:
            doc[k] = serialize(v)
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a single document with timestamps and return its id"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)



def ensure_indexes(database: Database) -> None:
    """Create the unique and lookup indexes the storefront relies on"""
    for collection_name in ("category", "product", "bundle"):
        database[collection_name].create_index([("slug", ASCENDING)], unique=True)
    database["category"].create_index([("parent_id", ASCENDING)])
    database["product"].create_index([("category_id", ASCENDING)])

    database["order"].create_index([("stripe_session_id", ASCENDING)], unique=True)
    database["order"].create_index([("email", ASCENDING), ("created_at", DESCENDING)])

    database["downloadtoken"].create_index([("token", ASCENDING)], unique=True)
    database["downloadtoken"].create_index(
        [("order_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    logger.info("Database indexes ensured")
