import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Union

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    # naive UTC, the form pymongo hands back for stored dates
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(database: Database) -> None:
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("customer_email", ASCENDING)])
    database["order"].create_index([("created_at", DESCENDING)])
    database["user"].create_index([("clerk_id", ASCENDING)], unique=True)
    database["category"].create_index([("slug", ASCENDING)], unique=True)
    database["product"].create_index([("category", ASCENDING)])
    database["product"].create_index([("crafter_id", ASCENDING)])
    database["crafter"].create_index([("verified", ASCENDING)])


@lru_cache(maxsize=1)
def _connect() -> Database:
    url = os.getenv("DATABASE_URL")
    name = os.getenv("DATABASE_NAME")
    if not url or not name:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set")
    client = MongoClient(url)
    database = client[name]
    ensure_indexes(database)
    logger.info("database_connected", database=name)
    return database


def get_db() -> Database:
    """FastAPI dependency returning the shared database handle.

    The client is created on first use and reused for every later request.
    """
    return _connect()


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump(mode="json")
    else:
        doc = dict(data)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_object_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return ObjectId(id_str)


def serialize_doc(value: Any) -> Any:
    """Convert a Mongo document into JSON-friendly data.

    ``_id`` becomes ``id``; ObjectIds become strings and datetimes ISO strings,
    recursively through nested documents and lists.
    """
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value
