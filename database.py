"""
MongoDB access helpers.

The connection is configured from DATABASE_URL / DATABASE_NAME. When either is
missing `db` stays None and the API reports the database as unavailable.
Collection names are the lowercased schema class names (User -> "user").
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from errors import ValidationError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database) -> None:
    # one order per gateway payment; cod orders have no payment_info and are skipped
    database["order"].create_index("payment_info.razorpay_order_id", unique=True, sparse=True)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return _jsonable(doc)
