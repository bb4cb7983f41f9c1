"""
Database helpers

Thin layer over pymongo. ``db`` is None until DATABASE_URL and DATABASE_NAME
are configured; tests replace it with an in-memory database.
Each collection name is the lowercased document name (product, order, ...).
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

import config
from errors import DatabaseUnavailable, ValidationError

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise DatabaseUnavailable()
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id format")


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document into a collection with created/updated timestamps."""
    database = get_db()

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    data_dict["created_at"] = now()
    data_dict["updated_at"] = now()

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: dict = None, limit: int = None,
                  sort: Optional[List[Tuple[str, int]]] = None) -> List[Dict[str, Any]]:
    database = get_db()

    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(collection_name: str, id_str: str) -> Optional[Dict[str, Any]]:
    return get_db()[collection_name].find_one({"_id": oid(id_str)})


def paginate(collection_name: str, filter_dict: dict, page: int, limit: int,
             sort: Optional[List[Tuple[str, int]]] = None):
    """Return (documents, pagination meta) for one page of a query."""
    database = get_db()
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), config.MAX_PAGE_SIZE)

    cursor = database[collection_name].find(filter_dict)
    if sort:
        cursor = cursor.sort(sort)
    docs = list(cursor.skip((page - 1) * limit).limit(limit))
    total = database[collection_name].count_documents(filter_dict)

    return docs, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit),
    }


def next_sequence(name: str) -> int:
    """Atomically increment and return the named counter."""
    seq = get_db()["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"last_number": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return seq.get("last_number", 1)


def ensure_indexes():
    database = get_db()
    database["inventory"].create_index([("product", ASCENDING)], unique=True)
    database["cart"].create_index([("user", ASCENDING)], unique=True)
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", ASCENDING)])
    database["delivery"].create_index([("order", ASCENDING)], unique=True)
    database["delivery"].create_index([("partner", ASCENDING)])
    database["review"].create_index(
        [("product", ASCENDING), ("user", ASCENDING)],
        unique=True,
        partialFilterExpression={"type": "product"},
    )
    database["review"].create_index(
        [("order", ASCENDING), ("type", ASCENDING)],
        unique=True,
        partialFilterExpression={"type": "delivery"},
    )


def serialize_doc(doc: Any):
    """Make a Mongo document JSON friendly (ObjectId -> str, datetime -> ISO)."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
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
            out[k] = serialize_doc(v)
    return out
