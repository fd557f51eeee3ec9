"""
Database Helper Functions

MongoDB helper functions shared by every service module.
Each collection is named after the lowercase schema class in schemas.py
(User -> "user", Order -> "order", ...).
"""

from pymongo import MongoClient, ReturnDocument, ASCENDING
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any, List
from pydantic import BaseModel

import config
from errors import ConflictError, NotFoundError

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def init_db(database) -> None:
    """Point every helper at another database handle (used by tests)."""
    global db
    db = database


def _ensure_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def utcnow() -> datetime:
    # Stored naive so that values read back from Mongo compare cleanly.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(ObjectId())


def to_object_id(_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(_id)
    except (InvalidId, TypeError):
        return None


def ensure_indexes() -> None:
    _ensure_db()
    db["user"].create_index("email", unique=True)
    db["user"].create_index("username", unique=True)
    db["user"].create_index("phone", unique=True, partialFilterExpression={"phone": {"$type": "string"}})
    db["user"].create_index("role")
    db["category"].create_index("name", unique=True)
    db["product"].create_index([("category_id", ASCENDING), ("is_active", ASCENDING)])
    db["order"].create_index("user_id")
    db["order"].create_index("delivery_person")
    db["order"].create_index("uengage.vendor_order_id")
    db["otp"].create_index("phone", unique=True)
    # TTL index: Mongo drops the OTP once expires_at has passed
    db["otp"].create_index("expires_at", expireAfterSeconds=0)


# CRUD helpers

def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    _ensure_db()
    payload = _to_dict(data)
    now = utcnow()
    payload['created_at'] = now
    payload['updated_at'] = now
    payload['version'] = 0
    result = db[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None, skip: Optional[int] = None, projection: Optional[dict] = None) -> List[dict]:
    _ensure_db()
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(int(skip))
    if limit:
        cursor = cursor.limit(int(limit))
    return [serialize_doc(doc) for doc in cursor]


def find_document(collection_name: str, filter_dict: dict, projection: Optional[dict] = None) -> Optional[dict]:
    _ensure_db()
    return serialize_doc(db[collection_name].find_one(filter_dict, projection))


def get_document_by_id(collection_name: str, _id: str, projection: Optional[dict] = None) -> Optional[dict]:
    _ensure_db()
    oid = to_object_id(_id)
    if oid is None:
        return None
    doc = db[collection_name].find_one({"_id": oid}, projection)
    return serialize_doc(doc) if doc else None


def require_document(collection_name: str, _id: str, label: str, projection: Optional[dict] = None) -> dict:
    doc = get_document_by_id(collection_name, _id, projection)
    if not doc:
        raise NotFoundError(f"{label} not found")
    return doc


def count_documents(collection_name: str, filter_dict: Optional[dict] = None) -> int:
    _ensure_db()
    return db[collection_name].count_documents(filter_dict or {})


def update_document(collection_name: str, _id: str, update_data: Dict[str, Any]) -> bool:
    _ensure_db()
    oid = to_object_id(_id)
    if oid is None:
        return False
    update = {"$set": _to_dict(update_data), "$inc": {"version": 1}}
    update["$set"]["updated_at"] = utcnow()
    result = db[collection_name].update_one({"_id": oid}, update)
    return result.matched_count > 0


def update_versioned(collection_name: str, doc: dict, changes: Dict[str, Any], extra_filter: Optional[dict] = None) -> Optional[dict]:
    """Compare-and-set update.

    Applies ``changes`` only if the stored document still has the version
    (and any ``extra_filter`` fields) that ``doc`` was read with. Returns the
    updated document, or None when another writer got there first.
    """
    _ensure_db()
    filter_dict = {"_id": ObjectId(doc["_id"])}
    if doc.get("version") is None:
        filter_dict["version"] = {"$exists": False}
    else:
        filter_dict["version"] = doc["version"]
    if extra_filter:
        filter_dict.update(extra_filter)
    update = {"$set": dict(changes), "$inc": {"version": 1}}
    update["$set"]["updated_at"] = utcnow()
    updated = db[collection_name].find_one_and_update(filter_dict, update, return_document=ReturnDocument.AFTER)
    return serialize_doc(updated)


def modify_document(collection_name: str, _id: str, label: str, mutate, attempts: int = 3) -> dict:
    """Read, let ``mutate(doc)`` compute changes, write them back versioned.

    ``mutate`` returns the fields to set, or None to leave the document as is.
    Retried on a lost race; ConflictError once ``attempts`` are used up.
    """
    for _ in range(attempts):
        doc = require_document(collection_name, _id, label)
        changes = mutate(doc)
        if changes is None:
            return doc
        updated = update_versioned(collection_name, doc, changes)
        if updated is not None:
            return updated
    raise ConflictError(f"{label} was modified concurrently, please retry")


def delete_document(collection_name: str, _id: str) -> bool:
    _ensure_db()
    oid = to_object_id(_id)
    if oid is None:
        return False
    result = db[collection_name].delete_one({"_id": oid})
    return result.deleted_count > 0


def aggregate(collection_name: str, pipeline: List[dict]) -> List[dict]:
    _ensure_db()
    return list(db[collection_name].aggregate(pipeline))


def collection(collection_name: str):
    _ensure_db()
    return db[collection_name]


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])  # convert ObjectId to string
    return d
