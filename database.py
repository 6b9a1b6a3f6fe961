"""
Database helpers

Thin wrappers around a MongoDB database selected by DATABASE_URL and
DATABASE_NAME. `db` is None when either variable is missing; the helpers then
raise RuntimeError so routes fail loudly instead of silently dropping writes.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def _collection(collection_name: str):
    if db is None:
        raise RuntimeError("Database is not configured (set DATABASE_URL and DATABASE_NAME)")
    return db[collection_name]


def ensure_indexes() -> None:
    """Video ids come from the client, so uniqueness is enforced by the database."""
    if db is None:
        logger.warning("Skipping index creation, database is not configured")
        return
    db["video"].create_index([("video_id", ASCENDING)], unique=True)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    payload.setdefault("created_at", now)
    payload["updated_at"] = now
    result = _collection(collection_name).insert_one(payload)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    cursor = _collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def count_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
    return _collection(collection_name).count_documents(filter_dict or {})


def update_document(
    collection_name: str,
    filter_dict: Dict[str, Any],
    changes: Optional[Dict[str, Any]] = None,
    inc: Optional[Dict[str, int]] = None,
) -> Optional[Dict[str, Any]]:
    """Apply `$set`/`$inc` to the first match and return the updated document."""
    update: Dict[str, Any] = {
        "$set": {**(changes or {}), "updated_at": datetime.now(timezone.utc)}
    }
    if inc:
        update["$inc"] = inc
    return _collection(collection_name).find_one_and_update(
        filter_dict, update, return_document=ReturnDocument.AFTER
    )
