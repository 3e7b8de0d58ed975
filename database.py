"""
MongoDB connection and small document helpers.

The connection is configured from DATABASE_URL and DATABASE_NAME. When either
is missing `db` stays None and callers answer with a 500.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import pymongo
from fastapi import HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = pymongo.MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")


def collection(name: str):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    """Create the indexes the API relies on. Safe to call repeatedly."""
    if db is None:
        return
    db["user"].create_index("email", unique=True)
    db["user"].create_index("username", unique=True)
    db["review"].create_index([("location_id", pymongo.ASCENDING), ("user_id", pymongo.ASCENDING)], unique=True)
    db["location"].create_index([("created_at", pymongo.DESCENDING)])
    db["location"].create_index("discovered_by")
