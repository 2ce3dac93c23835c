"""
MongoDB connection and small document helpers.

Connection settings come from the environment:
- DATABASE_URL  -> mongodb connection string
- DATABASE_NAME -> database to use
When DATABASE_URL is not set `db` stays None and the /test endpoint reports it.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the active database handle."""
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def ensure_indexes(database) -> None:
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("payment_details.gateway_order_id")
    database["order"].create_index("payment_details.payment_id")
    database["order"].create_index("items.seller_id")
    database["promocode"].create_index("code", unique=True)
    database["settings"].create_index("version", unique=True)
    database["user"].create_index("email", unique=True)
    database["payoutadjustment"].create_index([("order_number", 1), ("line_index", 1)], unique=True)


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as string"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def next_sequence(database, name: str) -> int:
    """Atomically increment and return the named counter.

    The $inc happens server side; concurrent callers never share a value.
    """
    doc = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["seq"])


def as_utc(value: datetime) -> datetime:
    # mongo hands datetimes back naive
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
