"""
MongoDB connection and small document helpers.

Every collection lives in one database (DATABASE_NAME). Collection names follow
the lowercase class name of the schema they hold:
- Book -> "book"
- BookInventory -> "bookinventory"
- Loan -> "loan"
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "library")
OPERATION_TIMEOUT = float(os.getenv("OPERATION_TIMEOUT", "10"))
LOAN_PERIOD_DAYS = int(os.getenv("LOAN_PERIOD_DAYS", "14"))

BOOKS = "book"
INVENTORY = "bookinventory"
LOANS = "loan"

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    # MongoClient connects lazily, so this never blocks import
    client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=int(OPERATION_TIMEOUT * 1000))
    db = client[DATABASE_NAME]


def _resolve(database: Optional[Database]) -> Database:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not initialized; set DATABASE_URL")
    return target


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]],
                    database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    target = _resolve(database)
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, database: Optional[Database] = None) -> List[Dict[str, Any]]:
    target = _resolve(database)
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Optional[Database] = None) -> None:
    """Create the indexes the inventory store relies on for uniqueness and fan-out."""
    target = _resolve(database)
    target[BOOKS].create_index([("book_id", ASCENDING)], unique=True)
    target[BOOKS].create_index([("inventory_ref.book_name", ASCENDING)])
    target[INVENTORY].create_index([("book_name", ASCENDING)], unique=True)
    target[INVENTORY].create_index([("book_dept", ASCENDING)])
    target[LOANS].create_index([("book_id", ASCENDING), ("returned_at", ASCENDING)])
    logger.info("Indexes ensured on database %s", target.name)
