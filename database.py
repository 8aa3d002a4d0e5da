"""
MongoDB access.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; the API
reports that through /test and refuses store-backed routes.
"""

from typing import Optional

import structlog
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings

logger = structlog.get_logger(__name__)

settings = get_settings()

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    client = MongoClient(settings.DATABASE_URL)
    db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency; overridden in tests."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    """Unique keys the core relies on (order numbers, coupon codes, SKUs)."""
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("discounts.coupon_code", ASCENDING)])
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["product"].create_index([("variants.sku", ASCENDING)], unique=True, sparse=True)
    database["flashsale"].create_index([("start_time", ASCENDING), ("end_time", ASCENDING)])
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    logger.info("indexes_ensured", database=database.name)
