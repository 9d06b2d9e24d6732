"""
Database connections - MongoDB async (Motor) and index declarations.
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from app.config import MONGO_URL, DB_NAME, logger

_client = None


def get_client() -> AsyncIOMotorClient:
    """Lazily create the shared Motor client (no I/O until first query)."""
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(MONGO_URL)
    return _client


def get_database():
    return get_client()[DB_NAME]


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None


async def ensure_indexes(db):
    """Declare the indexes the services rely on.

    The sparse unique keys are the uniqueness backstops: ``active_key`` exists
    only while a sheet or grant is active, ``open_key`` only while an incident
    is open.
    """
    await db.answer_sheets.create_index("sheet_id", unique=True)
    await db.answer_sheets.create_index("active_key", unique=True, sparse=True)
    await db.answer_sheets.create_index([("exam_id", ASCENDING), ("status", ASCENDING)])
    await db.answer_sheets.create_index([("exam_id", ASCENDING), ("open_flag_count", DESCENDING)])

    await db.incidents.create_index("incident_id", unique=True)
    await db.incidents.create_index("open_key", unique=True, sparse=True)
    await db.incidents.create_index([("exam_id", ASCENDING), ("student_id", ASCENDING)])
    await db.incidents.create_index([("is_red_flag", DESCENDING), ("priority_rank", DESCENDING)])
    await db.incidents.create_index([("class_id", ASCENDING), ("status", ASCENDING)])

    await db.notifications.create_index("notification_id", unique=True)
    await db.notifications.create_index([("recipient_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)])
    await db.notifications.create_index("related_entity_id")

    await db.staff_access.create_index("access_id", unique=True)
    await db.staff_access.create_index("active_key", unique=True, sparse=True)
    await db.staff_access.create_index([("staff_id", ASCENDING), ("is_active", ASCENDING)])

    logger.info("✅ MongoDB indexes ensured")
