# MongoDB connection, shared executor, and index setup

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from pymongo import ASCENDING, DESCENDING, MongoClient

from .config import MONGODB_URL, MONGODB_DB

logger = logging.getLogger(__name__)

db_client = None
db = None
executor = ThreadPoolExecutor(max_workers=10)


def ensure_indexes(database) -> None:
    """Create the indexes the lifecycle rules rely on.

    ``grievances.tracking_id`` is the authoritative uniqueness guard for
    tracking IDs; the application-level check is only a fast path.
    """
    database.users.create_index([("email", ASCENDING)], unique=True)
    # one verified owner per phone; unverified placeholders may overlap briefly
    database.users.create_index(
        [("phone", ASCENDING)], unique=True,
        partialFilterExpression={"is_phone_verified": True})
    database.grievances.create_index([("tracking_id", ASCENDING)], unique=True)
    database.grievances.create_index([("user_id", ASCENDING)])
    database.grievances.create_index([("status", ASCENDING)])
    database.grievances.create_index([("created_at", DESCENDING)])


async def startup_db():
    global db_client, db
    db_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = db_client[MONGODB_DB]
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, ensure_indexes, db)
    logger.info("Database initialized: %s", MONGODB_DB)


async def shutdown_db():
    global db_client, db
    if db_client:
        db_client.close()
    db_client = None
    db = None


async def get_db():
    return db
