from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase  # type: ignore
from pymongo import ASCENDING, MongoClient  # type: ignore

from .config import Settings, settings as default_settings


_client: Optional[AsyncIOMotorClient] = None


def get_database(settings: Settings = default_settings) -> AsyncIOMotorDatabase:
    """Async database handle for request handlers; the client is created once."""
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.mongodb_url, tz_aware=True)
    return _client[settings.database_name]


def ensure_indexes(settings: Settings = default_settings) -> None:
    # Sync client for one-off startup operations
    sync_client = MongoClient(settings.mongodb_url)
    try:
        db = sync_client[settings.database_name]
        db.events.create_index([("session_id", ASCENDING), ("timestamp", ASCENDING), ("sequence", ASCENDING)])
        db.events.create_index([("session_id", ASCENDING), ("sequence", ASCENDING)], unique=True)
        db.sessions.create_index([("start_time", ASCENDING)])
    finally:
        sync_client.close()


def close_database() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
