from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from bizrank.config import settings

_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> None:
    global _client, _database

    if _client is not None:
        return

    _client = AsyncIOMotorClient(settings.mongo_uri)
    await _client.admin.command("ping")
    _database = _client[settings.db_name]


async def close_mongo_connection() -> None:
    global _client, _database

    if _client is not None:
        _client.close()

    _client = None
    _database = None


async def ensure_indexes(database: AsyncIOMotorDatabase | None = None) -> None:
    db = database if database is not None else get_database()

    await db["reviews"].create_index([("review_id", ASCENDING)], unique=True)
    await db["reviews"].create_index([("business_id", ASCENDING)])
    await db["businesses"].create_index([("place_id", ASCENDING)], sparse=True)
    await db["businesses"].create_index([("name_normalized", ASCENDING), ("phone_normalized", ASCENDING)])
    await db["businesses"].create_index([("city", ASCENDING), ("category_id", ASCENDING)])
    await db["claims"].create_index([("business_id", ASCENDING)])
    await db["claims"].create_index([("status", ASCENDING), ("submitted_at", DESCENDING)])
    await db["ranking_cache"].create_index([("cache_key", ASCENDING)], unique=True)
    await db["ranking_jobs"].create_index([("status", ASCENDING), ("created_at", ASCENDING)])


def get_database() -> AsyncIOMotorDatabase:
    if _database is None:
        raise RuntimeError("MongoDB connection has not been initialized.")
    return _database


def get_client() -> AsyncIOMotorClient:
    if _client is None:
        raise RuntimeError("MongoDB connection has not been initialized.")
    return _client
