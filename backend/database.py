import logging

from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGO_DB_NAME, MONGO_URI

logger = logging.getLogger(__name__)

_client: AsyncIOMotorClient | None = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        if not MONGO_URI:
            raise RuntimeError("MONGODB_URI not set")
        # tz_aware off: every timestamp is written as naive UTC
        _client = AsyncIOMotorClient(MONGO_URI, tz_aware=False)
    return _client


def get_db():
    """Database named in the URI, or MONGO_DB_NAME when the URI has none."""
    return get_client().get_default_database(default=MONGO_DB_NAME)


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB client closed")
