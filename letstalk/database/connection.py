from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from starlette.requests import HTTPConnection

from letstalk.core.config import Settings
from letstalk.core.logging import get_logger


logger = get_logger("letstalk.database")


class MongoConnection:
    """Lifecycle-scoped Motor client owned by the application lifespan."""

    def __init__(self, settings: Settings) -> None:
        self._url = settings.mongo_url
        self._db_name = settings.mongo_db_name
        self._client: Optional[AsyncIOMotorClient] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        self._client = AsyncIOMotorClient(self._url, tz_aware=True)
        logger.info("mongo.connected", extra={"db": self._db_name})
        return self._client[self._db_name]

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._client is None:
            raise RuntimeError("MongoDB connection is not open")
        return self._client[self._db_name]

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("mongo.closed")


def mongo_db_dependency(connection: HTTPConnection) -> AsyncIOMotorDatabase:
    return connection.app.state.mongo.database
