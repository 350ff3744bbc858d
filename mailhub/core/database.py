"""Database connection manager."""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, IndexModel

from mailhub.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async MongoDB connection manager for the local mail store."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self._uri = uri or settings.mongodb_uri
        self._database = database or settings.mongodb_database

    async def connect(self):
        """Establish database connection and ensure indexes."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(self._uri, tz_aware=True)
                await self.client.admin.command('ping')

            self.db = self.client[self._database]
            await self.ensure_indexes()

            logger.info(f"Connected to MongoDB: {self._database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")

    @property
    def accounts_collection(self):
        return self.db[settings.mongodb_collection_accounts]

    @property
    def threads_collection(self):
        return self.db[settings.mongodb_collection_threads]

    @property
    def emails_collection(self):
        return self.db[settings.mongodb_collection_emails]

    async def ensure_indexes(self):
        """Create the uniqueness and listing indexes the store relies on."""
        await self.accounts_collection.create_indexes([
            IndexModel([("id", ASCENDING)], unique=True),
        ])
        await self.threads_collection.create_indexes([
            IndexModel([("id", ASCENDING)], unique=True),
            IndexModel(
                [("account_id", ASCENDING), ("external_id", ASCENDING)],
                unique=True,
            ),
            IndexModel([("account_id", ASCENDING), ("last_message_at", DESCENDING)]),
        ])
        await self.emails_collection.create_indexes([
            IndexModel([("id", ASCENDING)], unique=True),
            IndexModel(
                [("account_id", ASCENDING), ("external_id", ASCENDING)],
                unique=True,
            ),
            IndexModel([("thread_id", ASCENDING), ("received_at", ASCENDING)]),
        ])

    async def get_stats(self) -> dict:
        """Get collection counts for the status endpoint."""
        try:
            return {
                "database": self._database,
                "accounts": await self.accounts_collection.estimated_document_count(),
                "threads": await self.threads_collection.estimated_document_count(),
                "emails": await self.emails_collection.estimated_document_count(),
            }
        except Exception as e:
            logger.error(f"Failed to get stats: {e}")
            return {"error": str(e), "database": self._database}

