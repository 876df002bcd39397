"""Database connection manager."""

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from typing import Optional

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.core.store import AccountStore, FolderStore, MessageStore

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async MongoDB connection manager exposing the sync stores."""

    def __init__(self, settings: Optional[SyncSettings] = None):
        self.settings = settings or default_settings
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self.accounts: Optional[AccountStore] = None
        self.folders: Optional[FolderStore] = None
        self.messages: Optional[MessageStore] = None

    async def connect(self, database: Optional[str] = None):
        """Establish database connection and make sure indexes exist."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(self.settings.mongodb_uri)
                # Test connection
                await self.client.admin.command('ping')

            self.db = self.client[database or self.settings.mongodb_database]
            self.accounts = AccountStore(self.accounts_collection)
            self.folders = FolderStore(self.folders_collection)
            self.messages = MessageStore(self.messages_collection)

            await self.ensure_indexes()
            logger.info(f"Connected to MongoDB: {self.db.name}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")

    async def ping(self) -> bool:
        if self.client is None:
            return False
        await self.client.admin.command('ping')
        return True

    async def ensure_indexes(self):
        """Create the uniqueness constraints the sync engine relies on."""
        await self.folders_collection.create_index(
            [("account_id", ASCENDING), ("provider_folder_id", ASCENDING)],
            unique=True,
            name="account_folder_unique",
        )
        await self.messages_collection.create_index(
            [("account_id", ASCENDING), ("provider_message_id", ASCENDING)],
            unique=True,
            name="account_message_unique",
        )
        await self.messages_collection.create_index(
            [("account_id", ASCENDING), ("folder_id", ASCENDING)],
            name="account_folder_messages",
        )
        await self.accounts_collection.create_index(
            [("status", ASCENDING), ("sync_heartbeat_at", ASCENDING)],
            name="status_heartbeat",
        )
        await self.db[self.settings.mongodb_collection_embedding_jobs].create_index(
            [("message_id", ASCENDING)],
            unique=True,
            name="embedding_message_unique",
        )
        logger.info("Sync indexes ensured")

    @property
    def accounts_collection(self):
        return self.db[self.settings.mongodb_collection_accounts]

    @property
    def folders_collection(self):
        return self.db[self.settings.mongodb_collection_folders]

    @property
    def messages_collection(self):
        return self.db[self.settings.mongodb_collection_messages]
