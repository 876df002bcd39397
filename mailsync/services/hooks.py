"""
Downstream hooks called by the ingestion pipeline.

Classification, semantic embedding and the contact timeline live outside
the sync engine. These are the seams the engine calls through, plus small
default implementations backed by MongoDB collections and HTTP.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class ClassificationHook(ABC):
    """Assigns a category label to a message."""

    @abstractmethod
    async def categorize(self, message: Dict[str, Any], user_id: str) -> Optional[str]:
        """
        Categorize a normalized message.

        Args:
            message: Normalized message fields (subject, sender, snippet, ...)
            user_id: Owner of the mailbox

        Returns:
            Category label, or None to keep the folder-derived category
        """
        pass


class EmbeddingHook(ABC):
    """Schedules a stored message for semantic embedding."""

    @abstractmethod
    async def embed(self, message_id: str) -> None:
        pass


class ContactTimelineHook(ABC):
    """Records received mail on a known contact's timeline."""

    @abstractmethod
    async def find_contact(self, user_id: str, address: str) -> Optional[str]:
        """Return the contact id for a sender address, if the user knows them."""
        pass

    @abstractmethod
    async def log_received(self, contact_id: str, subject: str, provider_message_id: str) -> None:
        pass


class NoopClassificationHook(ClassificationHook):
    async def categorize(self, message: Dict[str, Any], user_id: str) -> Optional[str]:
        return None


class NoopEmbeddingHook(EmbeddingHook):
    async def embed(self, message_id: str) -> None:
        return None


class NoopContactTimelineHook(ContactTimelineHook):
    async def find_contact(self, user_id: str, address: str) -> Optional[str]:
        return None

    async def log_received(self, contact_id: str, subject: str, provider_message_id: str) -> None:
        return None


class HttpClassificationHook(ClassificationHook):
    """Posts message metadata to a classification service and reads back ``category``."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def categorize(self, message: Dict[str, Any], user_id: str) -> Optional[str]:
        payload = {
            "user_id": user_id,
            "subject": message.get("subject"),
            "from_address": message.get("from_address"),
            "snippet": message.get("snippet"),
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
            return response.json().get("category")


class QueuedEmbeddingHook(EmbeddingHook):
    """Adds the message to an embedding job queue collection."""

    def __init__(self, collection):
        self.collection = collection

    async def embed(self, message_id: str) -> None:
        await self.collection.update_one(
            {"message_id": message_id},
            {"$setOnInsert": {
                "message_id": message_id,
                "status": "pending",
                "created_at": datetime.now(timezone.utc),
            }},
            upsert=True,
        )


class MongoContactTimelineHook(ContactTimelineHook):
    """Looks senders up in a contacts collection and appends timeline events."""

    def __init__(self, contacts_collection, timeline_collection):
        self.contacts = contacts_collection
        self.timeline = timeline_collection

    async def find_contact(self, user_id: str, address: str) -> Optional[str]:
        contact = await self.contacts.find_one(
            {"user_id": user_id, "emails": address.lower()},
            {"_id": 1}
        )
        return str(contact["_id"]) if contact else None

    async def log_received(self, contact_id: str, subject: str, provider_message_id: str) -> None:
        await self.timeline.insert_one({
            "contact_id": contact_id,
            "event_type": "email_received",
            "title": f"Received: {subject}",
            "provider_message_id": provider_message_id,
            "created_at": datetime.now(timezone.utc),
        })


def create_hooks(settings, database) -> Dict[str, Any]:
    """
    Build the ingestion hooks from settings.

    Args:
        settings: SyncSettings with the hook endpoints and collection names
        database: Motor database (anything indexable by collection name)

    Returns:
        Keyword arguments for ``IngestionPipeline``
    """
    if settings.classification_url:
        classifier: ClassificationHook = HttpClassificationHook(
            settings.classification_url,
            timeout=settings.classification_timeout_seconds,
        )
        logger.info(f"Message classification via {settings.classification_url}")
    else:
        classifier = NoopClassificationHook()
        logger.info("No classification service configured, folder categories only")

    return {
        "classifier": classifier,
        "embedder": QueuedEmbeddingHook(database[settings.mongodb_collection_embedding_jobs]),
        "timeline": MongoContactTimelineHook(
            database[settings.mongodb_collection_contacts],
            database[settings.mongodb_collection_contact_timeline],
        ),
    }
