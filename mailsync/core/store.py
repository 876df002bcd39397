"""
Persistence for accounts, folders and messages.

Each store wraps one motor collection. Account writes made on behalf of a
sync run are single-document conditional updates matched on the account id
and the run's lease token: once a run has been cancelled or reset by the
watchdog its lease is gone and its writes become no-ops.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


class AccountStatus(str, Enum):
    """Account sync status as shown to the user. Idle is ``active``."""
    ACTIVE = "active"
    SYNCING = "syncing"
    ERROR = "error"


class FolderSyncStatus(str, Enum):
    """Per-folder sync status."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


def to_object_id(value: Any) -> Any:
    """Use ObjectId for ids that look like one, keep other ids as given."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


# Fields of an account that belong to one run and are cleared when it ends.
_RUN_FIELDS_CLEARED = {
    "sync_lease": None,
    "sync_run_id": None,
    "dispatch_claimed_at": None,
}


class AccountStore:
    """Account documents."""

    def __init__(self, collection):
        self.collection = collection

    def _by_id(self, account_id: str) -> Dict[str, Any]:
        return {"_id": to_object_id(account_id)}

    def _by_lease(self, account_id: str, lease: str) -> Dict[str, Any]:
        return {"_id": to_object_id(account_id), "sync_lease": lease}

    async def get(self, account_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one(self._by_id(account_id))

    async def claim(
        self,
        account_id: str,
        lease: str,
        now: datetime,
        stale_before: datetime
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically reserve the account for a new run.

        Succeeds only when the account is not syncing and holds no live
        dispatch claim. Returns the claimed account, or None.
        """
        query = {
            "_id": to_object_id(account_id),
            "status": {"$ne": AccountStatus.SYNCING.value},
            "$or": [
                {"sync_lease": None},
                {"dispatch_claimed_at": {"$lt": stale_before}},
            ],
        }
        return await self.collection.find_one_and_update(
            query,
            {"$set": {"sync_lease": lease, "dispatch_claimed_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def mark_dispatched(
        self,
        account_id: str,
        lease: str,
        run_id: str,
        mode: str,
        trigger: str,
        now: datetime
    ) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {
                "status": AccountStatus.SYNCING.value,
                "sync_run_id": run_id,
                "sync_mode": mode,
                "sync_trigger": trigger,
                "sync_attempt": 1,
                "sync_progress": 0,
                "sync_started_at": now,
                "sync_heartbeat_at": now,
                "dispatch_claimed_at": None,
            }}
        )
        return result.modified_count > 0

    async def release_claim(self, account_id: str, lease: str, error: str) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {**_RUN_FIELDS_CLEARED, "last_sync_error": error}}
        )
        return result.modified_count > 0

    async def holds_lease(self, account_id: str, lease: str) -> bool:
        doc = await self.collection.find_one(
            self._by_lease(account_id, lease), {"_id": 1}
        )
        return doc is not None

    async def record_progress(
        self,
        account_id: str,
        lease: str,
        processed: int,
        now: datetime
    ) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {"sync_progress": processed, "sync_heartbeat_at": now}}
        )
        return result.modified_count > 0

    async def save_cursor(self, account_id: str, lease: str, cursor: Optional[str]) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {"sync_cursor": cursor}}
        )
        return result.modified_count > 0

    async def mark_retrying(
        self,
        account_id: str,
        lease: str,
        attempt: int,
        message: str,
        now: datetime
    ) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {
                "status": AccountStatus.SYNCING.value,
                "sync_attempt": attempt,
                "last_sync_error": message,
                "sync_heartbeat_at": now,
            }}
        )
        return result.modified_count > 0

    async def complete(
        self,
        account_id: str,
        lease: str,
        processed: int,
        now: datetime,
        error_summary: Optional[str] = None
    ) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {
                **_RUN_FIELDS_CLEARED,
                "status": AccountStatus.ACTIVE.value,
                "initial_sync_completed": True,
                "needs_reconnection": False,
                "sync_progress": processed,
                "last_sync_at": now,
                "last_successful_sync_at": now,
                "last_sync_error": error_summary,
                "error_message": None,
                "rate_limit_backoff_minutes": None,
            }}
        )
        return result.modified_count > 0

    async def fail(
        self,
        account_id: str,
        lease: str,
        message: str,
        now: datetime,
        needs_reconnection: bool = False
    ) -> bool:
        update = {
            **_RUN_FIELDS_CLEARED,
            "status": AccountStatus.ERROR.value,
            "last_sync_at": now,
            "last_sync_error": message,
            "error_message": message,
        }
        if needs_reconnection:
            update["needs_reconnection"] = True
        result = await self.collection.update_one(
            self._by_lease(account_id, lease), {"$set": update}
        )
        return result.modified_count > 0

    async def back_off(
        self,
        account_id: str,
        lease: str,
        message: str,
        until: datetime,
        backoff_minutes: int,
        now: datetime
    ) -> bool:
        result = await self.collection.update_one(
            self._by_lease(account_id, lease),
            {"$set": {
                **_RUN_FIELDS_CLEARED,
                "status": AccountStatus.ACTIVE.value,
                "last_sync_at": now,
                "last_sync_error": message,
                "next_sync_after": until,
                "rate_limit_backoff_minutes": backoff_minutes,
            }}
        )
        return result.modified_count > 0

    async def cancel(self, account_id: str) -> bool:
        """Return a syncing (or claimed) account to idle."""
        result = await self.collection.update_one(
            {
                "_id": to_object_id(account_id),
                "$or": [
                    {"status": AccountStatus.SYNCING.value},
                    {"sync_lease": {"$ne": None}},
                ],
            },
            {"$set": {
                **_RUN_FIELDS_CLEARED,
                "status": AccountStatus.ACTIVE.value,
                "sync_progress": 0,
            }}
        )
        return result.modified_count > 0

    async def find_stuck(self, cutoff: datetime) -> List[str]:
        cursor = self.collection.find(
            {
                "status": AccountStatus.SYNCING.value,
                "sync_heartbeat_at": {"$lt": cutoff},
            },
            {"_id": 1}
        )
        return [str(doc["_id"]) for doc in await cursor.to_list(length=None)]

    async def reset_stuck(
        self,
        account_id: str,
        cutoff: datetime,
        message: str,
        now: datetime
    ) -> bool:
        result = await self.collection.update_one(
            {
                "_id": to_object_id(account_id),
                "status": AccountStatus.SYNCING.value,
                "sync_heartbeat_at": {"$lt": cutoff},
            },
            {"$set": {
                **_RUN_FIELDS_CLEARED,
                "status": AccountStatus.ACTIVE.value,
                "last_sync_at": now,
                "last_sync_error": message,
            }}
        )
        return result.modified_count > 0

    async def find_schedulable(self, now: datetime) -> List[str]:
        """Accounts eligible for a scheduled incremental run."""
        cursor = self.collection.find(
            {
                "status": AccountStatus.ACTIVE.value,
                "needs_reconnection": {"$ne": True},
                "$or": [
                    {"next_sync_after": None},
                    {"next_sync_after": {"$lte": now}},
                ],
            },
            {"_id": 1}
        )
        return [str(doc["_id"]) for doc in await cursor.to_list(length=None)]

    async def save_credentials(
        self,
        account_id: str,
        encrypted: str,
        expires_at: Optional[datetime]
    ) -> None:
        await self.collection.update_one(
            self._by_id(account_id),
            {"$set": {
                "credentials": encrypted,
                "credentials_expires_at": expires_at,
            }}
        )


class FolderStore:
    """Folder documents, unique on (account_id, provider_folder_id)."""

    def __init__(self, collection):
        self.collection = collection

    async def upsert(
        self,
        account_id: str,
        remote: Dict[str, Any],
        classification: Dict[str, Any],
        display_name: str,
        sort_order: int,
        now: datetime
    ) -> Dict[str, Any]:
        """
        Insert or refresh a folder.

        The enabled flag is only decided on insert so a user's later choice
        survives re-listing.
        """
        return await self.collection.find_one_and_update(
            {
                "account_id": account_id,
                "provider_folder_id": remote["provider_folder_id"],
            },
            {
                "$set": {
                    "raw_name": remote["display_name"],
                    "display_name": display_name,
                    "path": remote.get("path") or remote["display_name"],
                    "parent_id": remote.get("parent_id"),
                    "item_count": remote.get("item_count", 0),
                    "unread_count": remote.get("unread_count", 0),
                    "folder_type": classification["folder_type"],
                    "confidence": classification["confidence"],
                    "needs_review": classification["needs_review"],
                    "sort_order": sort_order,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "sync_enabled": classification["sync_enabled"],
                    "sync_status": FolderSyncStatus.IDLE.value,
                    "sync_cursor": None,
                    "last_synced_at": None,
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    async def list_for_account(self, account_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"account_id": account_id}).sort("sort_order", 1)
        return await cursor.to_list(length=None)

    async def mark_syncing(self, folder_id: Any, now: datetime) -> None:
        await self.collection.update_one(
            {"_id": folder_id},
            {"$set": {"sync_status": FolderSyncStatus.SYNCING.value, "updated_at": now}}
        )

    async def save_cursor(self, folder_id: Any, cursor: Optional[str]) -> None:
        await self.collection.update_one(
            {"_id": folder_id},
            {"$set": {"sync_cursor": cursor}}
        )

    async def mark_synced(self, folder_id: Any, now: datetime) -> None:
        await self.collection.update_one(
            {"_id": folder_id},
            {"$set": {
                "sync_status": FolderSyncStatus.IDLE.value,
                "last_synced_at": now,
                "last_sync_error": None,
            }}
        )

    async def mark_idle(self, folder_id: Any, now: datetime) -> None:
        """Release a folder left mid-sync by a run that stopped without finishing it."""
        await self.collection.update_one(
            {"_id": folder_id, "sync_status": FolderSyncStatus.SYNCING.value},
            {"$set": {"sync_status": FolderSyncStatus.IDLE.value, "updated_at": now}}
        )

    async def mark_error(self, folder_id: Any, message: str, now: datetime) -> None:
        await self.collection.update_one(
            {"_id": folder_id},
            {"$set": {
                "sync_status": FolderSyncStatus.ERROR.value,
                "last_sync_error": message,
                "updated_at": now,
            }}
        )

    async def set_message_count(self, folder_id: Any, count: int) -> None:
        await self.collection.update_one(
            {"_id": folder_id},
            {"$set": {"synced_message_count": count}}
        )


class MessageStore:
    """Message documents, unique on (account_id, provider_message_id)."""

    def __init__(self, collection):
        self.collection = collection

    async def find(self, account_id: str, provider_message_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({
            "account_id": account_id,
            "provider_message_id": provider_message_id,
        })

    async def upsert(
        self,
        account_id: str,
        provider_message_id: str,
        insert_fields: Dict[str, Any],
        sync_fields: Dict[str, Any]
    ) -> Tuple[Optional[str], bool]:
        """
        Insert a new message or refresh its sync-owned fields.

        ``insert_fields`` are written only when the document is created;
        ``sync_fields`` are written every time. The two must not overlap.

        Returns:
            Tuple of (new message id or None, inserted flag)
        """
        query = {"account_id": account_id, "provider_message_id": provider_message_id}
        update = {"$set": sync_fields, "$setOnInsert": insert_fields}
        try:
            result = await self.collection.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            # A concurrent writer inserted first; ours becomes an update.
            result = await self.collection.update_one(query, update, upsert=True)

        if result.upserted_id is not None:
            return str(result.upserted_id), True
        return None, False

    async def count_in_folder(self, account_id: str, folder_id: Any) -> int:
        return await self.collection.count_documents({
            "account_id": account_id,
            "folder_id": folder_id,
        })
