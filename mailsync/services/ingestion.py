"""
Message ingestion pipeline.

Takes normalized messages from any adapter, assigns folder and category,
upserts them keyed by (account_id, provider_message_id) and fires the
post-insert hooks without waiting on them.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.folders.taxonomy import category_for_folder
from mailsync.providers.email.base import CategorizationPolicy, EmailMessage, SyncContext
from mailsync.services.hooks import (
    ClassificationHook,
    ContactTimelineHook,
    EmbeddingHook,
    NoopClassificationHook,
    NoopContactTimelineHook,
    NoopEmbeddingHook,
)

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"
SNIPPET_LENGTH = 200
_REPLY_PREFIX = re.compile(r"^\s*((re|fwd?|aw|wg|sv|tr)\s*(\[\d+\])?\s*:\s*)+", re.IGNORECASE)


@dataclass
class RunProgress:
    """Running counters for one sync run."""
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    last_reported: int = 0


@dataclass
class IngestResult:
    inserted: int = 0
    updated: int = 0
    message_ids: List[str] = field(default_factory=list)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clean_addresses(addresses: List[Dict[str, str]]) -> List[Dict[str, str]]:
    return [
        {"address": a["address"].strip().lower(), "name": (a.get("name") or "").strip()}
        for a in addresses
        if a.get("address")
    ]


def normalize_subject(subject: str) -> str:
    """Strip reply/forward prefixes and fold case, for thread matching."""
    return _REPLY_PREFIX.sub("", subject or "").strip().casefold()


def compute_thread_id(message: EmailMessage) -> str:
    """
    Provider thread id when there is one, otherwise the root of the
    References chain, otherwise a hash of the normalized subject.
    """
    if message.provider_thread_id:
        return message.provider_thread_id
    if message.references:
        return message.references[0]
    if message.in_reply_to:
        return message.in_reply_to
    subject = normalize_subject(message.subject)
    if subject:
        return "subj:" + hashlib.sha1(subject.encode("utf-8")).hexdigest()[:16]
    return message.message_id_header or message.provider_message_id


def normalize_envelope(message: EmailMessage) -> Dict[str, Any]:
    """Envelope fields as stored, written once when the message is first seen."""
    received_at = _utc(message.received_at) or _utc(message.sent_at)
    return {
        "thread_id": compute_thread_id(message),
        "subject": (message.subject or "").strip() or NO_SUBJECT,
        "from_address": (message.from_address or "").strip().lower(),
        "from_name": (message.from_name or "").strip(),
        "to_addresses": _clean_addresses(message.to_addresses),
        "cc_addresses": _clean_addresses(message.cc_addresses),
        "sent_at": _utc(message.sent_at) or received_at,
        "received_at": received_at,
        "snippet": (message.snippet or "").strip()[:SNIPPET_LENGTH],
        "has_attachments": message.has_attachments,
        "is_starred": message.is_starred,
        "size_bytes": message.size_bytes,
        "message_id_header": message.message_id_header,
        "in_reply_to": message.in_reply_to,
        "references": list(message.references),
    }


def resolve_folder(
    message: EmailMessage,
    folders_by_provider_id: Dict[str, Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    """Folder the message came from, or the best-ranked folder among its labels."""
    if message.folder_provider_id:
        return folders_by_provider_id.get(message.folder_provider_id)
    candidates = [
        folders_by_provider_id[label]
        for label in message.label_ids
        if label in folders_by_provider_id
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda f: f.get("sort_order", 100))


class IngestionPipeline:
    """
    Writes fetched messages and dispatches post-insert hooks.

    Hooks run as background tasks that log their own failures; ``drain``
    waits for whatever is still outstanding.
    """

    def __init__(
        self,
        messages,
        accounts,
        classifier: Optional[ClassificationHook] = None,
        embedder: Optional[EmbeddingHook] = None,
        timeline: Optional[ContactTimelineHook] = None,
        settings: Optional[SyncSettings] = None
    ):
        self.messages = messages
        self.accounts = accounts
        self.classifier = classifier or NoopClassificationHook()
        self.embedder = embedder or NoopEmbeddingHook()
        self.timeline = timeline or NoopContactTimelineHook()
        self.settings = settings or default_settings
        self._hook_tasks: Set[asyncio.Task] = set()

    async def ingest_page(
        self,
        account: Dict[str, Any],
        folders_by_provider_id: Dict[str, Dict[str, Any]],
        messages: List[EmailMessage],
        context: SyncContext,
        progress: RunProgress
    ) -> IngestResult:
        """Ingest one adapter page, reporting progress every N messages."""
        result = IngestResult()
        for message in messages:
            folder = resolve_folder(message, folders_by_provider_id)
            message_id, inserted = await self.ingest_message(account, folder, message, context)
            if inserted:
                result.inserted += 1
                progress.inserted += 1
                result.message_ids.append(message_id)
            else:
                result.updated += 1
                progress.updated += 1
            progress.processed += 1
            await self._report_progress(context, progress)
        return result

    async def ingest_message(
        self,
        account: Dict[str, Any],
        folder: Optional[Dict[str, Any]],
        message: EmailMessage,
        context: SyncContext
    ) -> Tuple[Optional[str], bool]:
        account_id = str(account["_id"])
        envelope = normalize_envelope(message)
        folder_type = folder.get("folder_type") if folder else None

        existing = None
        if context.categorization == CategorizationPolicy.CLASSIFIER:
            existing = await self.messages.find(account_id, message.provider_message_id)
        category = await self._categorize(account, envelope, folder_type, existing, context)

        now = datetime.now(timezone.utc)
        sync_fields = {
            "is_read": message.is_read,
            "folder_id": folder["_id"] if folder else None,
            "folder_type": folder_type,
            "category": category,
            "label_ids": list(message.label_ids),
            "last_synced_at": now,
        }
        insert_fields = {
            **envelope,
            "user_id": account.get("user_id"),
            "embedding": None,
            "created_at": now,
        }
        message_id, inserted = await self.messages.upsert(
            account_id, message.provider_message_id, insert_fields, sync_fields
        )
        if inserted:
            self._after_insert(account, message_id, envelope, message.provider_message_id)
        return message_id, inserted

    async def _categorize(
        self,
        account: Dict[str, Any],
        envelope: Dict[str, Any],
        folder_type: Optional[str],
        existing: Optional[Dict[str, Any]],
        context: SyncContext
    ) -> str:
        fallback = category_for_folder(folder_type)
        if context.categorization == CategorizationPolicy.FOLDER:
            return fallback
        if existing and existing.get("category"):
            return existing["category"]
        try:
            label = await self.classifier.categorize(envelope, account.get("user_id"))
        except Exception as e:
            logger.warning(f"Categorization failed, using folder category '{fallback}': {e}")
            return fallback
        return label or fallback

    async def _report_progress(self, context: SyncContext, progress: RunProgress):
        interval = self.settings.progress_interval
        if progress.processed - progress.last_reported >= interval:
            await self.accounts.record_progress(
                context.account_id, context.lease, progress.processed, datetime.now(timezone.utc)
            )
            progress.last_reported = progress.processed

    def _after_insert(
        self,
        account: Dict[str, Any],
        message_id: str,
        envelope: Dict[str, Any],
        provider_message_id: str
    ):
        user_id = account.get("user_id")
        self._spawn(self._log_to_timeline(user_id, envelope, provider_message_id))
        self._spawn(self._embed(message_id))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    async def _log_to_timeline(
        self,
        user_id: Optional[str],
        envelope: Dict[str, Any],
        provider_message_id: str
    ):
        sender = envelope.get("from_address")
        if not user_id or not sender:
            return
        try:
            contact_id = await self.timeline.find_contact(user_id, sender)
            if contact_id:
                await self.timeline.log_received(contact_id, envelope["subject"], provider_message_id)
        except Exception as e:
            logger.warning(f"Contact timeline hook failed for {provider_message_id}: {e}")

    async def _embed(self, message_id: str):
        try:
            await self.embedder.embed(message_id)
        except Exception as e:
            logger.warning(f"Embedding hook failed for message {message_id}: {e}")

    @property
    def pending_hooks(self) -> int:
        return len(self._hook_tasks)

    async def drain(self):
        """Wait for outstanding hook tasks."""
        if self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks), return_exceptions=True)
