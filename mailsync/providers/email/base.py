"""
Base types and classes for mailbox synchronization.

Provides the normalized data structures every provider adapter returns,
the abstract adapter contract, and the sync error hierarchy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Remote mailbox provider kinds."""
    MICROSOFT = "microsoft"
    GMAIL = "gmail"
    IMAP = "imap"


class SyncMode(str, Enum):
    """How much of the mailbox a run covers."""
    INITIAL = "initial"
    INCREMENTAL = "incremental"


class SyncTrigger(str, Enum):
    """Why a sync run was started."""
    OAUTH = "oauth"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class CategorizationPolicy(str, Enum):
    """How ingested messages receive their category."""
    FOLDER = "folder"  # derived from the originating folder type, no external call
    CLASSIFIER = "classifier"  # external categorization hook


class CursorScope(str, Enum):
    """Where an adapter keeps its resume position."""
    FOLDER = "folder"  # one delta cursor per folder
    ACCOUNT = "account"  # one page token for the whole account
    NONE = "none"  # no server-side cursor


@dataclass
class Credential:
    """A usable credential handed out by the credential gate."""
    access_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    username: Optional[str] = None
    password: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    use_ssl: bool = True


@dataclass
class RemoteFolder:
    """A folder or label as reported by the provider."""
    provider_folder_id: str
    display_name: str
    item_count: int = 0
    unread_count: int = 0
    parent_id: Optional[str] = None
    path: str = ""
    flags: List[str] = field(default_factory=list)
    delimiter: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_folder_id": self.provider_folder_id,
            "display_name": self.display_name,
            "item_count": self.item_count,
            "unread_count": self.unread_count,
            "parent_id": self.parent_id,
            "path": self.path or self.display_name,
            "flags": self.flags,
        }


@dataclass
class EmailMessage:
    """
    A fetched message in the normalized shape the ingestion pipeline consumes.

    Adapters are responsible for mapping raw provider payloads into this
    structure; nothing downstream ever looks at provider responses.
    """
    provider_message_id: str
    subject: str = ""
    from_address: str = ""
    from_name: str = ""
    to_addresses: List[Dict[str, str]] = field(default_factory=list)
    cc_addresses: List[Dict[str, str]] = field(default_factory=list)
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    snippet: str = ""
    is_read: bool = False
    is_starred: bool = False
    has_attachments: bool = False
    # Provider folder the message was fetched from. Label-based providers
    # leave this empty and fill label_ids instead.
    folder_provider_id: Optional[str] = None
    label_ids: List[str] = field(default_factory=list)
    provider_thread_id: Optional[str] = None
    message_id_header: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = field(default_factory=list)
    size_bytes: int = 0


@dataclass
class SyncContext:
    """Per-run parameters threaded through adapters and ingestion."""
    account_id: str
    lease: str
    mode: SyncMode = SyncMode.INCREMENTAL
    trigger: SyncTrigger = SyncTrigger.MANUAL
    categorization: CategorizationPolicy = CategorizationPolicy.FOLDER
    attempt: int = 1
    run_id: Optional[str] = None

    @property
    def full_sweep(self) -> bool:
        """True when the run should walk entire folders rather than a recent window."""
        return self.mode == SyncMode.INITIAL or self.trigger in (
            SyncTrigger.MANUAL,
            SyncTrigger.OAUTH,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "lease": self.lease,
            "mode": self.mode.value,
            "trigger": self.trigger.value,
            "categorization": self.categorization.value,
            "attempt": self.attempt,
            "run_id": self.run_id,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SyncContext":
        return cls(
            account_id=payload["account_id"],
            lease=payload["lease"],
            mode=SyncMode(payload.get("mode", SyncMode.INCREMENTAL.value)),
            trigger=SyncTrigger(payload.get("trigger", SyncTrigger.MANUAL.value)),
            categorization=CategorizationPolicy(
                payload.get("categorization", CategorizationPolicy.FOLDER.value)
            ),
            attempt=int(payload.get("attempt", 1)),
            run_id=payload.get("run_id"),
        )


@dataclass
class FolderPage:
    """
    One page of results from an adapter.

    ``next_page_marker`` says whether the current run should keep paging.
    ``new_cursor`` is the resume position for *future* runs and is only
    meaningful once paging is exhausted.
    """
    messages: List[EmailMessage] = field(default_factory=list)
    new_cursor: Optional[str] = None
    next_page_marker: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_page_marker is not None


class MailProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Adapters open their transport lazily from the credential passed to
    each call and release it in ``close``.
    """

    kind: ProviderKind
    cursor_scope: CursorScope = CursorScope.FOLDER
    # When True, rate limits push back the scheduled-sync interval
    # instead of triggering a quick retry.
    backs_off_on_rate_limit: bool = False

    def __init__(self, settings=None):
        if settings is None:
            from mailsync.core.config import settings as default_settings
            settings = default_settings
        self.settings = settings

    @abstractmethod
    async def list_folders(
        self,
        account: Dict[str, Any],
        credential: Credential
    ) -> List[RemoteFolder]:
        """
        List the account's folders.

        Args:
            account: Account document
            credential: Credential from the credential gate

        Returns:
            Flat list of folders; safe to call repeatedly
        """
        pass

    @abstractmethod
    async def sync_folder(
        self,
        account: Dict[str, Any],
        folder: Optional[Dict[str, Any]],
        credential: Credential,
        context: SyncContext,
        page_marker: Optional[str] = None
    ) -> FolderPage:
        """
        Fetch one page of messages for a folder.

        Args:
            account: Account document
            folder: Folder document, or None for account-scoped adapters
            credential: Credential from the credential gate
            context: Run parameters (mode, trigger)
            page_marker: Marker returned by the previous page of this run

        Returns:
            FolderPage with the messages and resume state
        """
        pass

    async def close(self):
        """Release any open transport."""
        pass

    def should_sync_folder(self, folder: Dict[str, Any]) -> bool:
        """Provider-level folder filter applied on top of the enabled flag."""
        return True


# ==================== Custom Exceptions ====================

class SyncError(Exception):
    """Base exception for mailbox sync failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermissionDeniedError(SyncError):
    """Credential rejected or access revoked. The user must re-authorize."""
    pass


class RateLimitError(SyncError):
    """Provider throttled the request."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class NetworkError(SyncError):
    """Timeout, refused connection or DNS failure."""
    pass


class UnknownSyncError(SyncError):
    """Unclassified provider failure."""
    pass


class ConfigurationError(SyncError):
    """Account settings are incomplete (e.g. missing IMAP host)."""
    pass
