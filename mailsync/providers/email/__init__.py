"""Email provider adapters and their shared contract.

- Outlook (Microsoft Graph, per-folder delta links)
- Gmail (Gmail API, account-wide page token)
- IMAP (any server, sequence-range sweeps)
"""

from mailsync.providers.email.base import (
    CategorizationPolicy,
    ConfigurationError,
    Credential,
    CursorScope,
    EmailMessage,
    FolderPage,
    MailProviderAdapter,
    NetworkError,
    PermissionDeniedError,
    ProviderKind,
    RateLimitError,
    RemoteFolder,
    SyncContext,
    SyncError,
    SyncMode,
    SyncTrigger,
    UnknownSyncError,
)

__all__ = [
    "CategorizationPolicy",
    "ConfigurationError",
    "Credential",
    "CursorScope",
    "EmailMessage",
    "FolderPage",
    "MailProviderAdapter",
    "NetworkError",
    "PermissionDeniedError",
    "ProviderKind",
    "RateLimitError",
    "RemoteFolder",
    "SyncContext",
    "SyncError",
    "SyncMode",
    "SyncTrigger",
    "UnknownSyncError",
]
