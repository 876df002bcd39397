"""
Mail Provider Adapters Package

Adapters translate each remote mailbox API into the normalized folder and
message shapes the sync engine works with.

Supported Providers:
- Microsoft 365 / Outlook (OAuth 2.0 via Microsoft Graph delta queries)
- Gmail (OAuth 2.0 via the Gmail API)
- Any IMAP server (password)
"""

from mailsync.providers.registry import (
    create_adapter,
    get_adapter_class,
    list_registered_adapters,
    register_adapter,
)

__all__ = [
    "create_adapter",
    "get_adapter_class",
    "list_registered_adapters",
    "register_adapter",
]
