"""
Adapter Factory and Registry

Maps each provider kind to its adapter implementation. The orchestrator
and worker select an adapter once per run through ``create_adapter``.
"""

import logging
from typing import Optional, Type

from mailsync.providers.email.base import MailProviderAdapter, ProviderKind

logger = logging.getLogger(__name__)

# Adapter registry - maps provider kinds to implementation classes
_adapter_registry: dict[ProviderKind, Type[MailProviderAdapter]] = {}


def register_adapter(kind: ProviderKind):
    """
    Decorator to register an adapter implementation.

    Usage:
        @register_adapter(ProviderKind.GMAIL)
        class GmailAdapter(MailProviderAdapter):
            ...
    """
    def decorator(cls: Type[MailProviderAdapter]):
        _adapter_registry[kind] = cls
        logger.debug(f"Registered adapter: {kind.value} -> {cls.__name__}")
        return cls
    return decorator


def get_adapter_class(kind: ProviderKind) -> Optional[Type[MailProviderAdapter]]:
    """Get the adapter class for a provider kind."""
    _load_adapters()
    return _adapter_registry.get(kind)


def create_adapter(kind, settings=None) -> MailProviderAdapter:
    """
    Create an adapter instance.

    Args:
        kind: Provider kind (enum or its string value)
        settings: Optional settings override

    Returns:
        Adapter instance

    Raises:
        ValueError: If no adapter is registered for the kind
    """
    kind = ProviderKind(kind)
    cls = get_adapter_class(kind)
    if not cls:
        raise ValueError(f"No adapter registered for provider: {kind.value}")
    return cls(settings)


def list_registered_adapters() -> list[ProviderKind]:
    """List all registered provider kinds."""
    _load_adapters()
    return list(_adapter_registry.keys())


def _load_adapters():
    """Import adapter modules so their decorators run."""
    from mailsync.providers.email import gmail_sync, imap_sync, outlook_sync  # noqa: F401
