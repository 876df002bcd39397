"""
Credential gate.

Hands the sync engine a usable credential for an account, refreshing OAuth
access tokens when they are about to expire, and signals when the user has
to reconnect the mailbox.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.core.credential_vault import CredentialVault, CredentialVaultError, get_vault
from mailsync.core.store import AccountStore
from mailsync.providers.email.base import (
    ConfigurationError,
    Credential,
    NetworkError,
    PermissionDeniedError,
    ProviderKind,
)

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"


class NeedsReconnectionError(PermissionDeniedError):
    """The stored credential is unusable and cannot be refreshed."""
    pass


class CredentialGate(ABC):
    """Supplies a valid credential per account."""

    @abstractmethod
    async def get_valid_credential(self, account_id: str) -> Credential:
        """
        Return a credential the provider will accept.

        Raises:
            NeedsReconnectionError: When refresh is impossible
        """
        pass


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StoredCredentialGate(CredentialGate):
    """
    Credential gate backed by the encrypted ``credentials`` blob on the
    account document.
    """

    def __init__(
        self,
        accounts: AccountStore,
        vault: Optional[CredentialVault] = None,
        settings: Optional[SyncSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.accounts = accounts
        self.vault = vault or get_vault()
        self.settings = settings or default_settings
        self._transport = transport

    async def get_valid_credential(self, account_id: str) -> Credential:
        account = await self.accounts.get(account_id)
        if not account:
            raise NeedsReconnectionError(f"Account {account_id} not found")

        blob = account.get("credentials")
        if not blob:
            raise NeedsReconnectionError("No stored credentials for account")

        try:
            secrets = self.vault.open(blob)
        except CredentialVaultError as e:
            raise NeedsReconnectionError(f"Stored credentials unreadable: {e}")

        provider = ProviderKind(account["provider"])
        if provider == ProviderKind.IMAP:
            return self._imap_credential(account, secrets)

        if self._expiring(secrets.get("expires_at")):
            secrets = await self._refresh(account_id, provider, secrets)

        access_token = secrets.get("access_token")
        if not access_token:
            raise NeedsReconnectionError("No access token available")

        return Credential(
            access_token=access_token,
            token_type=secrets.get("token_type", "Bearer"),
            expires_at=_aware(secrets.get("expires_at")),
        )

    def _expiring(self, expires_at: Optional[datetime]) -> bool:
        if not expires_at:
            return False
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        return datetime.now(timezone.utc) >= _aware(expires_at) - margin

    def _imap_credential(self, account: Dict[str, Any], secrets: Dict[str, Any]) -> Credential:
        imap = account.get("imap") or {}
        host = imap.get("host")
        password = secrets.get("password")
        if not host:
            raise ConfigurationError("IMAP host is not configured")
        if not password:
            raise ConfigurationError("IMAP password is not configured")
        use_ssl = imap.get("use_ssl", True)
        return Credential(
            username=imap.get("username") or account.get("email_address"),
            password=password,
            host=host,
            port=imap.get("port") or (993 if use_ssl else 143),
            use_ssl=use_ssl,
        )

    def _token_request(self, provider: ProviderKind, refresh_token: str) -> tuple:
        if provider == ProviderKind.GMAIL:
            client_id = self.settings.google_client_id
            client_secret = self.settings.google_client_secret
            url = GOOGLE_TOKEN_URL
        else:
            client_id = self.settings.microsoft_client_id
            client_secret = self.settings.microsoft_client_secret
            url = MICROSOFT_TOKEN_URL.format(tenant=self.settings.microsoft_tenant)

        if not client_id or not client_secret:
            raise ConfigurationError(f"OAuth client for {provider.value} is not configured")

        return url, {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    async def _refresh(
        self,
        account_id: str,
        provider: ProviderKind,
        secrets: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Exchange the refresh token for a new access token and persist it."""
        refresh_token = secrets.get("refresh_token")
        if not refresh_token:
            raise NeedsReconnectionError("Access token expired and no refresh token available")

        url, data = self._token_request(provider, refresh_token)
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.provider_timeout_seconds
            ) as client:
                response = await client.post(url, data=data)
        except httpx.TransportError as e:
            raise NetworkError(f"Token refresh failed: {e}")

        if response.status_code in (400, 401):
            # invalid_grant: the user revoked access or the token aged out
            logger.warning(f"Token refresh rejected for account {account_id}: {response.text}")
            raise NeedsReconnectionError("Token refresh was rejected by the provider")
        if response.status_code != 200:
            raise NetworkError(
                f"Token refresh failed with status {response.status_code}",
                status_code=response.status_code,
            )

        tokens = response.json()
        refreshed = {
            **secrets,
            "access_token": tokens["access_token"],
            "refresh_token": tokens.get("refresh_token", refresh_token),
            "token_type": tokens.get("token_type", "Bearer"),
            "expires_at": datetime.now(timezone.utc) + timedelta(
                seconds=int(tokens.get("expires_in", 3600))
            ),
        }
        await self.accounts.save_credentials(
            account_id, self.vault.seal(refreshed), refreshed["expires_at"]
        )
        logger.info(f"Refreshed {provider.value} access token for account {account_id}")
        return refreshed
