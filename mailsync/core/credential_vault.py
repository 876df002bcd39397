"""
Credential vault for mailbox secrets.

Account documents keep OAuth tokens and IMAP passwords as a single
Fernet-encrypted blob. The Fernet key is derived with PBKDF2 from a master
key in the environment.
"""

import os
import json
import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


class CredentialVaultError(Exception):
    """Base exception for credential vault operations."""
    pass


class EncryptionError(CredentialVaultError):
    """Error during encryption."""
    pass


class DecryptionError(CredentialVaultError):
    """Stored credentials cannot be decrypted with the current key."""
    pass


class CredentialVault:
    """
    Encrypts and decrypts account credential blobs.

    Usage:
        vault = CredentialVault()
        blob = vault.seal({"access_token": "...", "refresh_token": "..."})
        secrets = vault.open(blob)
    """

    MASTER_KEY_ENV = "CREDENTIAL_VAULT_KEY"
    SALT_ENV = "CREDENTIAL_VAULT_SALT"
    DEFAULT_SALT = "mailsync-credential-vault-salt"

    def __init__(self, master_key: Optional[str] = None, salt: Optional[str] = None):
        key = master_key or os.environ.get(self.MASTER_KEY_ENV)
        if not key:
            logger.warning(
                f"No {self.MASTER_KEY_ENV} set. Generating ephemeral key. "
                "Stored credentials will not survive a restart!"
            )
            key = Fernet.generate_key().decode()
            os.environ[self.MASTER_KEY_ENV] = key

        salt = salt or os.environ.get(self.SALT_ENV) or self.DEFAULT_SALT
        self._cipher = Fernet(self._derive_key(key, salt.encode()))

    @staticmethod
    def _derive_key(password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def encrypt(self, data: Dict[str, Any]) -> str:
        """
        Encrypt a dictionary of credentials.

        Raises:
            EncryptionError: If the data cannot be serialized or encrypted
        """
        try:
            payload = json.dumps(data, default=str).encode()
            return self._cipher.encrypt(payload).decode()
        except (TypeError, ValueError) as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt credentials: {e}")

    def decrypt(self, encrypted_data: str) -> Dict[str, Any]:
        """
        Decrypt an encrypted credential string.

        Raises:
            DecryptionError: If the key is wrong or the data is corrupted
        """
        try:
            decrypted = self._cipher.decrypt(encrypted_data.encode())
            return json.loads(decrypted.decode())
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
            raise DecryptionError("Failed to decrypt: Invalid key or corrupted data")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Decryption failed: Invalid JSON: {e}")
            raise DecryptionError("Failed to decrypt: Invalid data format")

    def seal(self, secrets: Dict[str, Any]) -> str:
        """Encrypt account secrets, serializing ``expires_at`` as ISO-8601."""
        data = dict(secrets)
        expires_at = data.get("expires_at")
        if isinstance(expires_at, datetime):
            data["expires_at"] = expires_at.isoformat()
        return self.encrypt(data)

    def open(self, encrypted_data: str) -> Dict[str, Any]:
        """Decrypt account secrets, parsing ``expires_at`` back to a datetime."""
        data = self.decrypt(encrypted_data)
        if data.get("expires_at"):
            data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        return data


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get the global credential vault instance."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault
