"""
Credential Vault for account secrets.

Encrypts OAuth token bundles and IMAP/SMTP passwords before accounts are
written to the local store. Uses Fernet symmetric encryption with a key
derived (PBKDF2) from the configured master key.
"""

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mailhub.core.config import settings

logger = logging.getLogger(__name__)

# Account document fields holding credential bundles
SECRET_FIELDS = ("oauth", "imap", "smtp")
SEALED_FIELD = "sealed_credentials"


class CredentialVaultError(Exception):
    """Base exception for credential vault operations."""
    pass


class EncryptionError(CredentialVaultError):
    """Error during encryption."""
    pass


class DecryptionError(CredentialVaultError):
    """Error during decryption."""
    pass


class CredentialVault:
    """
    Secure credential storage with encryption at rest.

    Usage:
        vault = CredentialVault()
        sealed = vault.encrypt({"access_token": "...", "refresh_token": "..."})
        credentials = vault.decrypt(sealed)
    """

    DEFAULT_SALT = "mailhub-credential-vault-salt"

    def __init__(self, master_key: Optional[str] = None, salt: Optional[str] = None):
        """
        Initialize the credential vault.

        Args:
            master_key: Optional master key. Falls back to
                        MAILHUB_CREDENTIAL_VAULT_KEY.
            salt: Optional KDF salt. Falls back to MAILHUB_CREDENTIAL_VAULT_SALT.
        """
        self._cipher: Optional[Fernet] = None
        self._initialize_cipher(master_key, salt)

    def _initialize_cipher(self, master_key: Optional[str] = None, salt: Optional[str] = None):
        """Initialize the Fernet cipher with the master key."""
        key = master_key or settings.credential_vault_key

        if not key:
            logger.warning(
                "No MAILHUB_CREDENTIAL_VAULT_KEY set. Generating ephemeral key. "
                "Stored credentials will not survive a restart!"
            )
            key = Fernet.generate_key().decode()
            settings.credential_vault_key = key

        salt = salt or settings.credential_vault_salt
        if not salt:
            salt = self.DEFAULT_SALT
            logger.warning("No MAILHUB_CREDENTIAL_VAULT_SALT set. Using default salt.")

        self._cipher = Fernet(self._derive_key(key, salt.encode()))

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive a Fernet-compatible key from a password."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
            backend=default_backend()
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def encrypt(self, data: dict[str, Any]) -> str:
        """Serialize a credential mapping to JSON and seal it into a URL-safe token."""
        if not self._cipher:
            raise EncryptionError("Cipher not initialized")
        try:
            token = self._cipher.encrypt(json.dumps(data, default=str).encode())
        except (TypeError, ValueError) as e:
            logger.error(f"Credential encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt credentials: {e}")
        return base64.urlsafe_b64encode(token).decode()

    def decrypt(self, encrypted_data: str) -> dict[str, Any]:
        """
        Open a token produced by encrypt().

        Raises:
            DecryptionError: wrong master key/salt, or a tampered or truncated token
        """
        if not self._cipher:
            raise DecryptionError("Cipher not initialized")
        try:
            plain = self._cipher.decrypt(base64.urlsafe_b64decode(encrypted_data.encode()))
            return json.loads(plain.decode())
        except InvalidToken:
            logger.error("Credential decryption failed: wrong key or corrupted token")
            raise DecryptionError("Failed to decrypt: Invalid key or corrupted data")
        except (TypeError, ValueError) as e:
            logger.error(f"Credential decryption failed: {e}")
            raise DecryptionError(f"Failed to decrypt credentials: {e}")

    def seal_account(self, document: dict[str, Any]) -> dict[str, Any]:
        """Replace the credential bundles of an account document with one sealed field."""
        sealed = dict(document)
        secrets = {name: sealed.pop(name, None) for name in SECRET_FIELDS}
        sealed[SEALED_FIELD] = self.encrypt(secrets)
        return sealed

    def unseal_account(self, document: dict[str, Any]) -> dict[str, Any]:
        """Inverse of seal_account(); documents without a sealed field pass through."""
        opened = dict(document)
        sealed = opened.pop(SEALED_FIELD, None)
        if sealed:
            opened.update(self.decrypt(sealed))
        return opened


# Global vault instance
_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get the global credential vault instance."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault


class TokenManager:
    """OAuth token lifecycle helpers."""

    @staticmethod
    def is_token_expired(
        expires_at: Optional[datetime],
        buffer_seconds: int = 300
    ) -> bool:
        """
        Check if a token is expired or about to expire.

        Args:
            expires_at: Token expiration datetime
            buffer_seconds: Buffer before actual expiration (default 5 minutes)

        Returns:
            True if token is expired or will expire within buffer period
        """
        if not expires_at:
            return False

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc)
        return now >= (expires_at - timedelta(seconds=buffer_seconds))


__all__ = [
    "CredentialVault",
    "CredentialVaultError",
    "EncryptionError",
    "DecryptionError",
    "TokenManager",
    "get_vault",
]
