"""Unit tests for credential protection.

Tests the security utilities:
- Credential vault encryption
- Account document sealing
- OAuth token expiry checks
"""

from datetime import datetime, timedelta, timezone

import pytest

from mailhub.core.credential_vault import (
    CredentialVault,
    DecryptionError,
    TokenManager,
)
from mailhub.providers.email.base import Account


class TestCredentialVault:
    """Test the CredentialVault class."""

    def test_encrypt_decrypt(self):
        vault = CredentialVault(master_key="test-master-key", salt="test-salt")
        sealed = vault.encrypt({"access_token": "abc", "refresh_token": "def"})

        assert "abc" not in sealed
        assert vault.decrypt(sealed) == {"access_token": "abc", "refresh_token": "def"}

    def test_wrong_key_fails(self):
        sealed = CredentialVault(master_key="key-one", salt="s").encrypt({"password": "x"})

        with pytest.raises(DecryptionError):
            CredentialVault(master_key="key-two", salt="s").decrypt(sealed)

    def test_corrupted_data_fails(self):
        vault = CredentialVault(master_key="test-master-key", salt="s")
        with pytest.raises(DecryptionError):
            vault.decrypt("not-a-token")


class TestAccountSealing:
    """Credential bundles never reach the store in clear text."""

    def test_seal_and_unseal_account(self, imap_account: Account):
        vault = CredentialVault(master_key="test-master-key", salt="s")
        document = imap_account.to_dict()

        sealed = vault.seal_account(document)

        assert "imap" not in sealed and "smtp" not in sealed
        assert "secret" not in sealed["sealed_credentials"]
        assert sealed["email"] == "bob@example.com"

        restored = Account.from_dict(vault.unseal_account(sealed))
        assert restored.imap == imap_account.imap
        assert restored.smtp == imap_account.smtp

    def test_oauth_account_round_trip(self, gmail_account: Account):
        vault = CredentialVault(master_key="test-master-key", salt="s")

        restored = Account.from_dict(vault.unseal_account(vault.seal_account(gmail_account.to_dict())))

        assert restored.oauth.refresh_token == "refresh-1"
        assert restored.oauth.token_expires_at == gmail_account.oauth.token_expires_at

    def test_unsealed_document_passes_through(self):
        vault = CredentialVault(master_key="test-master-key", salt="s")
        assert vault.unseal_account({"id": "a"}) == {"id": "a"}


class TestTokenManager:
    """Test OAuth token expiry checks."""

    def test_no_expiry_means_valid(self):
        assert TokenManager.is_token_expired(None) is False

    def test_expired(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        assert TokenManager.is_token_expired(past) is True

    def test_within_buffer_counts_as_expired(self):
        soon = datetime.now(timezone.utc) + timedelta(seconds=60)
        assert TokenManager.is_token_expired(soon, buffer_seconds=300) is True
        assert TokenManager.is_token_expired(soon, buffer_seconds=10) is False

    def test_naive_datetime_treated_as_utc(self):
        later = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        assert TokenManager.is_token_expired(later) is False
