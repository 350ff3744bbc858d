"""
Backend Test Configuration.

Pytest fixtures for testing the store, sync worker, services and API
without real mail servers or MongoDB.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from mailhub.providers.email.base import (
    LABEL_INBOX,
    LABEL_UNREAD,
    Account,
    EmailAddress,
    EmailRecord,
    OAuthCredentials,
    ProviderKind,
    ServerCredentials,
    SyncResult,
    ThreadBundle,
    generate_id,
)
from mailhub.providers.email.grouping import build_thread
from mailhub.services.mail_actions import MailActions
from mailhub.store.memory import MemoryMailStore
from mailhub.workers.sync_worker import SyncWorker

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _make_email(
    external_id: str,
    *,
    account_id: str = "acct-1",
    minutes: int = 0,
    labels=None,
    is_read: bool = False,
    is_starred: bool = False,
    subject: str = "Quarterly report",
    sender: str = "Alice@Example.com",
    to=("bob@example.com",),
    body: str = "Numbers attached.",
) -> EmailRecord:
    when = BASE_TIME + timedelta(minutes=minutes)
    if labels is None:
        labels = [LABEL_INBOX] + ([] if is_read else [LABEL_UNREAD])
    return EmailRecord(
        id=generate_id(),
        external_id=external_id,
        thread_id="",
        account_id=account_id,
        from_address=sender,
        from_name="Alice",
        to_addresses=[EmailAddress(address=a) for a in to],
        subject=subject,
        body_text=body,
        snippet=body[:200],
        message_id=f"<{external_id}@example.com>",
        sent_at=when,
        received_at=when,
        is_read=is_read,
        is_starred=is_starred,
        labels=list(labels),
    )


def _make_bundle(external_id: str, emails, account_id: str = "acct-1") -> ThreadBundle:
    return ThreadBundle(thread=build_thread(account_id, external_id, list(emails)), emails=list(emails))


@pytest.fixture
def make_email():
    """Builder for normalized messages."""
    return _make_email


@pytest.fixture
def make_bundle():
    """Builder for a thread bundle from messages."""
    return _make_bundle


@pytest.fixture
def imap_account():
    return Account(
        id="acct-1",
        provider=ProviderKind.IMAP,
        email="bob@example.com",
        display_name="Bob",
        imap=ServerCredentials(host="imap.example.com", port=993, username="bob", password="secret"),
        smtp=ServerCredentials(host="smtp.example.com", port=587, username="bob", password="secret"),
    )


@pytest.fixture
def gmail_account():
    return Account(
        id="acct-g",
        provider=ProviderKind.GMAIL,
        email="carol@gmail.com",
        oauth=OAuthCredentials(
            access_token="access-1",
            refresh_token="refresh-1",
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        ),
    )


@pytest.fixture
def memory_store():
    return MemoryMailStore()


@pytest.fixture
async def store_with_account(memory_store, imap_account):
    await memory_store.add_account(imap_account)
    return memory_store


@pytest.fixture
def fake_provider():
    """
    Stand-in adapter with async methods recorded by AsyncMock.

    ``provider.account`` and ``provider.on_token_refresh`` are set by the
    factory each time the worker or service creates it.
    """
    provider = MagicMock()
    provider.connect = AsyncMock()
    provider.disconnect = AsyncMock()
    provider.perform_initial_sync = AsyncMock(return_value=SyncResult(new_cursor="c-1", full_sync=True))
    provider.perform_incremental_sync = AsyncMock(return_value=SyncResult(new_cursor="c-2"))
    provider.get_folders = AsyncMock(return_value=[])
    provider.send_message = AsyncMock(return_value="<sent@example.com>")
    provider.mark_as_read = AsyncMock()
    provider.mark_as_starred = AsyncMock()
    provider.move_to_folder = AsyncMock()
    provider.delete_messages = AsyncMock()
    provider.archive_messages = AsyncMock()
    return provider


@pytest.fixture
def provider_factory(fake_provider):
    def factory(account, on_token_refresh=None):
        fake_provider.account = account
        fake_provider.on_token_refresh = on_token_refresh
        return fake_provider
    return factory


@pytest.fixture
def sync_worker(memory_store, provider_factory):
    return SyncWorker(memory_store, provider_factory=provider_factory)


@pytest.fixture
def mail_actions(memory_store, provider_factory):
    return MailActions(memory_store, provider_factory=provider_factory)


@pytest.fixture
def app(memory_store, sync_worker, mail_actions):
    """FastAPI application wired to the memory store and fake provider.

    The lifespan is not run, so no database connection is attempted.
    """
    from mailhub.main import create_app

    fastapi_app = create_app()
    fastapi_app.state.db = None
    fastapi_app.state.store = memory_store
    fastapi_app.state.sync_worker = sync_worker
    fastapi_app.state.mail_actions = mail_actions
    return fastapi_app


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
