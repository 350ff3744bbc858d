"""
API endpoint tests.

The app runs against the in-memory store and a fake provider adapter.
"""

import asyncio
import base64
from unittest.mock import patch

import pytest

from mailhub.providers.email.base import (
    BatchMutationError,
    FolderInfo,
    FolderType,
    OAuthGrant,
    SyncResult,
    utcnow,
)


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestAccountEndpoints:
    """Tests for account registration and listing."""

    @pytest.mark.asyncio
    async def test_create_imap_account(self, async_client):
        response = await async_client.post("/api/v1/accounts", json={
            "email": "dave@example.com",
            "imap": {"host": "imap.example.com", "port": 993, "username": "dave", "password": "pw"},
        })

        assert response.status_code == 201
        data = response.json()
        assert data["provider"] == "imap"
        assert data["sync_status"] == "never_synced"
        assert data["can_send"] is False
        assert "imap" not in data

        listed = await async_client.get("/api/v1/accounts")
        assert [a["email"] for a in listed.json()] == ["dave@example.com"]

    @pytest.mark.asyncio
    async def test_invalid_port_rejected(self, async_client):
        response = await async_client.post("/api/v1/accounts", json={
            "email": "dave@example.com",
            "imap": {"host": "imap.example.com", "port": 0},
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_missing_account(self, async_client):
        response = await async_client.get("/api/v1/accounts/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_pause_and_delete(self, async_client, store_with_account):
        paused = await async_client.patch("/api/v1/accounts/acct-1", params={"is_active": "false"})
        assert paused.json()["is_active"] is False

        deleted = await async_client.delete("/api/v1/accounts/acct-1")
        assert deleted.status_code == 204
        assert await store_with_account.get_account("acct-1") is None


class TestSyncEndpoints:

    @pytest.mark.asyncio
    async def test_sync_account(self, async_client, store_with_account, fake_provider, make_email, make_bundle):
        fake_provider.perform_initial_sync.return_value = SyncResult(
            threads=[make_bundle("t-1", [make_email("m1")])], new_cursor="c-1", full_sync=True
        )

        response = await async_client.post("/api/v1/sync/acct-1")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "synced"
        assert data["threads_synced"] == 1
        assert data["used_full_sync"] is True

    @pytest.mark.asyncio
    async def test_sync_busy_account_conflict(self, async_client, store_with_account, sync_worker):
        lock = sync_worker._locks.setdefault("acct-1", asyncio.Lock())
        await lock.acquire()
        try:
            response = await async_client.post("/api/v1/sync/acct-1")
        finally:
            lock.release()

        assert response.status_code == 409
        assert response.json()["error"] == "sync_in_progress"

    @pytest.mark.asyncio
    async def test_sync_all_reports(self, async_client, store_with_account):
        response = await async_client.post("/api/v1/sync")
        reports = response.json()["reports"]
        assert [r["account_id"] for r in reports] == ["acct-1"]
        assert reports[0]["status"] == "synced"


class TestThreadEndpoints:

    @pytest.fixture
    async def synced(self, store_with_account, make_email, make_bundle):
        result = SyncResult(threads=[
            make_bundle("t-1", [make_email("m1", subject="Budget"), make_email("m2", minutes=1, subject="Re: Budget")]),
            make_bundle("t-2", [make_email("m3", minutes=5, subject="Lunch", labels=[])]),
        ])
        await store_with_account.apply_sync("acct-1", result, cursor="c-1", synced_at=utcnow())
        return store_with_account

    @pytest.mark.asyncio
    async def test_list_and_filter(self, async_client, synced):
        everything = (await async_client.get("/api/v1/threads")).json()
        inbox = (await async_client.get("/api/v1/threads", params={"status": "inbox"})).json()
        search = (await async_client.get("/api/v1/threads", params={"q": "budget"})).json()

        assert [t["external_id"] for t in everything["threads"]] == ["t-2", "t-1"]
        assert [t["external_id"] for t in inbox["threads"]] == ["t-1"]
        assert [t["subject"] for t in search["threads"]] == ["Re: Budget"]

    @pytest.mark.asyncio
    async def test_unknown_status_is_bad_request(self, async_client, synced):
        response = await async_client.get("/api/v1/threads", params={"status": "important"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_thread_detail(self, async_client, synced):
        thread_id = (await async_client.get("/api/v1/threads", params={"status": "inbox"})).json()["threads"][0]["id"]

        detail = (await async_client.get(f"/api/v1/threads/{thread_id}")).json()

        assert detail["thread"]["message_count"] == 2
        assert [e["external_id"] for e in detail["emails"]] == ["m1", "m2"]
        assert detail["emails"][0]["to_addresses"] == [{"address": "bob@example.com", "name": None}]


class TestMailEndpoints:

    @pytest.mark.asyncio
    async def test_mark_read(self, async_client, store_with_account, fake_provider):
        response = await async_client.post("/api/v1/mail/acct-1/read", json={"external_ids": ["m1"]})
        assert response.status_code == 200
        fake_provider.mark_as_read.assert_awaited_once_with(["m1"], True)

    @pytest.mark.asyncio
    async def test_empty_id_list_rejected(self, async_client, store_with_account):
        response = await async_client.post("/api/v1/mail/acct-1/archive", json={"external_ids": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_partial_failure_reported(self, async_client, store_with_account, fake_provider):
        fake_provider.delete_messages.side_effect = BatchMutationError(
            "delete", {"m2": "not found"}, attempted=2
        )

        response = await async_client.post("/api/v1/mail/acct-1/delete", json={"external_ids": ["m1", "m2"]})

        assert response.status_code == 502
        body = response.json()
        assert body["failures"] == {"m2": "not found"}
        assert body["attempted"] == 2

    @pytest.mark.asyncio
    async def test_send_with_attachment(self, async_client, store_with_account, fake_provider):
        response = await async_client.post("/api/v1/mail/acct-1/send", json={
            "to": ["alice@example.com"],
            "subject": "Report",
            "body": "See attached",
            "attachments": [{"filename": "r.txt", "content_base64": base64.b64encode(b"data").decode()}],
        })

        assert response.status_code == 200
        assert response.json()["message_id"] == "<sent@example.com>"
        params = fake_provider.send_message.await_args.args[0]
        assert params.attachments[0].content == b"data"

    @pytest.mark.asyncio
    async def test_folders(self, async_client, store_with_account, fake_provider):
        fake_provider.get_folders.return_value = [
            FolderInfo(id="INBOX", name="INBOX", display_name="Inbox", type=FolderType.INBOX, total_count=3)
        ]
        folders = (await async_client.get("/api/v1/mail/acct-1/folders")).json()
        assert folders[0]["type"] == "inbox"
        assert folders[0]["total_count"] == 3


class TestOAuthEndpoints:

    @pytest.mark.asyncio
    async def test_imap_has_no_oauth(self, async_client):
        response = await async_client.get("/api/v1/oauth/imap/authorize")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_authorize_then_callback(self, async_client, memory_store):
        with patch(
            "mailhub.providers.email.gmail_provider.GmailProvider.get_auth_url",
            return_value="https://accounts.example/consent",
        ):
            init = (await async_client.get("/api/v1/oauth/gmail/authorize")).json()
        assert init["authorization_url"] == "https://accounts.example/consent"

        grant = OAuthGrant(
            access_token="at", refresh_token="rt", expires_at=utcnow(),
            email="erin@gmail.com", display_name="Erin",
        )
        with patch(
            "mailhub.providers.email.gmail_provider.GmailProvider.handle_callback",
            return_value=grant,
        ):
            response = await async_client.post(
                "/api/v1/oauth/gmail/callback", json={"code": "abc", "state": init["state"]}
            )

        assert response.status_code == 201
        assert response.json()["email"] == "erin@gmail.com"
        account = (await memory_store.list_accounts())[0]
        assert account.oauth.refresh_token == "rt"

    @pytest.mark.asyncio
    async def test_callback_with_unknown_state(self, async_client):
        response = await async_client.post(
            "/api/v1/oauth/gmail/callback", json={"code": "abc", "state": "forged"}
        )
        assert response.status_code == 400
