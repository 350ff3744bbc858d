"""
Tests for the Gmail adapter.

The Gmail API client is replaced with a MagicMock service; each request
object's ``execute()`` returns a canned response or raises HttpError.
"""

import base64
from datetime import timedelta
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from mailhub.providers.email.base import (
    AuthError,
    BatchMutationError,
    NotConnectedError,
    OAuthCredentials,
    SendEmailParams,
    SendError,
    utcnow,
)
from mailhub.providers.email.gmail_provider import GmailProvider


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": str(status)}), b"error")


def _request(result=None, error=None):
    request = MagicMock()
    if error is not None:
        request.execute.side_effect = error
    else:
        request.execute.return_value = result
    return request


def _message(message_id, thread_id, labels, millis, subject="Launch plan"):
    body = base64.urlsafe_b64encode(b"See you there").decode().rstrip("=")
    return {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": labels,
        "snippet": "See you there",
        "internalDate": str(millis),
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": "Dana <dana@example.com>"},
                {"name": "To", "value": "carol@gmail.com"},
                {"name": "Subject", "value": subject},
                {"name": "Message-ID", "value": f"<{message_id}@mail.gmail.com>"},
            ],
            "body": {"data": body},
        },
    }


THREADS = {
    "th-1": {
        "id": "th-1",
        "messages": [
            _message("g1", "th-1", ["INBOX"], 1704103200000),
            _message("g2", "th-1", ["INBOX", "UNREAD", "STARRED"], 1704106800000, "Re: Launch plan"),
        ],
    },
}


@pytest.fixture
def service():
    service = MagicMock()
    users = service.users.return_value

    def get_thread(userId, id, format):
        if id in THREADS:
            return _request(THREADS[id])
        return _request(error=_http_error(404))

    users.threads.return_value.get.side_effect = get_thread
    users.getProfile.return_value = _request({"historyId": "777"})
    return service


@pytest.fixture
async def provider(gmail_account, service):
    gmail = GmailProvider(account=gmail_account)
    with patch.object(GmailProvider, "_build_service", return_value=service):
        await gmail.connect()
    return gmail


class TestConnect:

    @pytest.mark.asyncio
    async def test_expired_token_without_refresh_token(self, gmail_account):
        gmail_account.oauth = OAuthCredentials(
            access_token="old", refresh_token=None, token_expires_at=utcnow() - timedelta(minutes=5)
        )
        gmail = GmailProvider(account=gmail_account)

        with pytest.raises(AuthError):
            await gmail.connect()
        assert not gmail.is_connected

    @pytest.mark.asyncio
    async def test_operations_require_connect(self, gmail_account):
        with pytest.raises(NotConnectedError):
            await GmailProvider(account=gmail_account).perform_initial_sync()


class TestSync:
    """Tests for initial and history-based sync."""

    @pytest.mark.asyncio
    async def test_initial_sync(self, provider, service):
        threads_api = service.users.return_value.threads.return_value
        threads_api.list.return_value = _request({
            "threads": [{"id": "th-1"}, {"id": "th-gone"}],
            "nextPageToken": "page-2",
        })

        result = await provider.perform_initial_sync()

        assert result.full_sync is True
        assert result.new_cursor == "777"
        assert result.has_more is True
        assert len(result.threads) == 1

        bundle = result.threads[0]
        assert bundle.thread.external_id == "th-1"
        assert bundle.thread.subject == "Re: Launch plan"
        assert bundle.thread.message_count == 2
        assert bundle.thread.unread_count == 1
        assert bundle.thread.is_starred is True
        assert all(e.thread_id == bundle.thread.id for e in bundle.emails)

        first, second = bundle.emails
        assert first.from_address == "dana@example.com"
        assert first.from_name == "Dana"
        assert first.is_read is True
        assert second.is_read is False
        assert first.body_text == "See you there"

    @pytest.mark.asyncio
    async def test_incremental_sync_collects_affected_threads(self, provider, service):
        history_api = service.users.return_value.history.return_value
        history_api.list.return_value = _request({
            "history": [
                {"messagesAdded": [{"message": {"id": "g2", "threadId": "th-1"}}]},
                {"messagesDeleted": [{"message": {"id": "g9", "threadId": "th-9"}}]},
            ],
            "historyId": "800",
        })

        result = await provider.perform_incremental_sync("700")

        assert result.full_sync is False
        assert result.new_cursor == "800"
        assert [b.thread.external_id for b in result.threads] == ["th-1"]
        assert result.deleted_thread_ids == ["th-9"]
        assert result.deleted_message_ids == ["g9"]
        assert history_api.list.call_args.kwargs["startHistoryId"] == "700"

    @pytest.mark.asyncio
    async def test_deleted_message_leaves_surviving_thread(
        self, provider, service, memory_store, gmail_account, monkeypatch
    ):
        users = service.users.return_value
        users.threads.return_value.list.return_value = _request({"threads": [{"id": "th-1"}]})
        await memory_store.add_account(gmail_account)

        initial = await provider.perform_initial_sync()
        await memory_store.apply_sync("acct-g", initial, cursor=initial.new_cursor, synced_at=utcnow())

        monkeypatch.setitem(THREADS, "th-1", {"id": "th-1", "messages": [THREADS["th-1"]["messages"][0]]})
        users.history.return_value.list.return_value = _request({
            "history": [{"messagesDeleted": [{"message": {"id": "g2", "threadId": "th-1"}}]}],
            "historyId": "800",
        })

        result = await provider.perform_incremental_sync("777")
        await memory_store.apply_sync("acct-g", result, cursor=result.new_cursor, synced_at=utcnow())

        assert result.deleted_message_ids == ["g2"]
        assert await memory_store.get_email_by_external_id("acct-g", "g2") is None
        remaining = await memory_store.get_email_by_external_id("acct-g", "g1")
        thread = await memory_store.get_thread(remaining.thread_id)
        assert thread.message_count == 1
        assert thread.unread_count == 0
        assert thread.is_starred is False

    @pytest.mark.asyncio
    async def test_expired_history_falls_back_to_initial_sync(self, provider, service):
        users = service.users.return_value
        users.history.return_value.list.return_value = _request(error=_http_error(404))
        users.threads.return_value.list.return_value = _request({"threads": [{"id": "th-1"}]})

        result = await provider.perform_incremental_sync("1")

        assert result.full_sync is True
        assert result.new_cursor == "777"
        assert len(result.threads) == 1


class TestMutations:

    @pytest.mark.asyncio
    async def test_mark_as_read_removes_unread_label(self, provider, service):
        messages = service.users.return_value.messages.return_value
        messages.modify.return_value = _request({})

        await provider.mark_as_read(["g1"], True)

        messages.modify.assert_called_once_with(
            userId="me", id="g1", body={"addLabelIds": [], "removeLabelIds": ["UNREAD"]}
        )

    @pytest.mark.asyncio
    async def test_partial_failure_attempts_every_id(self, provider, service):
        messages = service.users.return_value.messages.return_value

        def modify(userId, id, body):
            if id == "bad":
                return _request(error=_http_error(500))
            return _request({})

        messages.modify.side_effect = modify

        with pytest.raises(BatchMutationError) as exc_info:
            await provider.archive_messages(["g1", "bad", "g2"])

        assert list(exc_info.value.failures) == ["bad"]
        assert exc_info.value.attempted == 3
        assert messages.modify.call_count == 3

    @pytest.mark.asyncio
    async def test_delete_uses_trash_unless_permanent(self, provider, service):
        messages = service.users.return_value.messages.return_value
        messages.trash.return_value = _request({})
        messages.delete.return_value = _request({})

        await provider.delete_messages(["g1"])
        await provider.delete_messages(["g2"], permanent=True)

        messages.trash.assert_called_once_with(userId="me", id="g1")
        messages.delete.assert_called_once_with(userId="me", id="g2")


class TestSend:

    @pytest.mark.asyncio
    async def test_send_in_thread(self, provider, service):
        messages = service.users.return_value.messages.return_value
        messages.send.return_value = _request({"id": "sent-1"})

        sent_id = await provider.send_message(SendEmailParams(
            to=["dana@example.com"], subject="Re: Launch plan", body="Works for me",
            thread_external_id="th-1",
        ))

        assert sent_id == "sent-1"
        body = messages.send.call_args.kwargs["body"]
        assert body["threadId"] == "th-1"
        raw = base64.urlsafe_b64decode(body["raw"]).decode()
        assert "To: dana@example.com" in raw

    @pytest.mark.asyncio
    async def test_send_failure(self, provider, service):
        messages = service.users.return_value.messages.return_value
        messages.send.return_value = _request(error=_http_error(500))

        with pytest.raises(SendError):
            await provider.send_message(SendEmailParams(to=["x@example.com"], subject="s", body="b"))

    @pytest.mark.asyncio
    async def test_send_rejected_credentials(self, provider, service):
        messages = service.users.return_value.messages.return_value
        messages.send.return_value = _request(error=_http_error(401))

        with pytest.raises(SendError) as exc_info:
            await provider.send_message(SendEmailParams(to=["x@example.com"], subject="s", body="b"))

        assert exc_info.value.reason == "auth"
