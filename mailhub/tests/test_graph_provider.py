"""
Tests for the Microsoft Graph adapter.

Requests are answered by an httpx.MockTransport that emulates the few
Graph endpoints the adapter calls.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from mailhub.providers.email.base import (
    LABEL_INBOX,
    LABEL_STARRED,
    LABEL_UNREAD,
    Account,
    AuthError,
    BatchMutationError,
    FolderType,
    OAuthCredentials,
    ProviderKind,
    SendEmailParams,
    SendError,
)
from mailhub.providers.email.graph_provider import GraphProvider

DELTA_PATH = "/v1.0/me/mailFolders/inbox/messages/delta"
DELTA_LINK = f"https://graph.microsoft.com{DELTA_PATH}?$deltatoken=first"
NEXT_DELTA_LINK = f"https://graph.microsoft.com{DELTA_PATH}?$deltatoken=second"

FOLDER_IDS = {
    "inbox": "F-INBOX",
    "sentitems": "F-SENT",
    "drafts": "F-DRAFTS",
    "deleteditems": "F-TRASH",
    "junkemail": "F-JUNK",
}


def _message(message_id, conversation_id, minutes, folder="F-INBOX", is_read=False, flagged=False):
    when = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return {
        "id": message_id,
        "conversationId": conversation_id,
        "parentFolderId": folder,
        "subject": "Design review",
        "from": {"emailAddress": {"address": "frank@contoso.com", "name": "Frank"}},
        "toRecipients": [{"emailAddress": {"address": "erin@contoso.com", "name": "Erin"}}],
        "receivedDateTime": when.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "sentDateTime": when.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "body": {"contentType": "html", "content": "<p>Agenda</p>"},
        "bodyPreview": "Agenda",
        "isRead": is_read,
        "isDraft": False,
        "flag": {"flagStatus": "flagged" if flagged else "notFlagged"},
        "hasAttachments": False,
        "internetMessageId": f"<{message_id}@contoso.com>",
    }


class FakeGraph:
    """Minimal in-process Graph mail endpoint."""

    def __init__(self):
        self.requests = []
        self.expired_tokens = set()
        self.unauthorized = False
        self.initial_page = [
            _message("m1", "C1", 0, is_read=True),
            _message("m2", "C1", 5, flagged=True),
            _message("m3", "C2", 10),
        ]
        self.delta_changes = []
        self.conversations = {}
        self.failing_ids = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if self.unauthorized:
            return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken", "message": "expired"}})

        if path.startswith("/v1.0/me/mailFolders/") and request.method == "GET" and path.count("/") == 4:
            name = path.rsplit("/", 1)[1]
            if name not in FOLDER_IDS:
                return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": name}})
            return httpx.Response(200, json={"id": FOLDER_IDS[name]})

        if path == DELTA_PATH:
            token = params.get("$deltatoken")
            if token is None:
                return httpx.Response(200, json={"value": self.initial_page, "@odata.deltaLink": DELTA_LINK})
            if token in self.expired_tokens:
                return httpx.Response(410, json={"error": {"code": "syncStateNotFound", "message": "gone"}})
            return httpx.Response(200, json={"value": self.delta_changes, "@odata.deltaLink": NEXT_DELTA_LINK})

        if path == "/v1.0/me/messages" and request.method == "GET":
            conversation_id = params["$filter"].split("'")[1]
            return httpx.Response(200, json={"value": self.conversations.get(conversation_id, [])})

        if path == "/v1.0/me/mailFolders" and request.method == "GET":
            return httpx.Response(200, json={"value": [
                {"id": "F-INBOX", "displayName": "Inbox", "totalItemCount": 3, "unreadItemCount": 2},
                {"id": "F-PROJ", "displayName": "Projects", "totalItemCount": 1, "unreadItemCount": 0},
            ]})

        if path.startswith("/v1.0/me/messages/"):
            message_id = path.split("/")[4]
            if message_id in self.failing_ids:
                return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "missing"}})
            if path.endswith("/createReply"):
                return httpx.Response(201, json={
                    "id": f"draft-{message_id}",
                    "internetMessageId": f"<draft-{message_id}@contoso.com>",
                })
            if path.endswith("/send"):
                return httpx.Response(202)
            return httpx.Response(200, json={"id": message_id})

        if path == "/v1.0/me/sendMail":
            return httpx.Response(202)

        return httpx.Response(500, json={"error": {"code": "unexpected", "message": path}})


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def graph_account():
    return Account(
        id="acct-m",
        provider=ProviderKind.GRAPH_WORK,
        email="erin@contoso.com",
        oauth=OAuthCredentials(
            access_token="token-1",
            refresh_token="refresh-1",
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        ),
    )


@pytest.fixture
async def provider(graph, graph_account):
    adapter = GraphProvider(account=graph_account, transport=httpx.MockTransport(graph))
    await adapter.connect()
    yield adapter
    await adapter.disconnect()


class TestInitialSync:

    @pytest.mark.asyncio
    async def test_groups_by_conversation(self, provider, graph):
        result = await provider.perform_initial_sync()

        assert result.full_sync is True
        assert result.new_cursor == DELTA_LINK
        assert result.has_more is False
        assert [b.thread.external_id for b in result.threads] == ["C1", "C2"]

        c1 = result.threads[0]
        assert c1.thread.message_count == 2
        assert c1.thread.unread_count == 1
        assert c1.thread.is_starred is True
        assert c1.thread.in_inbox is True

        m1, m2 = c1.emails
        assert m1.labels == [LABEL_INBOX]
        assert m2.labels == [LABEL_INBOX, LABEL_STARRED, LABEL_UNREAD]
        assert m1.body_html == "<p>Agenda</p>"
        assert m1.body_text is None
        assert m1.to_addresses[0].name == "Erin"

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self, provider, graph):
        await provider.perform_initial_sync()
        assert graph.requests[0].headers["Authorization"] == "Bearer token-1"


class TestIncrementalSync:

    @pytest.mark.asyncio
    async def test_changes_refetch_whole_conversation(self, provider, graph):
        graph.delta_changes = [
            _message("m2", "C1", 5, is_read=True),
            {"id": "m1", "@removed": {"reason": "changed"}},
            {"id": "m9", "@removed": {"reason": "deleted"}},
        ]
        # m1 left the inbox but is still part of the conversation
        graph.conversations["C1"] = [
            _message("m1", "C1", 0, folder="F-ARCHIVE", is_read=True),
            _message("m2", "C1", 5, is_read=True),
        ]

        result = await provider.perform_incremental_sync(DELTA_LINK)

        assert result.full_sync is False
        assert result.new_cursor == NEXT_DELTA_LINK
        assert result.deleted_message_ids == ["m9"]
        bundle = result.threads[0]
        assert [e.external_id for e in bundle.emails] == ["m1", "m2"]
        assert bundle.thread.unread_count == 0
        assert bundle.emails[0].labels == []

    @pytest.mark.asyncio
    async def test_expired_delta_link_falls_back(self, provider, graph):
        graph.expired_tokens.add("first")

        result = await provider.perform_incremental_sync(DELTA_LINK)

        assert result.full_sync is True
        assert result.new_cursor == DELTA_LINK
        assert len(result.threads) == 2

    @pytest.mark.asyncio
    async def test_unauthorized(self, provider, graph):
        graph.unauthorized = True
        with pytest.raises(AuthError):
            await provider.perform_incremental_sync(DELTA_LINK)


class TestMutationsAndSend:

    @pytest.mark.asyncio
    async def test_star_patches_flag(self, provider, graph):
        await provider.mark_as_starred(["m1"], True)

        request = graph.requests[-1]
        assert request.method == "PATCH"
        assert request.url.path == "/v1.0/me/messages/m1"
        assert json.loads(request.content) == {"flag": {"flagStatus": "flagged"}}

    @pytest.mark.asyncio
    async def test_archive_partial_failure(self, provider, graph):
        graph.failing_ids.add("m2")

        with pytest.raises(BatchMutationError) as exc_info:
            await provider.archive_messages(["m1", "m2"])

        assert list(exc_info.value.failures) == ["m2"]
        moves = [r for r in graph.requests if r.url.path.endswith("/move")]
        assert len(moves) == 2
        assert json.loads(moves[0].content) == {"destinationId": "archive"}

    @pytest.mark.asyncio
    async def test_send_mail_returns_message_id(self, provider, graph):
        message_id = await provider.send_message(SendEmailParams(
            to=["frank@contoso.com"], subject="Notes", body="Attached"
        ))

        request = graph.requests[-1]
        assert request.url.path == "/v1.0/me/sendMail"
        payload = json.loads(request.content)
        assert payload["message"]["internetMessageId"] == message_id
        assert payload["message"]["toRecipients"] == [{"emailAddress": {"address": "frank@contoso.com"}}]
        assert message_id.endswith("@contoso.com>")

    @pytest.mark.asyncio
    async def test_reply_sends_created_reply(self, provider, graph):
        message_id = await provider.send_message(SendEmailParams(
            to=["frank@contoso.com"], subject="Re: Design review", body="Sounds good",
            reply_to_message_id="m2",
        ))

        create, send = graph.requests[-2:]
        assert create.url.path == "/v1.0/me/messages/m2/createReply"
        payload = json.loads(create.content)
        assert payload["comment"] == "Sounds good"
        assert "body" not in payload["message"]
        assert payload["message"]["toRecipients"] == [{"emailAddress": {"address": "frank@contoso.com"}}]
        assert send.url.path == "/v1.0/me/messages/draft-m2/send"
        assert message_id == "<draft-m2@contoso.com>"

    @pytest.mark.asyncio
    async def test_send_unauthorized_is_send_error(self, provider, graph):
        graph.unauthorized = True

        with pytest.raises(SendError) as exc_info:
            await provider.send_message(SendEmailParams(to=["frank@contoso.com"], subject="s", body="b"))

        assert exc_info.value.reason == "auth"

    @pytest.mark.asyncio
    async def test_folders(self, provider, graph):
        folders = await provider.get_folders()

        by_name = {f.display_name: f for f in folders}
        assert by_name["Inbox"].type == FolderType.INBOX
        assert by_name["Projects"].type == FolderType.CUSTOM
        assert by_name["Inbox"].unread_count == 2
