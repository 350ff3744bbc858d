"""
Microsoft Graph provider (Microsoft 365 work accounts and Outlook.com).

Uses httpx against the Graph REST API and msal for OAuth 2.0. The sync
cursor is the opaque delta (or next-page) link Graph returns for the
inbox message delta query; it is replayed verbatim.
"""

import base64
import email.utils
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx
import msal

from mailhub.core.config import settings
from mailhub.providers.email.base import (
    LABEL_DRAFT,
    LABEL_INBOX,
    LABEL_SENT,
    LABEL_SPAM,
    LABEL_STARRED,
    LABEL_TRASH,
    LABEL_UNREAD,
    AuthError,
    CursorInvalidError,
    EmailAddress,
    EmailRecord,
    FolderInfo,
    FolderType,
    MailProviderError,
    NotFoundError,
    OAuthCredentials,
    OAuthEmailProvider,
    OAuthGrant,
    ProviderConnectionError,
    ProviderKind,
    SendEmailParams,
    SendError,
    SyncResult,
    ThreadBundle,
    generate_id,
    utcnow,
)
from mailhub.providers.email.grouping import build_thread, group_by_conversation
from mailhub.providers.email.normalizer import parse_iso_datetime
from mailhub.providers.registry import register_provider

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
AUTHORITY_BASE = "https://login.microsoftonline.com"

# openid/profile/offline_access are added by msal itself
GRAPH_SCOPES = ["Mail.ReadWrite", "Mail.Send", "User.Read"]

MESSAGE_FIELDS = ",".join([
    "id", "conversationId", "parentFolderId", "subject", "from", "toRecipients",
    "ccRecipients", "bccRecipients", "replyTo", "receivedDateTime", "sentDateTime",
    "body", "bodyPreview", "isRead", "isDraft", "flag", "hasAttachments",
    "internetMessageId",
])

# Well-known folder name -> (folder type, label carried by its messages)
WELL_KNOWN_FOLDERS = {
    "inbox": (FolderType.INBOX, LABEL_INBOX),
    "sentitems": (FolderType.SENT, LABEL_SENT),
    "drafts": (FolderType.DRAFTS, LABEL_DRAFT),
    "deleteditems": (FolderType.TRASH, LABEL_TRASH),
    "junkemail": (FolderType.SPAM, LABEL_SPAM),
    "archive": (FolderType.ARCHIVE, None),
}

CURSOR_INVALID_CODES = {"syncStateNotFound", "resyncRequired", "syncStateInvalid"}


def _recipients(items: Optional[Iterable[Dict[str, Any]]]) -> List[EmailAddress]:
    result = []
    for item in items or []:
        address = (item.get("emailAddress") or {}).get("address")
        if address:
            result.append(EmailAddress(address=address, name=item["emailAddress"].get("name") or None))
    return result


def _to_recipients(addresses: Iterable[str]) -> List[Dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


@register_provider(ProviderKind.GRAPH_WORK, ProviderKind.GRAPH_PERSONAL)
class GraphProvider(OAuthEmailProvider):
    """
    Microsoft Graph mail provider.

    Conversations are native (``conversationId``). Graph delta reports
    removals per message, so ``@removed`` entries are surfaced as
    ``deleted_message_ids``.
    """

    def __init__(self, *args, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self._folder_labels: Optional[Dict[str, Optional[str]]] = None
        self._folder_types: Dict[str, FolderType] = {}

    # ==================== Session ====================

    def _get_msal_app(self):
        authority = f"{AUTHORITY_BASE}/{settings.microsoft_tenant_id}"
        if settings.microsoft_client_secret:
            return msal.ConfidentialClientApplication(
                settings.microsoft_client_id,
                authority=authority,
                client_credential=settings.microsoft_client_secret,
            )
        return msal.PublicClientApplication(settings.microsoft_client_id, authority=authority)

    def _make_client(self, access_token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=GRAPH_BASE_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def connect(self) -> None:
        """Open a Graph session, refreshing the access token when expired."""
        stored = self._oauth_credentials()

        if self._token_expired(stored):
            if not stored.refresh_token:
                raise AuthError("Graph access token expired and no refresh token is stored")
            stored = await self._refresh(stored)

        self._client = self._make_client(stored.access_token)
        self._folder_labels = None
        self._connected = True
        logger.info(f"Connected to Microsoft Graph as {self.account.email}")

    async def _refresh(self, stored: OAuthCredentials) -> OAuthCredentials:
        app = self._get_msal_app()
        result = await self._run_blocking(
            app.acquire_token_by_refresh_token,
            stored.refresh_token,
            scopes=GRAPH_SCOPES,
        )
        if not result or "access_token" not in result:
            error = (result or {}).get("error_description") or (result or {}).get("error")
            raise AuthError(f"Graph token refresh failed: {error}")

        refreshed = OAuthCredentials(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token") or stored.refresh_token,
            token_expires_at=utcnow() + timedelta(seconds=int(result.get("expires_in", 3600))),
        )
        logger.info(f"Refreshed Graph token for {self.account.email}")
        await self._store_refreshed_tokens(refreshed)
        return refreshed

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self._connected = False
        if client is not None:
            try:
                await client.aclose()
            except httpx.HTTPError as e:
                logger.debug(f"Error closing Graph client: {e}")

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """Make an authenticated Graph request and map failures to provider errors."""
        self._require_connected()
        try:
            response = await self._call(self._client.request(method, url, **kwargs))
        except httpx.HTTPError as e:
            raise ProviderConnectionError(f"Graph request failed: {e}")

        if response.status_code >= 400:
            error = {}
            if response.headers.get("content-type", "").startswith("application/json"):
                error = response.json().get("error", {}) or {}
            code = error.get("code", "")
            message = error.get("message", response.text)

            if response.status_code == 401:
                raise AuthError(f"Graph rejected credentials: {message}")
            if response.status_code == 410 or code in CURSOR_INVALID_CODES:
                raise CursorInvalidError(f"Graph delta token invalid: {code or message}")
            if response.status_code == 404:
                raise NotFoundError(f"Graph resource not found: {message}")
            raise ProviderConnectionError(f"Graph API error {response.status_code}: {message}")

        if response.content and response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return {}

    # ==================== OAuth ====================

    def get_auth_url(self, state: Optional[str] = None) -> str:
        return self._get_msal_app().get_authorization_request_url(
            GRAPH_SCOPES,
            state=state,
            redirect_uri=settings.microsoft_redirect_uri,
            prompt="consent",
        )

    async def handle_callback(self, code: str) -> OAuthGrant:
        """Exchange an authorization code for tokens and read the signed-in user."""
        app = self._get_msal_app()
        result = await self._run_blocking(
            app.acquire_token_by_authorization_code,
            code,
            scopes=GRAPH_SCOPES,
            redirect_uri=settings.microsoft_redirect_uri,
        )
        if not result or "access_token" not in result:
            error = (result or {}).get("error_description") or (result or {}).get("error")
            raise AuthError(f"Microsoft authorization code exchange failed: {error}")

        self._client = self._make_client(result["access_token"])
        self._connected = True
        try:
            user = await self._request("GET", "/me")
        finally:
            await self.disconnect()

        return OAuthGrant(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=int(result.get("expires_in", 3600))),
            email=user.get("mail") or user.get("userPrincipalName", ""),
            display_name=user.get("displayName"),
        )

    # ==================== Folder labels ====================

    async def _load_folder_labels(self) -> Dict[str, Optional[str]]:
        """Resolve well-known folder ids once per session."""
        if self._folder_labels is None:
            labels: Dict[str, Optional[str]] = {}
            for name, (folder_type, label) in WELL_KNOWN_FOLDERS.items():
                try:
                    folder = await self._request(
                        "GET", f"/me/mailFolders/{name}", params={"$select": "id"}
                    )
                except NotFoundError:
                    continue
                labels[folder["id"]] = label
                self._folder_types[folder["id"]] = folder_type
            self._folder_labels = labels
        return self._folder_labels

    def _labels_for(self, message: Dict[str, Any]) -> List[str]:
        labels = []
        folder_label = (self._folder_labels or {}).get(message.get("parentFolderId"))
        if folder_label:
            labels.append(folder_label)
        if message.get("isDraft") and LABEL_DRAFT not in labels:
            labels.append(LABEL_DRAFT)
        if (message.get("flag") or {}).get("flagStatus") == "flagged":
            labels.append(LABEL_STARRED)
        if not message.get("isRead", False):
            labels.append(LABEL_UNREAD)
        return labels

    # ==================== Sync ====================

    async def perform_initial_sync(self) -> SyncResult:
        """Fetch the first delta page of the inbox and keep its link as cursor."""
        self._require_connected()
        await self._load_folder_labels()

        response = await self._request(
            "GET",
            "/me/mailFolders/inbox/messages/delta",
            params={"$select": MESSAGE_FIELDS},
            headers={"Prefer": f"odata.maxpagesize={self.initial_sync_limit}"},
        )

        messages = [m for m in response.get("value", []) if "@removed" not in m]
        bundles = self._bundle(messages)

        next_link = response.get("@odata.nextLink")
        logger.info(f"Graph initial sync fetched {len(bundles)} conversations for {self.account.email}")
        return SyncResult(
            threads=bundles,
            new_cursor=response.get("@odata.deltaLink") or next_link or "",
            has_more=bool(next_link),
            full_sync=True,
        )

    async def perform_incremental_sync(self, cursor: str) -> SyncResult:
        """Replay the stored delta link; an expired link falls back to initial sync."""
        self._require_connected()
        try:
            return await self._sync_delta(cursor)
        except CursorInvalidError:
            logger.warning(f"Graph delta link expired for {self.account.email}, running initial sync")
            return await self.perform_initial_sync()

    async def _sync_delta(self, cursor: str) -> SyncResult:
        await self._load_folder_labels()

        changed: List[Dict[str, Any]] = []
        removed: List[str] = []
        url: Optional[str] = cursor
        new_cursor = cursor

        while url:
            response = await self._request("GET", url)
            for message in response.get("value", []):
                if "@removed" in message:
                    removed.append(message["id"])
                else:
                    changed.append(message)

            if response.get("@odata.nextLink"):
                url = response["@odata.nextLink"]
                new_cursor = url
            else:
                new_cursor = response.get("@odata.deltaLink") or new_cursor
                url = None

        conversations = group_by_conversation(changed, lambda m: m.get("conversationId") or m["id"])
        bundles: List[ThreadBundle] = []
        for conversation_id, delta_messages in conversations.items():
            try:
                full = await self._fetch_conversation(conversation_id)
            except NotFoundError:
                full = []
            bundles.extend(self._bundle(full or delta_messages))

        # A message that moved but is still part of a refetched conversation stays
        present = {e.external_id for b in bundles for e in b.emails}
        deleted = [m for m in removed if m not in present]

        logger.info(
            f"Graph incremental sync for {self.account.email}: "
            f"{len(bundles)} changed conversations, {len(deleted)} removed messages"
        )
        return SyncResult(
            threads=bundles,
            new_cursor=new_cursor,
            has_more=False,
            deleted_message_ids=deleted,
        )

    async def _fetch_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Fetch every message of a conversation across folders."""
        escaped = conversation_id.replace("'", "''")
        messages: List[Dict[str, Any]] = []
        url: Optional[str] = "/me/messages"
        params: Optional[Dict[str, Any]] = {
            "$filter": f"conversationId eq '{escaped}'",
            "$select": MESSAGE_FIELDS,
            "$top": 50,
        }
        while url:
            response = await self._request("GET", url, params=params)
            messages.extend(response.get("value", []))
            url = response.get("@odata.nextLink")
            params = None
        return messages

    def _bundle(self, messages: List[Dict[str, Any]]) -> List[ThreadBundle]:
        bundles = []
        groups = group_by_conversation(messages, lambda m: m.get("conversationId") or m["id"])
        for conversation_id, items in groups.items():
            thread_id = generate_id()
            emails = [self._parse_message(m, thread_id) for m in items]
            thread = build_thread(self.account_id, conversation_id, emails, thread_id=thread_id)
            bundles.append(ThreadBundle(thread=thread, emails=emails))
        return bundles

    def _parse_message(self, message: Dict[str, Any], thread_id: str) -> EmailRecord:
        """Parse a Graph message resource into an EmailRecord."""
        sender = (message.get("from") or {}).get("emailAddress") or {}
        body = message.get("body") or {}
        content_type = (body.get("contentType") or "").lower()
        received_at = parse_iso_datetime(message.get("receivedDateTime")) or utcnow()
        labels = self._labels_for(message)

        return EmailRecord(
            id=generate_id(),
            external_id=message["id"],
            thread_id=thread_id,
            account_id=self.account_id,
            from_address=sender.get("address", ""),
            from_name=sender.get("name") or None,
            to_addresses=_recipients(message.get("toRecipients")),
            cc_addresses=_recipients(message.get("ccRecipients")),
            bcc_addresses=_recipients(message.get("bccRecipients")),
            reply_to_addresses=_recipients(message.get("replyTo")),
            subject=message.get("subject") or "(No Subject)",
            body_text=body.get("content") if content_type == "text" else None,
            body_html=body.get("content") if content_type == "html" else None,
            snippet=message.get("bodyPreview") or None,
            message_id=message.get("internetMessageId"),
            is_read=bool(message.get("isRead", False)),
            is_starred=LABEL_STARRED in labels,
            is_draft=bool(message.get("isDraft", False)),
            is_deleted=LABEL_TRASH in labels,
            has_attachments=bool(message.get("hasAttachments", False)),
            labels=labels,
            sent_at=parse_iso_datetime(message.get("sentDateTime")) or received_at,
            received_at=received_at,
        )

    # ==================== Folders ====================

    async def get_folders(self) -> List[FolderInfo]:
        self._require_connected()
        await self._load_folder_labels()

        folders = []
        url: Optional[str] = "/me/mailFolders"
        params: Optional[Dict[str, Any]] = {
            "$select": "id,displayName,totalItemCount,unreadItemCount,parentFolderId",
            "$top": 100,
        }
        while url:
            response = await self._request("GET", url, params=params)
            for folder in response.get("value", []):
                normalized = "".join(folder.get("displayName", "").lower().split())
                folder_type = self._folder_types.get(folder["id"])
                if folder_type is None:
                    folder_type = WELL_KNOWN_FOLDERS.get(normalized, (FolderType.CUSTOM, None))[0]
                folders.append(FolderInfo(
                    id=folder["id"],
                    name=normalized,
                    display_name=folder.get("displayName", ""),
                    type=folder_type,
                    parent_id=folder.get("parentFolderId"),
                    total_count=folder.get("totalItemCount", 0),
                    unread_count=folder.get("unreadItemCount", 0),
                ))
            url = response.get("@odata.nextLink")
            params = None
        return folders

    # ==================== Send ====================

    def _build_message(self, params: SendEmailParams) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "subject": params.subject,
            "body": {"contentType": "HTML" if params.is_html else "Text", "content": params.body},
            "toRecipients": _to_recipients(params.to),
        }
        if params.cc:
            message["ccRecipients"] = _to_recipients(params.cc)
        if params.bcc:
            message["bccRecipients"] = _to_recipients(params.bcc)
        if params.attachments:
            message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": a.filename,
                    "contentType": a.content_type,
                    "contentBytes": base64.b64encode(a.content).decode(),
                    "isInline": a.is_inline,
                    **({"contentId": a.content_id} if a.content_id else {}),
                }
                for a in params.attachments
            ]
        return message

    async def _send_reply(self, params: SendEmailParams) -> str:
        """Reply through a createReply draft so Graph assigns the Message-ID."""
        message = self._build_message(params)
        # reply rejects message.body alongside comment
        message.pop("body")
        draft = await self._request(
            "POST",
            f"/me/messages/{params.reply_to_message_id}/createReply",
            json={"message": message, "comment": params.body},
        )
        await self._request("POST", f"/me/messages/{draft['id']}/send")
        return draft.get("internetMessageId") or draft["id"]

    async def send_message(self, params: SendEmailParams) -> str:
        """Send a new message or a reply; returns the Internet Message-ID."""
        self._require_connected()
        try:
            if params.reply_to_message_id:
                return await self._send_reply(params)

            message = self._build_message(params)
            domain = self.account.email.rpartition("@")[2] or None
            message["internetMessageId"] = email.utils.make_msgid(domain=domain)
            await self._request(
                "POST", "/me/sendMail", json={"message": message, "saveToSentItems": True}
            )
        except AuthError as e:
            raise SendError(f"Graph send failed: {e}", reason="auth")
        except MailProviderError as e:
            raise SendError(f"Graph send failed: {e}", reason=str(e))

        return message["internetMessageId"]

    # ==================== Mutations ====================

    async def mark_as_read(self, external_ids: List[str], is_read: bool) -> None:
        await self._apply_per_id(
            "mark_as_read",
            external_ids,
            lambda i: self._request("PATCH", f"/me/messages/{i}", json={"isRead": is_read}),
        )

    async def mark_as_starred(self, external_ids: List[str], is_starred: bool) -> None:
        flag = {"flagStatus": "flagged" if is_starred else "notFlagged"}
        await self._apply_per_id(
            "mark_as_starred",
            external_ids,
            lambda i: self._request("PATCH", f"/me/messages/{i}", json={"flag": flag}),
        )

    async def _move(self, external_id: str, destination: str) -> None:
        await self._request(
            "POST", f"/me/messages/{external_id}/move", json={"destinationId": destination}
        )

    async def move_to_folder(self, external_ids: List[str], folder_id: str) -> None:
        await self._apply_per_id(
            "move_to_folder", external_ids, lambda i: self._move(i, folder_id)
        )

    async def delete_messages(self, external_ids: List[str], permanent: bool = False) -> None:
        if permanent:
            await self._apply_per_id(
                "delete_messages",
                external_ids,
                lambda i: self._request("DELETE", f"/me/messages/{i}"),
            )
        else:
            await self._apply_per_id(
                "delete_messages", external_ids, lambda i: self._move(i, "deleteditems")
            )

    async def archive_messages(self, external_ids: List[str]) -> None:
        await self._apply_per_id(
            "archive_messages", external_ids, lambda i: self._move(i, "archive")
        )
