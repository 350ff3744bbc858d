"""
Gmail provider.

Uses the Gmail API (google-api-python-client) with OAuth 2.0 credentials.
Initial sync lists the newest inbox threads; incremental sync replays the
mailbox history from the stored historyId.
"""

import base64
import logging
from datetime import timezone
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from mailhub.core.config import settings
from mailhub.providers.email.base import (
    LABEL_DRAFT,
    LABEL_INBOX,
    LABEL_STARRED,
    LABEL_TRASH,
    LABEL_UNREAD,
    AuthError,
    CursorInvalidError,
    EmailRecord,
    FolderInfo,
    FolderType,
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
from mailhub.providers.email.grouping import build_thread
from mailhub.providers.email.normalizer import (
    build_outbound_message,
    extract_gmail_bodies,
    gmail_has_attachments,
    header_map,
    parse_address,
    parse_address_list,
    parse_epoch_millis,
    parse_rfc2822_datetime,
)
from mailhub.providers.registry import register_provider

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "openid",
]

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]

SYSTEM_LABELS = {
    "INBOX": FolderType.INBOX,
    "SENT": FolderType.SENT,
    "DRAFT": FolderType.DRAFTS,
    "TRASH": FolderType.TRASH,
    "SPAM": FolderType.SPAM,
}


def _http_status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


@register_provider(ProviderKind.GMAIL)
class GmailProvider(OAuthEmailProvider):
    """
    Gmail provider using the Gmail REST API.

    Threads are native: the Gmail thread id is the conversation id.
    The sync cursor is the mailbox historyId.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._service = None
        self._credentials: Optional[Credentials] = None

    # ==================== Session ====================

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [settings.google_redirect_uri],
            }
        }

    def _build_service(self, credentials: Credentials):
        return build("gmail", "v1", credentials=credentials, cache_discovery=False)

    async def connect(self) -> None:
        """Build Gmail credentials, refreshing the access token when expired."""
        stored = self._oauth_credentials()

        credentials = Credentials(
            token=stored.access_token,
            refresh_token=stored.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        )

        if self._token_expired(stored):
            if not stored.refresh_token:
                raise AuthError("Gmail access token expired and no refresh token is stored")
            await self._refresh(credentials, stored)

        self._credentials = credentials
        self._service = self._build_service(credentials)
        self._connected = True
        logger.info(f"Connected to Gmail as {self.account.email}")

    async def _refresh(self, credentials: Credentials, stored: OAuthCredentials) -> None:
        try:
            await self._run_blocking(credentials.refresh, Request())
        except RefreshError as e:
            raise AuthError(f"Gmail token refresh failed: {e}")
        except TransportError as e:
            raise ProviderConnectionError(f"Gmail token refresh failed: {e}")

        expires_at = credentials.expiry
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        logger.info(f"Refreshed Gmail token for {self.account.email}")
        await self._store_refreshed_tokens(OAuthCredentials(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or stored.refresh_token,
            token_expires_at=expires_at,
        ))

    async def disconnect(self) -> None:
        self._service = None
        self._credentials = None
        self._connected = False

    async def _execute(self, request) -> Dict[str, Any]:
        """Execute a Gmail API request off the event loop, translating errors."""
        try:
            return await self._run_blocking(request.execute)
        except HttpError as e:
            status = _http_status(e)
            if status == 401:
                raise AuthError(f"Gmail rejected credentials: {e}")
            if status == 404:
                raise NotFoundError(f"Gmail resource not found: {e}")
            raise ProviderConnectionError(f"Gmail API error {status}: {e}")
        except (TransportError, OSError) as e:
            raise ProviderConnectionError(f"Gmail request failed: {e}")

    # ==================== OAuth ====================

    def _flow(self, state: Optional[str] = None) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=GMAIL_SCOPES,
            redirect_uri=settings.google_redirect_uri,
            state=state,
        )

    def get_auth_url(self, state: Optional[str] = None) -> str:
        url, _ = self._flow(state).authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
        )
        return url

    async def handle_callback(self, code: str) -> OAuthGrant:
        """Exchange an authorization code for tokens and fetch the user's identity."""
        flow = self._flow()
        try:
            await self._run_blocking(flow.fetch_token, code=code)
        except (OAuth2Error, ValueError) as e:
            raise AuthError(f"Google authorization code exchange failed: {e}")

        credentials = flow.credentials
        oauth2 = build("oauth2", "v2", credentials=credentials, cache_discovery=False)
        user_info = await self._execute(oauth2.userinfo().get())

        expires_at = credentials.expiry or utcnow()
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return OAuthGrant(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=expires_at,
            email=user_info["email"],
            display_name=user_info.get("name"),
        )

    # ==================== Sync ====================

    async def perform_initial_sync(self) -> SyncResult:
        """Fetch the newest inbox threads and record the mailbox historyId."""
        self._require_connected()
        users = self._service.users()

        listing = await self._execute(users.threads().list(
            userId="me",
            labelIds=[LABEL_INBOX],
            maxResults=self.initial_sync_limit,
        ))

        bundles: List[ThreadBundle] = []
        for thread_ref in listing.get("threads", []):
            try:
                bundle = await self._fetch_thread(thread_ref["id"])
            except NotFoundError:
                logger.debug(f"Gmail thread {thread_ref['id']} vanished during initial sync")
                continue
            if bundle:
                bundles.append(bundle)

        profile = await self._execute(users.getProfile(userId="me"))

        logger.info(f"Gmail initial sync fetched {len(bundles)} threads for {self.account.email}")
        return SyncResult(
            threads=bundles,
            new_cursor=str(profile.get("historyId", "")),
            has_more=bool(listing.get("nextPageToken")),
            full_sync=True,
        )

    async def perform_incremental_sync(self, cursor: str) -> SyncResult:
        """Replay history since ``cursor``; an expired historyId falls back to initial sync."""
        self._require_connected()
        try:
            return await self._sync_history(cursor)
        except CursorInvalidError:
            logger.warning(
                f"Gmail historyId {cursor} expired for {self.account.email}, running initial sync"
            )
            return await self.perform_initial_sync()

    async def _sync_history(self, cursor: str) -> SyncResult:
        history = self._service.users().history()
        affected: Dict[str, None] = {}
        deleted_messages: Dict[str, None] = {}
        new_cursor = cursor
        page_token = None

        while True:
            try:
                response = await self._execute(history.list(
                    userId="me",
                    startHistoryId=cursor,
                    historyTypes=HISTORY_TYPES,
                    pageToken=page_token,
                ))
            except NotFoundError as e:
                raise CursorInvalidError(str(e))

            for record in response.get("history", []):
                for key in ("messagesAdded", "messagesDeleted", "labelsAdded", "labelsRemoved"):
                    for change in record.get(key, []):
                        message = change.get("message", {})
                        if message.get("threadId"):
                            affected.setdefault(message["threadId"], None)
                        if key == "messagesDeleted" and message.get("id"):
                            deleted_messages.setdefault(message["id"], None)

            new_cursor = str(response.get("historyId") or new_cursor)
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        bundles: List[ThreadBundle] = []
        deleted: List[str] = []
        for thread_id in affected:
            try:
                bundle = await self._fetch_thread(thread_id)
            except NotFoundError:
                deleted.append(thread_id)
                continue
            if bundle:
                bundles.append(bundle)
            else:
                deleted.append(thread_id)

        logger.info(
            f"Gmail incremental sync for {self.account.email}: "
            f"{len(bundles)} changed, {len(deleted)} deleted threads, "
            f"{len(deleted_messages)} deleted messages"
        )
        return SyncResult(
            threads=bundles,
            new_cursor=new_cursor,
            has_more=False,
            deleted_thread_ids=deleted,
            deleted_message_ids=list(deleted_messages),
        )

    async def _fetch_thread(self, thread_id: str) -> Optional[ThreadBundle]:
        gmail_thread = await self._execute(
            self._service.users().threads().get(userId="me", id=thread_id, format="full")
        )
        messages = gmail_thread.get("messages") or []
        if not messages:
            return None

        local_thread_id = generate_id()
        emails = [self._parse_message(m, local_thread_id) for m in messages]
        thread = build_thread(
            self.account_id,
            gmail_thread.get("id", thread_id),
            emails,
            thread_id=local_thread_id,
        )
        return ThreadBundle(thread=thread, emails=emails)

    def _parse_message(self, message: Dict[str, Any], thread_id: str) -> EmailRecord:
        """Parse a Gmail API message resource into an EmailRecord."""
        payload = message.get("payload", {})
        headers = header_map(payload.get("headers", []))
        labels = list(message.get("labelIds", []))

        sender = parse_address(headers.get("from"))
        body_text, body_html = extract_gmail_bodies(payload)

        received_at = parse_epoch_millis(message.get("internalDate")) or utcnow()
        sent_at = parse_rfc2822_datetime(headers.get("date")) or received_at

        return EmailRecord(
            id=generate_id(),
            external_id=message["id"],
            thread_id=thread_id,
            account_id=self.account_id,
            from_address=sender.address if sender else "",
            from_name=sender.name if sender else None,
            to_addresses=parse_address_list(headers.get("to")),
            cc_addresses=parse_address_list(headers.get("cc")),
            bcc_addresses=parse_address_list(headers.get("bcc")),
            reply_to_addresses=parse_address_list(headers.get("reply-to")),
            subject=headers.get("subject") or "(No Subject)",
            body_text=body_text,
            body_html=body_html,
            snippet=message.get("snippet"),
            message_id=headers.get("message-id"),
            in_reply_to=headers.get("in-reply-to"),
            references=headers.get("references"),
            is_read=LABEL_UNREAD not in labels,
            is_starred=LABEL_STARRED in labels,
            is_draft=LABEL_DRAFT in labels,
            is_deleted=LABEL_TRASH in labels,
            has_attachments=gmail_has_attachments(payload),
            labels=labels,
            sent_at=sent_at,
            received_at=received_at,
        )

    # ==================== Folders ====================

    async def get_folders(self) -> List[FolderInfo]:
        self._require_connected()
        labels_api = self._service.users().labels()
        response = await self._execute(labels_api.list(userId="me"))

        folders = []
        for label in response.get("labels", []):
            if not label.get("id") or not label.get("name"):
                continue
            detail = await self._execute(labels_api.get(userId="me", id=label["id"]))
            folders.append(FolderInfo(
                id=label["id"],
                name="-".join(label["name"].lower().split()),
                display_name=label["name"],
                type=SYSTEM_LABELS.get(label["id"], FolderType.CUSTOM),
                total_count=detail.get("messagesTotal", 0),
                unread_count=detail.get("messagesUnread", 0),
            ))
        return folders

    # ==================== Send ====================

    async def send_message(self, params: SendEmailParams) -> str:
        self._require_connected()
        msg = build_outbound_message(params, self.account.email)
        body: Dict[str, Any] = {
            "raw": base64.urlsafe_b64encode(msg.as_bytes()).decode(),
        }
        if params.thread_external_id:
            body["threadId"] = params.thread_external_id

        try:
            response = await self._execute(
                self._service.users().messages().send(userId="me", body=body)
            )
        except AuthError as e:
            raise SendError(f"Gmail send failed: {e}", reason="auth")
        except (ProviderConnectionError, NotFoundError) as e:
            raise SendError(f"Gmail send failed: {e}", reason=str(e))

        return response.get("id") or generate_id()

    # ==================== Mutations ====================

    async def _modify(self, external_id: str, add: List[str], remove: List[str]) -> None:
        await self._execute(self._service.users().messages().modify(
            userId="me",
            id=external_id,
            body={"addLabelIds": add, "removeLabelIds": remove},
        ))

    async def mark_as_read(self, external_ids: List[str], is_read: bool) -> None:
        add, remove = ([], [LABEL_UNREAD]) if is_read else ([LABEL_UNREAD], [])
        await self._apply_per_id(
            "mark_as_read", external_ids, lambda i: self._modify(i, add, remove)
        )

    async def mark_as_starred(self, external_ids: List[str], is_starred: bool) -> None:
        add, remove = ([LABEL_STARRED], []) if is_starred else ([], [LABEL_STARRED])
        await self._apply_per_id(
            "mark_as_starred", external_ids, lambda i: self._modify(i, add, remove)
        )

    async def move_to_folder(self, external_ids: List[str], folder_id: str) -> None:
        remove = [] if folder_id == LABEL_INBOX else [LABEL_INBOX]
        await self._apply_per_id(
            "move_to_folder", external_ids, lambda i: self._modify(i, [folder_id], remove)
        )

    async def delete_messages(self, external_ids: List[str], permanent: bool = False) -> None:
        messages = self._service.users().messages() if self._service else None

        async def delete_one(external_id: str) -> None:
            if permanent:
                await self._execute(messages.delete(userId="me", id=external_id))
            else:
                await self._execute(messages.trash(userId="me", id=external_id))

        await self._apply_per_id("delete_messages", external_ids, delete_one)

    async def archive_messages(self, external_ids: List[str]) -> None:
        await self._apply_per_id(
            "archive_messages", external_ids, lambda i: self._modify(i, [], [LABEL_INBOX])
        )
