"""
Base types and classes for mail providers.

Provides the normalized account/thread/email model shared by every provider,
the error taxonomy, and the abstract capability interface each provider
adapter implements.
"""

import asyncio
import functools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mailhub.core.config import settings

logger = logging.getLogger(__name__)


# Label vocabulary shared by all providers. Gmail reports these natively;
# Graph and IMAP adapters translate folders/flags into the same markers.
LABEL_INBOX = "INBOX"
LABEL_SENT = "SENT"
LABEL_DRAFT = "DRAFT"
LABEL_STARRED = "STARRED"
LABEL_TRASH = "TRASH"
LABEL_SPAM = "SPAM"
LABEL_UNREAD = "UNREAD"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate a local record id."""
    return uuid.uuid4().hex


class ProviderKind(str, Enum):
    """Supported mailbox provider kinds."""
    GRAPH_WORK = "microsoft_365"
    GRAPH_PERSONAL = "microsoft_personal"
    GMAIL = "gmail"
    IMAP = "imap"

    @property
    def uses_oauth(self) -> bool:
        return self is not ProviderKind.IMAP


class SyncStatus(str, Enum):
    """Per-account sync status."""
    NEVER_SYNCED = "never_synced"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class FolderType(str, Enum):
    """Normalized folder classification."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    CUSTOM = "custom"


# ==================== Credentials & Account ====================

@dataclass
class OAuthCredentials:
    """OAuth 2.0 token bundle."""
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthCredentials":
        expires_at = data.get("token_expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_expires_at=expires_at,
        )


@dataclass
class ServerCredentials:
    """Host/port/user/password bundle for IMAP or SMTP."""
    host: str
    port: int
    username: str
    password: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerCredentials":
        return cls(
            host=data["host"],
            port=int(data["port"]),
            username=data["username"],
            password=data["password"],
        )


@dataclass
class Account:
    """One configured mailbox connection."""
    id: str
    provider: ProviderKind
    email: str
    display_name: Optional[str] = None

    # Exactly one bundle shape is populated: oauth for Graph/Gmail,
    # imap (+ optional smtp) for IMAP.
    oauth: Optional[OAuthCredentials] = None
    imap: Optional[ServerCredentials] = None
    smtp: Optional[ServerCredentials] = None

    sync_cursor: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.NEVER_SYNCED
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_active: bool = True

    def validate(self) -> "Account":
        """Check the credential bundle matches the provider kind."""
        if self.provider.uses_oauth:
            if self.oauth is None or self.imap is not None or self.smtp is not None:
                raise ValueError(
                    f"{self.provider.value} accounts need an OAuth bundle and no server credentials"
                )
        else:
            if self.imap is None or self.oauth is not None:
                raise ValueError("IMAP accounts need IMAP server credentials and no OAuth bundle")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "email": self.email,
            "display_name": self.display_name,
            "oauth": self.oauth.to_dict() if self.oauth else None,
            "imap": self.imap.to_dict() if self.imap else None,
            "smtp": self.smtp.to_dict() if self.smtp else None,
            "sync_cursor": self.sync_cursor,
            "sync_status": self.sync_status.value,
            "last_sync_at": self.last_sync_at,
            "last_error": self.last_error,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            id=data["id"],
            provider=ProviderKind(data["provider"]),
            email=data["email"],
            display_name=data.get("display_name"),
            oauth=OAuthCredentials.from_dict(data["oauth"]) if data.get("oauth") else None,
            imap=ServerCredentials.from_dict(data["imap"]) if data.get("imap") else None,
            smtp=ServerCredentials.from_dict(data["smtp"]) if data.get("smtp") else None,
            sync_cursor=data.get("sync_cursor"),
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.NEVER_SYNCED.value)),
            last_sync_at=data.get("last_sync_at"),
            last_error=data.get("last_error"),
            is_active=data.get("is_active", True),
        )


# ==================== Threads & Emails ====================

@dataclass(frozen=True)
class EmailAddress:
    """A mailbox address with optional display name.

    ``address`` keeps the case the provider reported; ``key`` is the
    lowercase form used for equality and participant deduplication.
    """
    address: str
    name: Optional[str] = None

    @property
    def key(self) -> str:
        return self.address.strip().lower()

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailAddress":
        return cls(address=data.get("address", ""), name=data.get("name"))


def _addresses_to_dicts(addresses: List[EmailAddress]) -> List[Dict[str, Any]]:
    return [a.to_dict() for a in addresses]


def _addresses_from_dicts(items: Optional[List[Dict[str, Any]]]) -> List[EmailAddress]:
    return [EmailAddress.from_dict(i) for i in (items or [])]


@dataclass
class EmailRecord:
    """One normalized mail item within a thread."""
    id: str
    external_id: str
    thread_id: str
    account_id: str
    from_address: str
    sent_at: datetime
    received_at: datetime
    from_name: Optional[str] = None
    to_addresses: List[EmailAddress] = field(default_factory=list)
    cc_addresses: List[EmailAddress] = field(default_factory=list)
    bcc_addresses: List[EmailAddress] = field(default_factory=list)
    reply_to_addresses: List[EmailAddress] = field(default_factory=list)
    subject: str = "(No Subject)"
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    snippet: Optional[str] = None
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None  # raw header, never split
    is_read: bool = False
    is_starred: bool = False
    is_draft: bool = False
    is_deleted: bool = False
    has_attachments: bool = False
    labels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "thread_id": self.thread_id,
            "account_id": self.account_id,
            "from_address": self.from_address,
            "from_name": self.from_name,
            "to_addresses": _addresses_to_dicts(self.to_addresses),
            "cc_addresses": _addresses_to_dicts(self.cc_addresses),
            "bcc_addresses": _addresses_to_dicts(self.bcc_addresses),
            "reply_to_addresses": _addresses_to_dicts(self.reply_to_addresses),
            "subject": self.subject,
            "body_text": self.body_text,
            "body_html": self.body_html,
            "snippet": self.snippet,
            "message_id": self.message_id,
            "in_reply_to": self.in_reply_to,
            "references": self.references,
            "is_read": self.is_read,
            "is_starred": self.is_starred,
            "is_draft": self.is_draft,
            "is_deleted": self.is_deleted,
            "has_attachments": self.has_attachments,
            "labels": list(self.labels),
            "sent_at": self.sent_at,
            "received_at": self.received_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailRecord":
        return cls(
            id=data["id"],
            external_id=data["external_id"],
            thread_id=data["thread_id"],
            account_id=data["account_id"],
            from_address=data.get("from_address", ""),
            from_name=data.get("from_name"),
            to_addresses=_addresses_from_dicts(data.get("to_addresses")),
            cc_addresses=_addresses_from_dicts(data.get("cc_addresses")),
            bcc_addresses=_addresses_from_dicts(data.get("bcc_addresses")),
            reply_to_addresses=_addresses_from_dicts(data.get("reply_to_addresses")),
            subject=data.get("subject", "(No Subject)"),
            body_text=data.get("body_text"),
            body_html=data.get("body_html"),
            snippet=data.get("snippet"),
            message_id=data.get("message_id"),
            in_reply_to=data.get("in_reply_to"),
            references=data.get("references"),
            is_read=data.get("is_read", False),
            is_starred=data.get("is_starred", False),
            is_draft=data.get("is_draft", False),
            is_deleted=data.get("is_deleted", False),
            has_attachments=data.get("has_attachments", False),
            labels=list(data.get("labels", [])),
            sent_at=_ensure_utc(data["sent_at"]),
            received_at=_ensure_utc(data["received_at"]),
        )

    def to_ai_input(self) -> Dict[str, Any]:
        """The message shape consumed by the text-analysis service."""
        return {
            "subject": self.subject,
            "body": self.body_text or self.body_html or "",
            "from": self.from_address,
            "date": self.received_at.isoformat(),
        }


@dataclass
class ThreadRecord:
    """A conversation aggregate; derived fields are recomputed, never patched."""
    id: str
    external_id: str
    account_id: str
    subject: str
    last_message_at: datetime
    snippet: str = ""
    participants: List[str] = field(default_factory=list)
    in_inbox: bool = False
    is_sent: bool = False
    is_draft: bool = False
    is_starred: bool = False
    is_archived: bool = False
    is_trashed: bool = False
    is_spam: bool = False
    unread_count: int = 0
    message_count: int = 0
    has_attachments: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "account_id": self.account_id,
            "subject": self.subject,
            "snippet": self.snippet,
            "participants": list(self.participants),
            "in_inbox": self.in_inbox,
            "is_sent": self.is_sent,
            "is_draft": self.is_draft,
            "is_starred": self.is_starred,
            "is_archived": self.is_archived,
            "is_trashed": self.is_trashed,
            "is_spam": self.is_spam,
            "unread_count": self.unread_count,
            "message_count": self.message_count,
            "has_attachments": self.has_attachments,
            "last_message_at": self.last_message_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadRecord":
        return cls(
            id=data["id"],
            external_id=data["external_id"],
            account_id=data["account_id"],
            subject=data.get("subject", ""),
            snippet=data.get("snippet", ""),
            participants=list(data.get("participants", [])),
            in_inbox=data.get("in_inbox", False),
            is_sent=data.get("is_sent", False),
            is_draft=data.get("is_draft", False),
            is_starred=data.get("is_starred", False),
            is_archived=data.get("is_archived", False),
            is_trashed=data.get("is_trashed", False),
            is_spam=data.get("is_spam", False),
            unread_count=data.get("unread_count", 0),
            message_count=data.get("message_count", 0),
            has_attachments=data.get("has_attachments", False),
            last_message_at=_ensure_utc(data["last_message_at"]),
        )


def _ensure_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ThreadBundle:
    """A thread together with the messages it was built from."""
    thread: ThreadRecord
    emails: List[EmailRecord] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of one initial or incremental provider sync."""
    threads: List[ThreadBundle] = field(default_factory=list)
    new_cursor: str = ""
    has_more: bool = False
    # Provider-side conversation ids whose whole thread is gone
    deleted_thread_ids: List[str] = field(default_factory=list)
    # Provider-side message ids removed individually (Graph @removed, IMAP expunge)
    deleted_message_ids: List[str] = field(default_factory=list)
    full_sync: bool = False

    @property
    def email_count(self) -> int:
        return sum(len(b.emails) for b in self.threads)


@dataclass
class FolderInfo:
    """Normalized folder or label."""
    id: str
    name: str
    display_name: str
    type: FolderType = FolderType.CUSTOM
    parent_id: Optional[str] = None
    total_count: int = 0
    unread_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "type": self.type.value,
            "parent_id": self.parent_id,
            "total_count": self.total_count,
            "unread_count": self.unread_count,
        }


@dataclass
class AttachmentInput:
    """Outbound attachment."""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    is_inline: bool = False
    content_id: Optional[str] = None


@dataclass
class SendEmailParams:
    """Outbound message parameters."""
    to: List[str]
    subject: str
    body: str
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    is_html: bool = False
    attachments: List[AttachmentInput] = field(default_factory=list)
    # Provider message id of the message being replied to
    reply_to_message_id: Optional[str] = None
    # RFC 5322 Message-ID of that message, used for In-Reply-To/References
    reply_to_header_id: Optional[str] = None
    thread_external_id: Optional[str] = None


@dataclass
class OAuthGrant:
    """Tokens and identity returned from an OAuth callback."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    email: str
    display_name: Optional[str] = None

    def to_credentials(self) -> OAuthCredentials:
        return OAuthCredentials(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_expires_at=self.expires_at,
        )


# ==================== Custom Exceptions ====================

class MailProviderError(Exception):
    """Base exception for mail provider operations."""
    pass


class AuthError(MailProviderError):
    """Credentials expired, invalid, missing or unrefreshable."""
    pass


class ProviderConnectionError(MailProviderError):
    """Network or protocol failure establishing or keeping a session."""
    pass


class NotConnectedError(MailProviderError):
    """Operation invoked before connect()."""
    pass


class CursorInvalidError(MailProviderError):
    """Stored cursor can no longer be resumed; recovered by a full sync."""
    pass


class SendError(MailProviderError):
    """Outbound message rejected by the provider."""
    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason or message


class NotFoundError(MailProviderError):
    """Referenced account, thread, message or folder is absent."""
    pass


class SyncInProgressError(MailProviderError):
    """A sync for this account is already running."""
    pass


class BatchMutationError(MailProviderError):
    """One or more ids in a best-effort batch mutation failed.

    Raised only after every id was attempted; ``failures`` maps each
    failed external id to its error message.
    """
    def __init__(self, operation: str, failures: Dict[str, str], attempted: int):
        super().__init__(
            f"{operation} failed for {len(failures)} of {attempted} messages"
        )
        self.operation = operation
        self.failures = failures
        self.attempted = attempted


TokenRefreshCallback = Callable[[Account, OAuthCredentials], Awaitable[None]]


# ==================== Provider Interface ====================

class BaseEmailProvider(ABC):
    """
    Abstract base class for mail provider adapters.

    Every operation except connect()/disconnect() requires a prior
    successful connect(). Mutations are best-effort per id: each id is
    attempted independently and failures are reported together at the end.
    """

    def __init__(
        self,
        account: Optional[Account] = None,
        on_token_refresh: Optional[TokenRefreshCallback] = None,
        timeout: Optional[float] = None,
        initial_sync_limit: Optional[int] = None,
    ):
        self.account = account
        self._on_token_refresh = on_token_refresh
        self._connected = False
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self.initial_sync_limit = initial_sync_limit or settings.initial_sync_limit

    @property
    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def connect(self) -> None:
        """Establish a usable session."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the session. Idempotent and never raises."""
        pass

    @abstractmethod
    async def perform_initial_sync(self) -> SyncResult:
        """Fetch a bounded window of the newest inbox conversations."""
        pass

    @abstractmethod
    async def perform_incremental_sync(self, cursor: str) -> SyncResult:
        """
        Fetch changes since ``cursor``.

        Falls back to perform_initial_sync() when the provider reports the
        cursor as no longer resumable.
        """
        pass

    @abstractmethod
    async def get_folders(self) -> List[FolderInfo]:
        pass

    @abstractmethod
    async def send_message(self, params: SendEmailParams) -> str:
        """Send a message and return the provider-assigned id."""
        pass

    @abstractmethod
    async def mark_as_read(self, external_ids: List[str], is_read: bool) -> None:
        pass

    @abstractmethod
    async def mark_as_starred(self, external_ids: List[str], is_starred: bool) -> None:
        pass

    @abstractmethod
    async def move_to_folder(self, external_ids: List[str], folder_id: str) -> None:
        pass

    @abstractmethod
    async def delete_messages(self, external_ids: List[str], permanent: bool = False) -> None:
        pass

    @abstractmethod
    async def archive_messages(self, external_ids: List[str]) -> None:
        pass

    # ==================== Shared helpers ====================

    def _require_connected(self) -> None:
        if not self._connected:
            raise NotConnectedError(f"{type(self).__name__} is not connected")

    @property
    def account_id(self) -> str:
        if self.account is None:
            raise NotFoundError("No account configured for provider")
        return self.account.id

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        """Await a provider network call under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderConnectionError(
                f"Provider call timed out after {self.timeout}s"
            )

    async def _run_blocking(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking client call in the default executor, with timeout."""
        loop = asyncio.get_running_loop()
        return await self._call(
            loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        )

    async def _apply_per_id(
        self,
        operation: str,
        external_ids: List[str],
        action: Callable[[str], Awaitable[Any]],
    ) -> None:
        """Apply ``action`` to each id independently; report failures at the end."""
        self._require_connected()

        failures: Dict[str, str] = {}
        for external_id in external_ids:
            try:
                await action(external_id)
            except MailProviderError as e:
                logger.warning(f"{operation} failed for {external_id}: {e}")
                failures[external_id] = str(e)
            except Exception as e:
                logger.warning(f"{operation} failed for {external_id}: {e}", exc_info=True)
                failures[external_id] = str(e)

        if failures:
            raise BatchMutationError(operation, failures, attempted=len(external_ids))

    async def _store_refreshed_tokens(self, credentials: OAuthCredentials) -> None:
        """Record refreshed tokens on the account and notify the owner."""
        if self.account is None:
            return
        self.account = replace(self.account, oauth=credentials)
        if self._on_token_refresh:
            await self._on_token_refresh(self.account, credentials)


class OAuthEmailProvider(BaseEmailProvider):
    """Provider authenticated with OAuth 2.0 tokens."""

    @abstractmethod
    def get_auth_url(self, state: Optional[str] = None) -> str:
        """Build the consent URL for onboarding a new account."""
        pass

    @abstractmethod
    async def handle_callback(self, code: str) -> OAuthGrant:
        """Exchange an authorization code for tokens and identity."""
        pass

    def _oauth_credentials(self) -> OAuthCredentials:
        if self.account is None or self.account.oauth is None or not self.account.oauth.access_token:
            raise AuthError("No access token available")
        return self.account.oauth

    def _token_expired(self, credentials: OAuthCredentials) -> bool:
        from mailhub.core.credential_vault import TokenManager
        return TokenManager.is_token_expired(
            credentials.token_expires_at,
            buffer_seconds=settings.token_refresh_buffer_seconds,
        )
