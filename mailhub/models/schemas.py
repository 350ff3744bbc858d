"""Pydantic models for API requests and responses."""

import base64
import binascii
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from mailhub.providers.email.base import (
    Account,
    AttachmentInput,
    EmailRecord,
    FolderInfo,
    FolderType,
    ProviderKind,
    SendEmailParams,
    ServerCredentials,
    SyncStatus,
    ThreadRecord,
)


# ============== Account Models ==============

class ServerCredentialsModel(BaseModel):
    """IMAP or SMTP server login."""
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    username: str = ""
    password: str = ""

    def to_credentials(self) -> ServerCredentials:
        return ServerCredentials(
            host=self.host, port=self.port, username=self.username, password=self.password
        )


class AccountCreateRequest(BaseModel):
    """Register a server-credential (IMAP) account. OAuth accounts are created by the callback."""
    email: str = Field(..., min_length=3, description="Mailbox address")
    display_name: Optional[str] = None
    imap: ServerCredentialsModel
    smtp: Optional[ServerCredentialsModel] = None


class AccountResponse(BaseModel):
    """Account without its credential bundle."""
    id: str
    provider: ProviderKind
    email: str
    display_name: Optional[str] = None
    sync_status: SyncStatus
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_active: bool = True
    can_send: bool = True

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            provider=account.provider,
            email=account.email,
            display_name=account.display_name,
            sync_status=account.sync_status,
            last_sync_at=account.last_sync_at,
            last_error=account.last_error,
            is_active=account.is_active,
            can_send=account.provider.uses_oauth or account.smtp is not None,
        )


# ============== Sync Models ==============

class SyncReportResponse(BaseModel):
    """Outcome of one account's sync pass."""
    account_id: str
    status: SyncStatus
    error: Optional[str] = None
    threads_synced: int = 0
    threads_deleted: int = 0
    emails_deleted: int = 0
    used_full_sync: bool = False


class SyncAllResponse(BaseModel):
    """Per-account outcomes of a sync-all request."""
    reports: List[SyncReportResponse] = Field(default_factory=list)


# ============== Thread Models ==============

class EmailAddressModel(BaseModel):
    address: str
    name: Optional[str] = None


class ThreadResponse(BaseModel):
    """Thread aggregate as listed to the UI."""
    id: str
    external_id: str
    account_id: str
    subject: str
    snippet: str
    participants: List[str] = Field(default_factory=list)
    in_inbox: bool
    is_sent: bool
    is_draft: bool
    is_starred: bool
    is_archived: bool
    is_trashed: bool
    is_spam: bool
    unread_count: int
    message_count: int
    has_attachments: bool
    last_message_at: datetime

    @classmethod
    def from_record(cls, thread: ThreadRecord) -> "ThreadResponse":
        return cls(**thread.to_dict())


class EmailResponse(BaseModel):
    """Single message of a thread."""
    id: str
    external_id: str
    thread_id: str
    account_id: str
    from_address: str
    from_name: Optional[str] = None
    to_addresses: List[EmailAddressModel] = Field(default_factory=list)
    cc_addresses: List[EmailAddressModel] = Field(default_factory=list)
    bcc_addresses: List[EmailAddressModel] = Field(default_factory=list)
    reply_to_addresses: List[EmailAddressModel] = Field(default_factory=list)
    subject: str
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    snippet: Optional[str] = None
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    is_read: bool
    is_starred: bool
    is_draft: bool
    is_deleted: bool
    has_attachments: bool
    labels: List[str] = Field(default_factory=list)
    sent_at: datetime
    received_at: datetime

    @classmethod
    def from_record(cls, record: EmailRecord) -> "EmailResponse":
        return cls(**record.to_dict())


class ThreadDetailResponse(BaseModel):
    thread: ThreadResponse
    emails: List[EmailResponse]


class ThreadListResponse(BaseModel):
    threads: List[ThreadResponse]
    limit: int
    offset: int


# ============== Mail Action Models ==============

class MessageIdsRequest(BaseModel):
    """Provider message ids a mutation applies to."""
    external_ids: List[str] = Field(..., min_length=1)


class MarkReadRequest(MessageIdsRequest):
    is_read: bool = True


class MarkStarredRequest(MessageIdsRequest):
    is_starred: bool = True


class MoveRequest(MessageIdsRequest):
    folder_id: str = Field(..., min_length=1)


class DeleteRequest(MessageIdsRequest):
    permanent: bool = False


class AttachmentModel(BaseModel):
    filename: str
    content_base64: str = Field(..., description="Attachment bytes, base64 encoded")
    content_type: str = "application/octet-stream"
    is_inline: bool = False
    content_id: Optional[str] = None

    @field_validator("content_base64")
    @classmethod
    def check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content_base64 is not valid base64")
        return value


class SendRequest(BaseModel):
    """Outbound message."""
    to: List[str] = Field(..., min_length=1)
    subject: str = ""
    body: str = ""
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    is_html: bool = False
    attachments: List[AttachmentModel] = Field(default_factory=list)
    reply_to_message_id: Optional[str] = None
    reply_to_header_id: Optional[str] = None
    thread_external_id: Optional[str] = None

    def to_params(self) -> SendEmailParams:
        return SendEmailParams(
            to=self.to,
            subject=self.subject,
            body=self.body,
            cc=self.cc,
            bcc=self.bcc,
            is_html=self.is_html,
            attachments=[
                AttachmentInput(
                    filename=a.filename,
                    content=base64.b64decode(a.content_base64),
                    content_type=a.content_type,
                    is_inline=a.is_inline,
                    content_id=a.content_id,
                )
                for a in self.attachments
            ],
            reply_to_message_id=self.reply_to_message_id,
            reply_to_header_id=self.reply_to_header_id,
            thread_external_id=self.thread_external_id,
        )


class SendResponse(BaseModel):
    message_id: str


class FolderResponse(BaseModel):
    id: str
    name: str
    display_name: str
    type: FolderType
    parent_id: Optional[str] = None
    total_count: int = 0
    unread_count: int = 0

    @classmethod
    def from_folder(cls, folder: FolderInfo) -> "FolderResponse":
        return cls(**folder.to_dict())


# ============== OAuth Models ==============

class OAuthInitResponse(BaseModel):
    authorization_url: str
    state: str


class OAuthCallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    display_name: Optional[str] = None
