"""Mail provider adapters and the normalized mail model.

Supports:
- Gmail (history-based incremental sync)
- Microsoft Graph (delta-link incremental sync)
- IMAP (UIDVALIDITY/UID incremental sync, SMTP for sending)
"""

from mailhub.providers.email.base import (
    Account,
    BaseEmailProvider,
    EmailAddress,
    EmailRecord,
    MailProviderError,
    OAuthEmailProvider,
    ProviderKind,
    SyncResult,
    SyncStatus,
    ThreadBundle,
    ThreadRecord,
)

__all__ = [
    "Account",
    "BaseEmailProvider",
    "EmailAddress",
    "EmailRecord",
    "MailProviderError",
    "OAuthEmailProvider",
    "ProviderKind",
    "SyncResult",
    "SyncStatus",
    "ThreadBundle",
    "ThreadRecord",
]
