"""
Local store gateway.

Defines the MailStore interface used by the sync worker and API, plus the
reconciliation logic shared by every backend. Backends implement a small
set of primitives that run inside a transaction unit; thread aggregates are
always rebuilt from the stored message set, never patched field by field.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields as dataclass_fields, replace
from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional

from mailhub.providers.email.base import (
    LABEL_STARRED,
    LABEL_UNREAD,
    Account,
    EmailRecord,
    NotFoundError,
    SyncResult,
    SyncStatus,
    ThreadRecord,
)
from mailhub.providers.email.grouping import build_thread, merge_emails

logger = logging.getLogger(__name__)

DEFAULT_THREAD_LIMIT = 50

# ThreadQuery.status -> thread flag it selects on
THREAD_STATUS_FIELDS = {
    "inbox": "in_inbox",
    "sent": "is_sent",
    "draft": "is_draft",
    "starred": "is_starred",
    "archived": "is_archived",
    "trash": "is_trashed",
    "spam": "is_spam",
}


@dataclass
class ThreadQuery:
    """Thread listing filter; results are ordered by last_message_at desc."""
    account_id: Optional[str] = None
    status: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    text: Optional[str] = None
    limit: int = DEFAULT_THREAD_LIMIT
    offset: int = 0

    def __post_init__(self):
        if self.status is not None and self.status not in THREAD_STATUS_FIELDS:
            raise ValueError(f"Unknown thread status filter: {self.status}")

    def matches(self, thread: ThreadRecord) -> bool:
        """In-process predicate used by backends without a query engine."""
        if self.account_id and thread.account_id != self.account_id:
            return False
        if self.status and not getattr(thread, THREAD_STATUS_FIELDS[self.status]):
            return False
        if self.since and thread.last_message_at < self.since:
            return False
        if self.until and thread.last_message_at > self.until:
            return False
        if self.text:
            needle = self.text.lower()
            if needle not in (thread.subject or "").lower() and needle not in (thread.snippet or "").lower():
                return False
        return True


@dataclass
class ReconcileStats:
    """What one apply_sync() changed."""
    threads_upserted: int = 0
    threads_deleted: int = 0
    emails_deleted: int = 0


def apply_flags(record: EmailRecord, **flags: bool) -> EmailRecord:
    """Set read/starred flags on a message, keeping its labels consistent."""
    labels = list(record.labels)
    if "is_read" in flags:
        record.is_read = flags["is_read"]
        if record.is_read and LABEL_UNREAD in labels:
            labels.remove(LABEL_UNREAD)
        elif not record.is_read and LABEL_UNREAD not in labels:
            labels.append(LABEL_UNREAD)
    if "is_starred" in flags:
        record.is_starred = flags["is_starred"]
        if record.is_starred and LABEL_STARRED not in labels:
            labels.append(LABEL_STARRED)
        elif not record.is_starred and LABEL_STARRED in labels:
            labels.remove(LABEL_STARRED)
    unknown = set(flags) - {"is_read", "is_starred"}
    if unknown:
        raise ValueError(f"Unsupported message flags: {sorted(unknown)}")
    record.labels = labels
    return record


class MailStore(ABC):
    """
    Abstract local store.

    Every write that touches more than one record runs inside
    ``_transaction()``; readers never observe a half-applied sync.
    """

    # ==================== Accounts ====================

    @abstractmethod
    async def add_account(self, account: Account) -> Account:
        pass

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def list_accounts(self, active_only: bool = False) -> List[Account]:
        pass

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        """Remove an account together with its threads and messages."""
        pass

    async def update_account(self, account_id: str, **fields: Any) -> Account:
        async with self._transaction() as tx:
            return await self._write_account_fields(tx, account_id, fields)

    # ==================== Reads ====================

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        pass

    @abstractmethod
    async def get_thread_emails(self, thread_id: str) -> List[EmailRecord]:
        """Messages of a thread, oldest first."""
        pass

    @abstractmethod
    async def get_email_by_external_id(self, account_id: str, external_id: str) -> Optional[EmailRecord]:
        pass

    @abstractmethod
    async def find_email(self, email_id: str) -> Optional[EmailRecord]:
        pass

    @abstractmethod
    async def query_threads(self, query: ThreadQuery) -> List[ThreadRecord]:
        pass

    # ==================== Backend primitives ====================

    @abstractmethod
    def _transaction(self) -> AsyncContextManager[Any]:
        """Unit of work; commits on normal exit, discards on exception."""
        pass

    @abstractmethod
    async def _get_thread_tx(self, tx, thread_id: str) -> Optional[ThreadRecord]:
        pass

    @abstractmethod
    async def _get_thread_by_external_id(self, tx, account_id: str, external_id: str) -> Optional[ThreadRecord]:
        pass

    @abstractmethod
    async def _get_emails_for_thread(self, tx, thread_id: str) -> List[EmailRecord]:
        pass

    @abstractmethod
    async def _get_emails_by_external_ids(self, tx, account_id: str, external_ids: List[str]) -> List[EmailRecord]:
        pass

    @abstractmethod
    async def _get_email_tx(self, tx, email_id: str) -> Optional[EmailRecord]:
        pass

    @abstractmethod
    async def _write_thread(self, tx, thread: ThreadRecord, emails: List[EmailRecord]) -> None:
        """Upsert a thread and the given messages (by local id)."""
        pass

    @abstractmethod
    async def _remove_emails(self, tx, email_ids: List[str]) -> None:
        pass

    @abstractmethod
    async def _remove_thread(self, tx, thread_id: str) -> None:
        """Remove a thread and all of its messages."""
        pass

    @abstractmethod
    async def _write_account_fields(self, tx, account_id: str, fields: Dict[str, Any]) -> Account:
        """Apply field updates to an account; NotFoundError when absent."""
        pass

    # ==================== Shared reconciliation ====================

    async def _reaggregate(self, tx, thread_id: str) -> Optional[ThreadRecord]:
        """Rebuild a thread from its stored messages; drop it when none remain."""
        thread = await self._get_thread_tx(tx, thread_id)
        if thread is None:
            return None
        emails = await self._get_emails_for_thread(tx, thread_id)
        if not emails:
            await self._remove_thread(tx, thread_id)
            return None
        rebuilt = build_thread(thread.account_id, thread.external_id, emails, thread_id=thread.id)
        await self._write_thread(tx, rebuilt, emails)
        return rebuilt

    async def _upsert(self, tx, thread: ThreadRecord, emails: List[EmailRecord]) -> ThreadRecord:
        existing = await self._get_thread_by_external_id(tx, thread.account_id, thread.external_id)
        thread_id = existing.id if existing else thread.id
        stored = await self._get_emails_for_thread(tx, existing.id) if existing else []

        # Messages already stored under another thread keep their local id and move here
        stored_ids = {e.external_id for e in stored}
        elsewhere = [
            e for e in await self._get_emails_by_external_ids(
                tx, thread.account_id, [e.external_id for e in emails]
            )
            if e.external_id not in stored_ids
        ]
        merged = merge_emails(stored + elsewhere, emails)

        rebuilt = build_thread(thread.account_id, thread.external_id, merged, thread_id=thread_id)
        await self._write_thread(tx, rebuilt, merged)

        for old_thread_id in {e.thread_id for e in elsewhere if e.thread_id != thread_id}:
            await self._reaggregate(tx, old_thread_id)
        return rebuilt

    async def _delete_emails(self, tx, account_id: str, external_ids: List[str]) -> int:
        if not external_ids:
            return 0
        found = await self._get_emails_by_external_ids(tx, account_id, external_ids)
        if not found:
            return 0
        await self._remove_emails(tx, [e.id for e in found])
        for thread_id in {e.thread_id for e in found}:
            await self._reaggregate(tx, thread_id)
        return len(found)

    async def upsert_thread(self, thread: ThreadRecord, emails: List[EmailRecord]) -> ThreadRecord:
        """
        Insert or update a thread keyed on (account_id, external_id).

        The existing local thread id is kept. The aggregate is recomputed
        from every stored message of the thread plus the incoming ones
        (incoming wins per external id), so repeating a call is a no-op.
        """
        async with self._transaction() as tx:
            rebuilt = await self._upsert(tx, thread, emails)
        return copy.deepcopy(rebuilt)

    async def delete_thread(self, thread_id: str) -> None:
        async with self._transaction() as tx:
            await self._remove_thread(tx, thread_id)

    async def delete_thread_by_external_id(self, account_id: str, external_id: str) -> bool:
        async with self._transaction() as tx:
            thread = await self._get_thread_by_external_id(tx, account_id, external_id)
            if thread is None:
                return False
            await self._remove_thread(tx, thread.id)
            return True

    async def delete_emails_by_external_id(self, account_id: str, external_ids: List[str]) -> int:
        async with self._transaction() as tx:
            return await self._delete_emails(tx, account_id, external_ids)

    async def apply_sync(
        self,
        account_id: str,
        result: SyncResult,
        *,
        cursor: str,
        synced_at: datetime,
    ) -> ReconcileStats:
        """
        Reconcile one sync result atomically.

        Upserts every thread, removes deleted threads and messages, then
        records the new cursor and SYNCED status. Either all of it is
        visible afterwards or none of it is.
        """
        stats = ReconcileStats()
        async with self._transaction() as tx:
            for bundle in result.threads:
                if bundle.thread.account_id != account_id:
                    raise ValueError(
                        f"Thread {bundle.thread.external_id} belongs to another account"
                    )
                await self._upsert(tx, bundle.thread, bundle.emails)
                stats.threads_upserted += 1

            for external_id in result.deleted_thread_ids:
                thread = await self._get_thread_by_external_id(tx, account_id, external_id)
                if thread is not None:
                    await self._remove_thread(tx, thread.id)
                    stats.threads_deleted += 1

            stats.emails_deleted = await self._delete_emails(tx, account_id, result.deleted_message_ids)

            await self._write_account_fields(tx, account_id, {
                "sync_cursor": cursor,
                "sync_status": SyncStatus.SYNCED,
                "last_sync_at": synced_at,
                "last_error": None,
            })

        logger.debug(
            f"Applied sync for {account_id}: {stats.threads_upserted} upserted, "
            f"{stats.threads_deleted} threads and {stats.emails_deleted} messages deleted"
        )
        return stats

    async def set_email_flags(self, email_id: str, **flags: bool) -> EmailRecord:
        """Locally set is_read/is_starred on a message and re-aggregate its thread."""
        async with self._transaction() as tx:
            record = await self._get_email_tx(tx, email_id)
            if record is None:
                raise NotFoundError(f"Email {email_id} not found")
            apply_flags(record, **flags)
            emails = [
                record if e.id == record.id else e
                for e in await self._get_emails_for_thread(tx, record.thread_id)
            ]
            thread = await self._get_thread_tx(tx, record.thread_id)
            if thread is not None:
                rebuilt = build_thread(thread.account_id, thread.external_id, emails, thread_id=thread.id)
                await self._write_thread(tx, rebuilt, emails)
        return copy.deepcopy(record)


def updated_account(account: Account, fields: Dict[str, Any]) -> Account:
    """Copy of ``account`` with ``fields`` applied and validated."""
    allowed = {f.name for f in dataclass_fields(Account)} - {"id"}
    rejected = set(fields) - allowed
    if rejected:
        raise ValueError(f"Cannot update account fields: {sorted(rejected)}")
    return replace(account, **fields).validate()
