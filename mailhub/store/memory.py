"""In-process MailStore with copy-on-write snapshots."""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mailhub.providers.email.base import Account, EmailRecord, NotFoundError, ThreadRecord
from mailhub.store.base import MailStore, ThreadQuery, updated_account

logger = logging.getLogger(__name__)


@dataclass
class _Snapshot:
    accounts: Dict[str, Account] = field(default_factory=dict)
    threads: Dict[str, ThreadRecord] = field(default_factory=dict)
    emails: Dict[str, EmailRecord] = field(default_factory=dict)


class MemoryMailStore(MailStore):
    """
    MailStore kept in process memory.

    Writers copy the current snapshot under a lock, apply their changes to
    the copy and swap it in on success. Readers always see one complete
    snapshot, so a failed reconciliation leaves no trace.
    """

    def __init__(self):
        self._state = _Snapshot()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _transaction(self):
        async with self._lock:
            working = copy.deepcopy(self._state)
            yield working
            self._state = working

    # ==================== Accounts ====================

    async def add_account(self, account: Account) -> Account:
        account.validate()
        async with self._transaction() as tx:
            if account.id in tx.accounts:
                raise ValueError(f"Account {account.id} already exists")
            tx.accounts[account.id] = copy.deepcopy(account)
        logger.info(f"Added {account.provider.value} account {account.email}")
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._state.accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def list_accounts(self, active_only: bool = False) -> List[Account]:
        return [
            copy.deepcopy(a) for a in self._state.accounts.values()
            if a.is_active or not active_only
        ]

    async def delete_account(self, account_id: str) -> None:
        async with self._transaction() as tx:
            if tx.accounts.pop(account_id, None) is None:
                raise NotFoundError(f"Account {account_id} not found")
            tx.threads = {k: t for k, t in tx.threads.items() if t.account_id != account_id}
            tx.emails = {k: e for k, e in tx.emails.items() if e.account_id != account_id}

    # ==================== Reads ====================

    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        thread = self._state.threads.get(thread_id)
        return copy.deepcopy(thread) if thread else None

    async def get_thread_emails(self, thread_id: str) -> List[EmailRecord]:
        state = self._state
        emails = [e for e in state.emails.values() if e.thread_id == thread_id]
        return copy.deepcopy(sorted(emails, key=lambda e: e.received_at))

    async def get_email_by_external_id(self, account_id: str, external_id: str) -> Optional[EmailRecord]:
        for record in self._state.emails.values():
            if record.account_id == account_id and record.external_id == external_id:
                return copy.deepcopy(record)
        return None

    async def find_email(self, email_id: str) -> Optional[EmailRecord]:
        record = self._state.emails.get(email_id)
        return copy.deepcopy(record) if record else None

    async def query_threads(self, query: ThreadQuery) -> List[ThreadRecord]:
        matches = [t for t in self._state.threads.values() if query.matches(t)]
        matches.sort(key=lambda t: t.last_message_at, reverse=True)
        return copy.deepcopy(matches[query.offset:query.offset + query.limit])

    # ==================== Primitives ====================

    async def _get_thread_tx(self, tx: _Snapshot, thread_id: str) -> Optional[ThreadRecord]:
        return tx.threads.get(thread_id)

    async def _get_thread_by_external_id(self, tx: _Snapshot, account_id: str, external_id: str):
        for thread in tx.threads.values():
            if thread.account_id == account_id and thread.external_id == external_id:
                return thread
        return None

    async def _get_emails_for_thread(self, tx: _Snapshot, thread_id: str) -> List[EmailRecord]:
        return [e for e in tx.emails.values() if e.thread_id == thread_id]

    async def _get_emails_by_external_ids(self, tx: _Snapshot, account_id: str, external_ids: List[str]):
        wanted = set(external_ids)
        return [
            e for e in tx.emails.values()
            if e.account_id == account_id and e.external_id in wanted
        ]

    async def _get_email_tx(self, tx: _Snapshot, email_id: str) -> Optional[EmailRecord]:
        return tx.emails.get(email_id)

    async def _write_thread(self, tx: _Snapshot, thread: ThreadRecord, emails: List[EmailRecord]) -> None:
        tx.threads[thread.id] = copy.deepcopy(thread)
        for record in emails:
            tx.emails[record.id] = copy.deepcopy(record)

    async def _remove_emails(self, tx: _Snapshot, email_ids: List[str]) -> None:
        for email_id in email_ids:
            tx.emails.pop(email_id, None)

    async def _remove_thread(self, tx: _Snapshot, thread_id: str) -> None:
        tx.threads.pop(thread_id, None)
        tx.emails = {k: e for k, e in tx.emails.items() if e.thread_id != thread_id}

    async def _write_account_fields(self, tx: _Snapshot, account_id: str, fields: Dict[str, Any]) -> Account:
        account = tx.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        updated = updated_account(account, fields)
        tx.accounts[account_id] = updated
        return copy.deepcopy(updated)
