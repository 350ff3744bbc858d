"""MongoDB-backed MailStore (motor)."""

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from mailhub.core.credential_vault import CredentialVault, get_vault
from mailhub.core.database import DatabaseManager
from mailhub.providers.email.base import Account, EmailRecord, NotFoundError, ThreadRecord
from mailhub.store.base import THREAD_STATUS_FIELDS, MailStore, ThreadQuery, updated_account

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


class MongoMailStore(MailStore):
    """
    MailStore on three collections: accounts, threads, emails.

    Multi-document writes run in a client session transaction, which needs
    a replica set (a single-node one is enough). Account credential bundles
    are sealed with the credential vault before they are written.
    """

    def __init__(self, db: DatabaseManager, vault: Optional[CredentialVault] = None):
        self.db = db
        self.vault = vault or get_vault()

    @asynccontextmanager
    async def _transaction(self):
        async with await self.db.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # ==================== Serialization ====================

    def _account_to_doc(self, account: Account) -> Dict[str, Any]:
        return self.vault.seal_account(account.to_dict())

    def _account_from_doc(self, doc: Dict[str, Any]) -> Account:
        return Account.from_dict(self.vault.unseal_account(doc))

    # ==================== Accounts ====================

    async def add_account(self, account: Account) -> Account:
        account.validate()
        try:
            await self.db.accounts_collection.insert_one(self._account_to_doc(account))
        except DuplicateKeyError:
            raise ValueError(f"Account {account.id} already exists")
        logger.info(f"Added {account.provider.value} account {account.email}")
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        doc = await self.db.accounts_collection.find_one({"id": account_id}, NO_ID)
        return self._account_from_doc(doc) if doc else None

    async def list_accounts(self, active_only: bool = False) -> List[Account]:
        query = {"is_active": True} if active_only else {}
        cursor = self.db.accounts_collection.find(query, NO_ID)
        return [self._account_from_doc(doc) async for doc in cursor]

    async def delete_account(self, account_id: str) -> None:
        async with self._transaction() as session:
            result = await self.db.accounts_collection.delete_one({"id": account_id}, session=session)
            if result.deleted_count == 0:
                raise NotFoundError(f"Account {account_id} not found")
            await self.db.threads_collection.delete_many({"account_id": account_id}, session=session)
            await self.db.emails_collection.delete_many({"account_id": account_id}, session=session)

    # ==================== Reads ====================

    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        return await self._get_thread_tx(None, thread_id)

    async def get_thread_emails(self, thread_id: str) -> List[EmailRecord]:
        cursor = self.db.emails_collection.find({"thread_id": thread_id}, NO_ID).sort("received_at", 1)
        return [EmailRecord.from_dict(doc) async for doc in cursor]

    async def get_email_by_external_id(self, account_id: str, external_id: str) -> Optional[EmailRecord]:
        doc = await self.db.emails_collection.find_one(
            {"account_id": account_id, "external_id": external_id}, NO_ID
        )
        return EmailRecord.from_dict(doc) if doc else None

    async def find_email(self, email_id: str) -> Optional[EmailRecord]:
        return await self._get_email_tx(None, email_id)

    async def query_threads(self, query: ThreadQuery) -> List[ThreadRecord]:
        filters: Dict[str, Any] = {}
        if query.account_id:
            filters["account_id"] = query.account_id
        if query.status:
            filters[THREAD_STATUS_FIELDS[query.status]] = True
        if query.since or query.until:
            date_range: Dict[str, Any] = {}
            if query.since:
                date_range["$gte"] = query.since
            if query.until:
                date_range["$lte"] = query.until
            filters["last_message_at"] = date_range
        if query.text:
            pattern = {"$regex": re.escape(query.text), "$options": "i"}
            filters["$or"] = [{"subject": pattern}, {"snippet": pattern}]

        cursor = (
            self.db.threads_collection.find(filters, NO_ID)
            .sort("last_message_at", DESCENDING)
            .skip(query.offset)
            .limit(query.limit)
        )
        return [ThreadRecord.from_dict(doc) async for doc in cursor]

    # ==================== Primitives ====================

    async def _get_thread_tx(self, session, thread_id: str) -> Optional[ThreadRecord]:
        doc = await self.db.threads_collection.find_one({"id": thread_id}, NO_ID, session=session)
        return ThreadRecord.from_dict(doc) if doc else None

    async def _get_thread_by_external_id(self, session, account_id: str, external_id: str):
        doc = await self.db.threads_collection.find_one(
            {"account_id": account_id, "external_id": external_id}, NO_ID, session=session
        )
        return ThreadRecord.from_dict(doc) if doc else None

    async def _get_emails_for_thread(self, session, thread_id: str) -> List[EmailRecord]:
        cursor = self.db.emails_collection.find({"thread_id": thread_id}, NO_ID, session=session)
        return [EmailRecord.from_dict(doc) async for doc in cursor]

    async def _get_emails_by_external_ids(self, session, account_id: str, external_ids: List[str]):
        if not external_ids:
            return []
        cursor = self.db.emails_collection.find(
            {"account_id": account_id, "external_id": {"$in": list(external_ids)}},
            NO_ID,
            session=session,
        )
        return [EmailRecord.from_dict(doc) async for doc in cursor]

    async def _get_email_tx(self, session, email_id: str) -> Optional[EmailRecord]:
        doc = await self.db.emails_collection.find_one({"id": email_id}, NO_ID, session=session)
        return EmailRecord.from_dict(doc) if doc else None

    async def _write_thread(self, session, thread: ThreadRecord, emails: List[EmailRecord]) -> None:
        await self.db.threads_collection.replace_one(
            {"id": thread.id}, thread.to_dict(), upsert=True, session=session
        )
        for record in emails:
            await self.db.emails_collection.replace_one(
                {"id": record.id}, record.to_dict(), upsert=True, session=session
            )

    async def _remove_emails(self, session, email_ids: List[str]) -> None:
        if email_ids:
            await self.db.emails_collection.delete_many({"id": {"$in": email_ids}}, session=session)

    async def _remove_thread(self, session, thread_id: str) -> None:
        await self.db.threads_collection.delete_one({"id": thread_id}, session=session)
        await self.db.emails_collection.delete_many({"thread_id": thread_id}, session=session)

    async def _write_account_fields(self, session, account_id: str, fields: Dict[str, Any]) -> Account:
        doc = await self.db.accounts_collection.find_one({"id": account_id}, NO_ID, session=session)
        if doc is None:
            raise NotFoundError(f"Account {account_id} not found")
        updated = updated_account(self._account_from_doc(doc), fields)
        await self.db.accounts_collection.replace_one(
            {"id": account_id}, self._account_to_doc(updated), session=session
        )
        return updated
