"""
Mail Sync Worker

Drives one sync pass per account: connect the provider adapter, pull an
initial or incremental change set, and reconcile it into the local store
in a single unit. Also runs passes for every active account concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from mailhub.providers.email.base import (
    Account,
    BaseEmailProvider,
    CursorInvalidError,
    MailProviderError,
    NotFoundError,
    OAuthCredentials,
    SyncInProgressError,
    SyncResult,
    SyncStatus,
    utcnow,
)
from mailhub.providers.registry import create_provider
from mailhub.store.base import MailStore

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    RECONCILING = "reconciling"
    FAILED = "failed"


ProgressCallback = Callable[[str, SyncPhase], Awaitable[None]]
ProviderFactory = Callable[..., BaseEmailProvider]


@dataclass
class AccountSyncReport:
    """Outcome of one sync pass."""
    account_id: str
    status: SyncStatus
    error: Optional[str] = None
    threads_synced: int = 0
    threads_deleted: int = 0
    emails_deleted: int = 0
    used_full_sync: bool = False


class SyncWorker:
    """
    Sync orchestrator.

    Handles:
    - One pass at a time per account (a second request is rejected)
    - Initial vs incremental selection and cursor-invalidation recovery
    - Atomic reconciliation through the store
    - Persisting refreshed OAuth tokens as soon as an adapter reports them
    """

    def __init__(self, store: MailStore, provider_factory: ProviderFactory = create_provider):
        self.store = store
        self.provider_factory = provider_factory
        self._locks: Dict[str, asyncio.Lock] = {}
        self._phases: Dict[str, SyncPhase] = {}

    def is_syncing(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()

    def get_phase(self, account_id: str) -> SyncPhase:
        return self._phases.get(account_id, SyncPhase.IDLE)

    async def sync_account(
        self,
        account_id: str,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> AccountSyncReport:
        """
        Run one sync pass for an account.

        Args:
            account_id: Local account id
            progress_callback: Awaited with (account_id, phase) on every transition

        Raises:
            SyncInProgressError: A pass for this account is already running
            NotFoundError: Unknown account
            MailProviderError: Connect, fetch or reconcile failed; the stored
                cursor is unchanged and the account is marked ERROR
        """
        if self.is_syncing(account_id):
            raise SyncInProgressError(f"Sync already running for account {account_id}")

        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            try:
                return await self._run(account_id, progress_callback)
            finally:
                self._phases.pop(account_id, None)

    async def _run(self, account_id: str, progress_callback: Optional[ProgressCallback]) -> AccountSyncReport:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")

        await self.store.update_account(account_id, sync_status=SyncStatus.SYNCING)
        await self._set_phase(account_id, SyncPhase.CONNECTING, progress_callback)

        provider = self.provider_factory(account, on_token_refresh=self._persist_tokens)
        try:
            try:
                await provider.connect()
            except Exception as e:
                await self._fail(account_id, e, progress_callback)
                raise

            await self._set_phase(account_id, SyncPhase.SYNCING, progress_callback)
            try:
                result = await self._fetch(provider, account)
            except Exception as e:
                await self._fail(account_id, e, progress_callback)
                raise

            await self._set_phase(account_id, SyncPhase.RECONCILING, progress_callback)
            cursor = result.new_cursor or account.sync_cursor
            try:
                stats = await self.store.apply_sync(
                    account_id, result, cursor=cursor, synced_at=utcnow()
                )
            except Exception as e:
                await self._fail(account_id, e, progress_callback)
                raise
        finally:
            try:
                await provider.disconnect()
            except MailProviderError as e:
                logger.warning(f"Disconnect failed for account {account_id}: {e}")

        await self._set_phase(account_id, SyncPhase.IDLE, progress_callback)
        logger.info(
            f"Synced {account.email}: {len(result.threads)} threads "
            f"({'full' if result.full_sync else 'incremental'}), "
            f"{stats.threads_deleted} threads and {stats.emails_deleted} messages removed"
        )
        return AccountSyncReport(
            account_id=account_id,
            status=SyncStatus.SYNCED,
            threads_synced=stats.threads_upserted,
            threads_deleted=stats.threads_deleted,
            emails_deleted=stats.emails_deleted,
            used_full_sync=result.full_sync,
        )

    async def _fetch(self, provider: BaseEmailProvider, account: Account) -> SyncResult:
        if not account.sync_cursor:
            logger.info(f"Initial sync for {account.email}")
            return await provider.perform_initial_sync()
        try:
            return await provider.perform_incremental_sync(account.sync_cursor)
        except CursorInvalidError:
            logger.warning(f"Sync cursor for {account.email} rejected, running initial sync")
            return await provider.perform_initial_sync()

    async def _fail(
        self,
        account_id: str,
        error: Exception,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        logger.error(f"Sync failed for account {account_id}: {error}", exc_info=True)
        try:
            await self.store.update_account(
                account_id, sync_status=SyncStatus.ERROR, last_error=str(error) or type(error).__name__
            )
        except NotFoundError:
            logger.warning(f"Account {account_id} disappeared during sync")
        await self._set_phase(account_id, SyncPhase.FAILED, progress_callback)

    async def _set_phase(
        self,
        account_id: str,
        phase: SyncPhase,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        self._phases[account_id] = phase
        logger.info(f"Account {account_id}: {phase.value}")
        if progress_callback:
            await progress_callback(account_id, phase)

    async def _persist_tokens(self, account: Account, credentials: OAuthCredentials) -> None:
        await self.store.update_account(account.id, oauth=credentials)
        logger.info(f"Stored refreshed tokens for {account.email}")

    async def sync_all(self, progress_callback: Optional[ProgressCallback] = None) -> List[AccountSyncReport]:
        """Sync every active account concurrently; one failure never stops the rest."""
        accounts = await self.store.list_accounts(active_only=True)
        outcomes = await asyncio.gather(
            *(self.sync_account(a.id, progress_callback=progress_callback) for a in accounts),
            return_exceptions=True,
        )

        reports = []
        for account, outcome in zip(accounts, outcomes):
            if isinstance(outcome, SyncInProgressError):
                reports.append(AccountSyncReport(account.id, SyncStatus.SYNCING, error=str(outcome)))
            elif isinstance(outcome, Exception):
                reports.append(AccountSyncReport(account.id, SyncStatus.ERROR, error=str(outcome)))
            else:
                reports.append(outcome)
        return reports
