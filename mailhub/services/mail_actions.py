"""
Mail Actions Service

Forwards user mutations and sends to the provider adapter that owns the
account. Read and starred flags are updated locally first so the UI sees
the change at once; the next sync replaces them with provider state.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import List

from mailhub.providers.email.base import (
    Account,
    BaseEmailProvider,
    FolderInfo,
    MailProviderError,
    NotFoundError,
    SendEmailParams,
)
from mailhub.providers.registry import create_provider
from mailhub.store.base import MailStore

logger = logging.getLogger(__name__)


class MailActions:
    """
    Service for per-account mail operations.

    Every call resolves the account, connects a fresh adapter, forwards the
    operation and disconnects again whatever the outcome.
    """

    def __init__(self, store: MailStore, provider_factory=create_provider):
        self.store = store
        self.provider_factory = provider_factory

    async def _get_account(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    async def _persist_tokens(self, account, credentials) -> None:
        await self.store.update_account(account.id, oauth=credentials)

    @asynccontextmanager
    async def _provider(self, account_id: str):
        account = await self._get_account(account_id)
        provider: BaseEmailProvider = self.provider_factory(
            account, on_token_refresh=self._persist_tokens
        )
        try:
            await provider.connect()
            yield provider
        finally:
            try:
                await provider.disconnect()
            except MailProviderError as e:
                logger.warning(f"Disconnect failed for account {account_id}: {e}")

    async def _set_local_flags(self, account_id: str, external_ids: List[str], **flags: bool) -> None:
        for external_id in external_ids:
            record = await self.store.get_email_by_external_id(account_id, external_id)
            if record is None:
                logger.debug(f"No local copy of {external_id}, skipping optimistic update")
                continue
            await self.store.set_email_flags(record.id, **flags)

    async def mark_as_read(self, account_id: str, external_ids: List[str], is_read: bool = True) -> None:
        await self._get_account(account_id)
        await self._set_local_flags(account_id, external_ids, is_read=is_read)
        async with self._provider(account_id) as provider:
            await provider.mark_as_read(external_ids, is_read)

    async def mark_as_starred(self, account_id: str, external_ids: List[str], is_starred: bool = True) -> None:
        await self._get_account(account_id)
        await self._set_local_flags(account_id, external_ids, is_starred=is_starred)
        async with self._provider(account_id) as provider:
            await provider.mark_as_starred(external_ids, is_starred)

    async def move_to_folder(self, account_id: str, external_ids: List[str], folder_id: str) -> None:
        async with self._provider(account_id) as provider:
            await provider.move_to_folder(external_ids, folder_id)

    async def delete_messages(self, account_id: str, external_ids: List[str], permanent: bool = False) -> None:
        async with self._provider(account_id) as provider:
            await provider.delete_messages(external_ids, permanent=permanent)

    async def archive_messages(self, account_id: str, external_ids: List[str]) -> None:
        async with self._provider(account_id) as provider:
            await provider.archive_messages(external_ids)

    async def _with_reply_headers(self, account_id: str, params: SendEmailParams) -> SendEmailParams:
        """Fill in the replied-to Message-ID and thread from the stored copy."""
        if not params.reply_to_message_id or params.reply_to_header_id:
            return params
        record = await self.store.get_email_by_external_id(account_id, params.reply_to_message_id)
        if record is None:
            logger.debug(f"No local copy of {params.reply_to_message_id}, reply headers not set")
            return params

        thread_external_id = params.thread_external_id
        if thread_external_id is None:
            thread = await self.store.get_thread(record.thread_id)
            thread_external_id = thread.external_id if thread else None
        return replace(
            params,
            reply_to_header_id=record.message_id,
            thread_external_id=thread_external_id,
        )

    async def send_message(self, account_id: str, params: SendEmailParams) -> str:
        """Send a message; returns the provider's message id."""
        params = await self._with_reply_headers(account_id, params)
        async with self._provider(account_id) as provider:
            message_id = await provider.send_message(params)
        logger.info(f"Sent message {message_id} from account {account_id}")
        return message_id

    async def get_folders(self, account_id: str) -> List[FolderInfo]:
        async with self._provider(account_id) as provider:
            return await provider.get_folders()
