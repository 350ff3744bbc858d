"""
Accounts Router

Registers, lists and removes mail accounts. OAuth accounts are created by
the OAuth callback; this router registers IMAP accounts directly.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mailhub.models.schemas import AccountCreateRequest, AccountResponse
from mailhub.providers.email.base import Account, NotFoundError, ProviderKind, generate_id
from mailhub.routers.deps import get_store, get_sync_worker
from mailhub.store.base import MailStore
from mailhub.workers.sync_worker import SyncWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("", response_model=List[AccountResponse])
async def list_accounts(
    active_only: bool = Query(False),
    store: MailStore = Depends(get_store),
):
    accounts = await store.list_accounts(active_only=active_only)
    return [AccountResponse.from_account(a) for a in accounts]


@router.post("", response_model=AccountResponse, status_code=201)
async def create_account(
    body: AccountCreateRequest,
    store: MailStore = Depends(get_store),
):
    """Register an IMAP account; the first sync runs on request."""
    account = Account(
        id=generate_id(),
        provider=ProviderKind.IMAP,
        email=body.email,
        display_name=body.display_name,
        imap=body.imap.to_credentials(),
        smtp=body.smtp.to_credentials() if body.smtp else None,
    )
    try:
        await store.add_account(account)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AccountResponse.from_account(account)


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, store: MailStore = Depends(get_store)):
    account = await store.get_account(account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    return AccountResponse.from_account(account)


@router.patch("/{account_id}", response_model=AccountResponse)
async def update_account(
    account_id: str,
    is_active: Optional[bool] = None,
    display_name: Optional[str] = None,
    store: MailStore = Depends(get_store),
):
    """Pause/resume an account or rename it."""
    fields = {}
    if is_active is not None:
        fields["is_active"] = is_active
    if display_name is not None:
        fields["display_name"] = display_name
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")
    account = await store.update_account(account_id, **fields)
    return AccountResponse.from_account(account)


@router.delete("/{account_id}", status_code=204)
async def delete_account(
    account_id: str,
    store: MailStore = Depends(get_store),
    worker: SyncWorker = Depends(get_sync_worker),
):
    """Remove an account with all of its threads and messages."""
    if worker.is_syncing(account_id):
        raise HTTPException(status_code=409, detail="Account is syncing, try again later")
    await store.delete_account(account_id)
    logger.info(f"Deleted account {account_id}")
