"""
Sync Router

Triggers sync passes for one account or for every active account.
"""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends

from mailhub.models.schemas import SyncAllResponse, SyncReportResponse
from mailhub.routers.deps import get_sync_worker
from mailhub.workers.sync_worker import SyncWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("", response_model=SyncAllResponse)
async def sync_all(worker: SyncWorker = Depends(get_sync_worker)):
    """Sync all active accounts; failures are reported per account."""
    reports = await worker.sync_all()
    return SyncAllResponse(reports=[SyncReportResponse(**asdict(r)) for r in reports])


@router.post("/{account_id}", response_model=SyncReportResponse)
async def sync_account(account_id: str, worker: SyncWorker = Depends(get_sync_worker)):
    """
    Run one sync pass for an account.

    Returns 409 while another pass for the account is running.
    """
    report = await worker.sync_account(account_id)
    return SyncReportResponse(**asdict(report))


@router.get("/{account_id}/status")
async def sync_status(account_id: str, worker: SyncWorker = Depends(get_sync_worker)):
    return {
        "account_id": account_id,
        "is_syncing": worker.is_syncing(account_id),
        "phase": worker.get_phase(account_id).value,
    }
