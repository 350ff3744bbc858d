"""
Threads Router

Read side for the UI: thread listings and thread detail.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mailhub.models.schemas import (
    EmailResponse,
    ThreadDetailResponse,
    ThreadListResponse,
    ThreadResponse,
)
from mailhub.providers.email.base import NotFoundError
from mailhub.routers.deps import get_store
from mailhub.store.base import MailStore, ThreadQuery

router = APIRouter(prefix="/threads", tags=["threads"])


@router.get("", response_model=ThreadListResponse)
async def list_threads(
    account_id: Optional[str] = None,
    status: Optional[str] = Query(None, description="inbox, sent, draft, starred, archived, trash or spam"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    q: Optional[str] = Query(None, description="Case-insensitive subject/snippet match"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: MailStore = Depends(get_store),
):
    try:
        query = ThreadQuery(
            account_id=account_id, status=status, since=since, until=until,
            text=q, limit=limit, offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    threads = await store.query_threads(query)
    return ThreadListResponse(
        threads=[ThreadResponse.from_record(t) for t in threads],
        limit=limit,
        offset=offset,
    )


@router.get("/{thread_id}", response_model=ThreadDetailResponse)
async def get_thread(thread_id: str, store: MailStore = Depends(get_store)):
    thread = await store.get_thread(thread_id)
    if thread is None:
        raise NotFoundError(f"Thread {thread_id} not found")
    emails = await store.get_thread_emails(thread_id)
    return ThreadDetailResponse(
        thread=ThreadResponse.from_record(thread),
        emails=[EmailResponse.from_record(e) for e in emails],
    )
