"""
Mail Actions Router

Mutations and sends, forwarded to the owning account's provider.
"""

from typing import List

from fastapi import APIRouter, Depends

from mailhub.models.schemas import (
    DeleteRequest,
    FolderResponse,
    MarkReadRequest,
    MarkStarredRequest,
    MessageIdsRequest,
    MoveRequest,
    SendRequest,
    SendResponse,
)
from mailhub.routers.deps import get_mail_actions
from mailhub.services.mail_actions import MailActions

router = APIRouter(prefix="/mail/{account_id}", tags=["mail"])


@router.post("/read")
async def mark_as_read(account_id: str, body: MarkReadRequest, actions: MailActions = Depends(get_mail_actions)):
    await actions.mark_as_read(account_id, body.external_ids, body.is_read)
    return {"success": True}


@router.post("/star")
async def mark_as_starred(account_id: str, body: MarkStarredRequest, actions: MailActions = Depends(get_mail_actions)):
    await actions.mark_as_starred(account_id, body.external_ids, body.is_starred)
    return {"success": True}


@router.post("/move")
async def move_to_folder(account_id: str, body: MoveRequest, actions: MailActions = Depends(get_mail_actions)):
    await actions.move_to_folder(account_id, body.external_ids, body.folder_id)
    return {"success": True}


@router.post("/delete")
async def delete_messages(account_id: str, body: DeleteRequest, actions: MailActions = Depends(get_mail_actions)):
    await actions.delete_messages(account_id, body.external_ids, permanent=body.permanent)
    return {"success": True}


@router.post("/archive")
async def archive_messages(account_id: str, body: MessageIdsRequest, actions: MailActions = Depends(get_mail_actions)):
    await actions.archive_messages(account_id, body.external_ids)
    return {"success": True}


@router.post("/send", response_model=SendResponse)
async def send_message(account_id: str, body: SendRequest, actions: MailActions = Depends(get_mail_actions)):
    message_id = await actions.send_message(account_id, body.to_params())
    return SendResponse(message_id=message_id)


@router.get("/folders", response_model=List[FolderResponse])
async def get_folders(account_id: str, actions: MailActions = Depends(get_mail_actions)):
    folders = await actions.get_folders(account_id)
    return [FolderResponse.from_folder(f) for f in folders]
