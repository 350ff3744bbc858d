"""Request-scoped accessors for the services created in the app lifespan."""

from fastapi import Request

from mailhub.services.mail_actions import MailActions
from mailhub.store.base import MailStore
from mailhub.workers.sync_worker import SyncWorker


def get_store(request: Request) -> MailStore:
    return request.app.state.store


def get_sync_worker(request: Request) -> SyncWorker:
    return request.app.state.sync_worker


def get_mail_actions(request: Request) -> MailActions:
    return request.app.state.mail_actions
