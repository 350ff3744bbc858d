"""
FastAPI Backend for mailhub.

API server with endpoints for:
- Account registration (IMAP and OAuth)
- Sync of one or all accounts
- Thread listing and detail
- Mail actions (read, star, move, delete, archive, send)
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailhub.core.config import settings
from mailhub.core.database import DatabaseManager
from mailhub.providers.email.base import (
    AuthError,
    BatchMutationError,
    MailProviderError,
    NotFoundError,
    ProviderConnectionError,
    SendError,
    SyncInProgressError,
)
from mailhub.routers import accounts, mail, oauth, sync, threads
from mailhub.services.mail_actions import MailActions
from mailhub.store import create_store
from mailhub.workers.sync_worker import SyncWorker

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    logger.info("Starting mailhub API...")

    db_manager = None
    if settings.store_backend == "mongo":
        db_manager = DatabaseManager()
        await db_manager.connect()
        logger.info(f"Connected to database: {settings.mongodb_database}")
    app.state.db = db_manager

    store = create_store(settings.store_backend, db_manager)
    app.state.store = store
    app.state.sync_worker = SyncWorker(store)
    app.state.mail_actions = MailActions(store)

    logger.info(f"API ready at http://0.0.0.0:{settings.api_port} ({settings.store_backend} store)")

    yield

    logger.info("Shutting down mailhub API...")
    if db_manager:
        await db_manager.disconnect()
        logger.info("Database connection closed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="mailhub API",
        description="Multi-provider mail synchronization (Gmail, Microsoft Graph, IMAP).",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    for module in (accounts, sync, threads, mail, oauth):
        app.include_router(module.router, prefix="/api/v1")

    @app.get("/health")
    async def health(request: Request):
        db = getattr(request.app.state, "db", None)
        if db is None:
            return {"status": "ok", "store": settings.store_backend}
        return {"status": "ok", "store": settings.store_backend, "database": await db.get_stats()}

    return app


# ============== Exception Handlers ==============

ERROR_STATUS = [
    (NotFoundError, 404, "not_found"),
    (SyncInProgressError, 409, "sync_in_progress"),
    (AuthError, 401, "auth_error"),
    (BatchMutationError, 502, "batch_mutation_failed"),
    (SendError, 502, "send_failed"),
    (ProviderConnectionError, 502, "provider_unavailable"),
]


def _get_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return str(uuid.uuid4())[:8]


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MailProviderError)
    async def mail_provider_exception_handler(request: Request, exc: MailProviderError):
        status_code, error = 500, "mail_provider_error"
        for exc_type, code, name in ERROR_STATUS:
            if isinstance(exc, exc_type):
                status_code, error = code, name
                break

        error_id = _get_error_id()
        logger.warning(
            f"{type(exc).__name__} [{error_id}] on {request.method} {request.url.path}: {exc}"
        )

        content = {"error": error, "message": str(exc), "error_id": error_id}
        if isinstance(exc, BatchMutationError):
            content["failures"] = exc.failures
            content["attempted"] = exc.attempted
        if isinstance(exc, SendError) and exc.reason:
            content["reason"] = exc.reason
        return JSONResponse(status_code=status_code, content=content)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailhub.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug,
    )
