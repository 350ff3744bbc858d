"""
OAuth Router

Handles OAuth 2.0 authorization for Gmail and Microsoft 365 / Outlook.com.
The callback exchanges the code and registers the account.
"""

import logging
import secrets
from datetime import timedelta
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from mailhub.models.schemas import AccountResponse, OAuthCallbackRequest, OAuthInitResponse
from mailhub.providers.email.base import Account, OAuthEmailProvider, ProviderKind, generate_id, utcnow
from mailhub.providers.registry import provider_class_for
from mailhub.routers.deps import get_store
from mailhub.store.base import MailStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

STATE_TTL = timedelta(minutes=10)

# State token -> {provider, created_at}
_oauth_states: Dict[str, dict] = {}


def _oauth_provider(kind: ProviderKind) -> OAuthEmailProvider:
    if not kind.uses_oauth:
        raise HTTPException(status_code=400, detail=f"OAuth not supported for provider: {kind.value}")
    return provider_class_for(kind)()


def _purge_expired_states() -> None:
    cutoff = utcnow() - STATE_TTL
    for state in [s for s, data in _oauth_states.items() if data["created_at"] < cutoff]:
        _oauth_states.pop(state, None)


@router.get("/{provider}/authorize", response_model=OAuthInitResponse)
async def initiate_oauth(provider: ProviderKind):
    """
    Start the OAuth authorization flow.

    Returns an authorization URL that the frontend should redirect to.
    """
    adapter = _oauth_provider(provider)
    _purge_expired_states()

    # CSRF protection
    state = secrets.token_urlsafe(32)
    _oauth_states[state] = {"provider": provider, "created_at": utcnow()}

    return OAuthInitResponse(authorization_url=adapter.get_auth_url(state), state=state)


@router.post("/{provider}/callback", response_model=AccountResponse, status_code=201)
async def oauth_callback(
    provider: ProviderKind,
    body: OAuthCallbackRequest,
    store: MailStore = Depends(get_store),
):
    """Exchange the authorization code and register the account."""
    adapter = _oauth_provider(provider)

    state_data = _oauth_states.pop(body.state, None)
    if state_data is None or state_data["provider"] != provider:
        logger.error(f"Invalid OAuth state for {provider.value}")
        raise HTTPException(status_code=400, detail="OAuth state invalid or expired")
    if utcnow() - state_data["created_at"] > STATE_TTL:
        raise HTTPException(status_code=400, detail="OAuth session expired")

    grant = await adapter.handle_callback(body.code)

    account = Account(
        id=generate_id(),
        provider=provider,
        email=grant.email,
        display_name=body.display_name or grant.display_name,
        oauth=grant.to_credentials(),
    )
    await store.add_account(account)
    logger.info(f"Connected {provider.value} account {account.email}")
    return AccountResponse.from_account(account)
