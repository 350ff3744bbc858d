"""
Provider Factory and Registry

Central registry for mail provider adapters. Adapters register themselves
with ``@register_provider``; the orchestrator obtains instances through
``create_provider``.
"""

import importlib
import logging
from typing import Optional, Type

from mailhub.providers.email.base import (
    Account,
    BaseEmailProvider,
    ProviderKind,
    TokenRefreshCallback,
)

logger = logging.getLogger(__name__)

# Provider registry - maps provider kinds to implementation classes
_provider_registry: dict[ProviderKind, Type[BaseEmailProvider]] = {}

_PROVIDER_MODULES = (
    "mailhub.providers.email.gmail_provider",
    "mailhub.providers.email.graph_provider",
    "mailhub.providers.email.imap_provider",
)
_loaded = False


def register_provider(*kinds: ProviderKind):
    """
    Decorator to register a provider implementation.

    Usage:
        @register_provider(ProviderKind.GMAIL)
        class GmailProvider(OAuthEmailProvider):
            ...
    """
    def decorator(cls: Type[BaseEmailProvider]):
        for kind in kinds:
            _provider_registry[kind] = cls
            logger.debug(f"Registered provider: {kind.value} -> {cls.__name__}")
        return cls
    return decorator


def _load_providers():
    """Import adapter modules so their decorators run."""
    global _loaded
    if _loaded:
        return
    for module in _PROVIDER_MODULES:
        importlib.import_module(module)
    _loaded = True


def get_provider_class(kind: ProviderKind) -> Optional[Type[BaseEmailProvider]]:
    """Get the provider class for a given kind."""
    _load_providers()
    return _provider_registry.get(kind)


def create_provider(
    account: Account,
    on_token_refresh: Optional[TokenRefreshCallback] = None,
) -> BaseEmailProvider:
    """
    Create a provider instance for an account.

    Args:
        account: The account to bind the adapter to
        on_token_refresh: Invoked with refreshed OAuth credentials

    Returns:
        Unconnected provider instance

    Raises:
        ValueError: If no adapter is registered for the account's kind
    """
    cls = get_provider_class(account.provider)
    if not cls:
        raise ValueError(f"No provider registered for type: {account.provider}")
    return cls(account, on_token_refresh=on_token_refresh)


def provider_class_for(kind: ProviderKind) -> Type[BaseEmailProvider]:
    """Provider class for OAuth onboarding, where no account exists yet."""
    cls = get_provider_class(kind)
    if not cls:
        raise ValueError(f"No provider registered for type: {kind}")
    return cls


def list_registered_providers() -> list[ProviderKind]:
    """List all registered provider kinds."""
    _load_providers()
    return list(_provider_registry.keys())
