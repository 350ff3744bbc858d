"""
Mail Providers Package

Adapters that speak each mailbox provider's protocol and hand normalized
threads and messages to the sync orchestrator.

Supported Providers:
- Microsoft 365 / Outlook.com (OAuth 2.0 via Microsoft Graph)
- Gmail (OAuth 2.0 via Gmail API)
- IMAP/SMTP (username and password)
"""

from mailhub.providers.registry import (
    create_provider,
    get_provider_class,
    list_registered_providers,
    provider_class_for,
    register_provider,
)

__all__ = [
    "create_provider",
    "get_provider_class",
    "list_registered_providers",
    "provider_class_for",
    "register_provider",
]
