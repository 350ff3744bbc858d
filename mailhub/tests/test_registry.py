"""Tests for the provider registry and factory."""

from unittest.mock import AsyncMock

import pytest

from mailhub.providers.email.base import ProviderKind
from mailhub.providers.email.gmail_provider import GmailProvider
from mailhub.providers.email.graph_provider import GraphProvider
from mailhub.providers.email.imap_provider import ImapProvider
from mailhub.providers.registry import (
    create_provider,
    list_registered_providers,
    provider_class_for,
)


def test_every_kind_registered():
    assert set(list_registered_providers()) == set(ProviderKind)


@pytest.mark.parametrize("kind,cls", [
    (ProviderKind.GRAPH_WORK, GraphProvider),
    (ProviderKind.GRAPH_PERSONAL, GraphProvider),
    (ProviderKind.GMAIL, GmailProvider),
    (ProviderKind.IMAP, ImapProvider),
])
def test_provider_class_for(kind, cls):
    assert provider_class_for(kind) is cls


def test_create_provider_binds_account(gmail_account):
    callback = AsyncMock()

    provider = create_provider(gmail_account, on_token_refresh=callback)

    assert isinstance(provider, GmailProvider)
    assert provider.account is gmail_account
    assert provider.is_connected is False


def test_imap_provider_for_imap_account(imap_account):
    assert isinstance(create_provider(imap_account), ImapProvider)
