"""Shared fixtures for the shopify_server test suite."""

from __future__ import annotations

from typing import Any

import pytest

from shopify_server.config import ShopifyAppConfig
from shopify_server.sessions import SessionLedger
from tests.helpers import APP_NAME, SHARED_SECRET, WEBHOOK_BASE, FakeIdentityProvider


@pytest.fixture()
def app_config() -> ShopifyAppConfig:
    return ShopifyAppConfig(
        app_name=APP_NAME,
        api_key="api-key-123",
        shared_secret=SHARED_SECRET,
        scopes=("read_products", "write_orders"),
        redirect_uri="https://app.example.com/auth/tagger/callback",
        webhook_address=WEBHOOK_BASE,
    )


@pytest.fixture()
def store() -> dict[str, Any]:
    return {}


@pytest.fixture()
def ledger(store) -> SessionLedger:
    return SessionLedger(store)


@pytest.fixture()
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()
