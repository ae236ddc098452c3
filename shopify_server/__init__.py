"""Shopify server — OAuth handshake, identity bridging and webhook reconciliation."""

from shopify_server.config import Settings, ShopifyAppConfig
from shopify_server.errors import (
    BridgeIncompleteError,
    ExchangeError,
    IdentityProviderError,
    InvalidShopError,
    InvalidTopicError,
    RemoteApiError,
    SecurityError,
    ShopifyServerError,
)
from shopify_server.identity import IdentityBridge
from shopify_server.oauth import OAuthHandshake
from shopify_server.reconciler import OutcomeStatus, Tenant, WebhookReconciler
from shopify_server.sessions import SessionLedger, TenantSession
from shopify_server.topics import WebhookCatalog

__version__ = "0.1.0"

__all__ = [
    "BridgeIncompleteError",
    "ExchangeError",
    "IdentityBridge",
    "IdentityProviderError",
    "InvalidShopError",
    "InvalidTopicError",
    "OAuthHandshake",
    "OutcomeStatus",
    "RemoteApiError",
    "SecurityError",
    "SessionLedger",
    "Settings",
    "ShopifyAppConfig",
    "ShopifyServerError",
    "Tenant",
    "TenantSession",
    "WebhookCatalog",
    "WebhookReconciler",
]
