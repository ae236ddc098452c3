"""FastAPI application factory.

Wires the immutable app config into the OAuth routes and, when a controller
is supplied, the webhook delivery routes. Sessions are signed cookies
(Starlette SessionMiddleware).
"""

from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from shopify_server.auth_routes import register_auth_routes
from shopify_server.config import Settings
from shopify_server.identity import FirebaseIdentityProvider, IdentityBridge, IdentityProvider
from shopify_server.oauth import OAuthHandshake
from shopify_server.webhooks.handlers import Controller, register_webhook_routes

logger = logging.getLogger(__name__)


def build_identity_provider(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> FirebaseIdentityProvider:
    """Firebase provider from the configured service-account file."""
    if not settings.firebase_service_account_file:
        raise ValueError("SHOPIFY_SERVER_FIREBASE_SERVICE_ACCOUNT_FILE is required")
    return FirebaseIdentityProvider.from_service_account_file(
        settings.firebase_service_account_file,
        settings.firebase_database_url,
        database_secret=settings.firebase_database_secret,
        http_client=http_client,
        timeout=settings.http_timeout,
    )


def create_app(
    settings: Settings | None = None,
    *,
    identity_provider: IdentityProvider | None = None,
    controller: Controller | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the app.

    Args:
        settings: Defaults to ``Settings()`` (environment).
        identity_provider: Defaults to the Firebase provider from settings.
        controller: ``controller[resource][action]`` handlers; no webhook
            routes are registered without one.
        http_client: Shared client for platform calls (tests inject a mock transport).
    """
    settings = settings or Settings()
    config = settings.app_config()
    provider = identity_provider or build_identity_provider(settings, http_client)

    app = FastAPI(title=f"shopify-server ({config.app_name})")
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, https_only=False)

    handshake = OAuthHandshake(config, http_client=http_client)
    bridge = IdentityBridge(provider, config)
    register_auth_routes(app, handshake, bridge, settings.firebase_web_config())

    if controller is not None:
        register_webhook_routes(app, config, controller)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "app": config.app_name}

    app.state.config = config
    app.state.handshake = handshake
    app.state.bridge = bridge
    logger.info("App created: %s", config.app_name)
    return app
