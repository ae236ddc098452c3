"""Shopify server configuration.

Settings are read once from the environment (``SHOPIFY_SERVER_*``) or a
``.env`` file, then frozen into a :class:`ShopifyAppConfig` that is passed
explicitly to the handshake, bridge, routes and reconciler.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from shopify_server.topics import DEFAULT_CAPABILITY_GATED, DEFAULT_TOPICS, WebhookCatalog


class ShopifyAppConfig(BaseModel):
    """Immutable per-app configuration."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    app_name: str
    api_key: str
    shared_secret: str
    scopes: tuple[str, ...] = ("read_products", "read_orders")
    redirect_uri: str = ""
    webhook_address: str = ""
    api_version: str = "2025-01"
    token_namespace: str = "shopifyAccessToken"
    profile_namespace: str = "shopProfile"
    catalog: WebhookCatalog = Field(default_factory=WebhookCatalog)
    reconcile_concurrency: int = 4
    tenant_concurrency: int = 8
    http_timeout: float = 30.0

    @property
    def auth_base_path(self) -> str:
        return f"/auth/{self.app_name}"


class FirebaseWebConfig(BaseModel):
    """Public Firebase web-app config embedded in the sign-in document."""

    model_config = ConfigDict(frozen=True)

    api_key: str = ""
    project_id: str = ""
    database_url: str = ""

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url.rstrip("/")
        return f"https://{self.project_id}.firebaseio.com"


class Settings(BaseSettings):
    """Environment-driven settings for the Shopify server."""

    app_name: str = "shopify-app"
    api_key: str = ""
    shared_secret: str = ""
    scopes: list[str] = ["read_products", "read_orders"]
    redirect_uri: str = ""
    webhook_address: str = "http://localhost:8080"
    api_version: str = "2025-01"
    topics: list[str] = []
    capability_gated_topics: list[str] = sorted(DEFAULT_CAPABILITY_GATED)

    token_namespace: str = "shopifyAccessToken"
    profile_namespace: str = "shopProfile"

    # Firebase (identity provider)
    firebase_api_key: str = ""
    firebase_project_id: str = ""
    firebase_database_url: str = ""
    firebase_database_secret: str = ""
    firebase_service_account_file: str = ""

    # Session cookie signing
    session_secret: str = "CHANGE_ME_IN_PRODUCTION_64_CHAR_SECRET"

    reconcile_concurrency: int = 4
    tenant_concurrency: int = 8
    http_timeout: float = 30.0

    model_config = {"env_prefix": "SHOPIFY_SERVER_", "env_file": ".env", "extra": "ignore"}

    def app_config(self) -> ShopifyAppConfig:
        """Freeze the settings into the app config value."""
        catalog = WebhookCatalog(
            topics=tuple(self.topics) if self.topics else DEFAULT_TOPICS,
            capability_gated=frozenset(self.capability_gated_topics),
        )
        return ShopifyAppConfig(
            app_name=self.app_name,
            api_key=self.api_key,
            shared_secret=self.shared_secret,
            scopes=tuple(self.scopes),
            redirect_uri=self.redirect_uri,
            webhook_address=self.webhook_address,
            api_version=self.api_version,
            token_namespace=self.token_namespace,
            profile_namespace=self.profile_namespace,
            catalog=catalog,
            reconcile_concurrency=self.reconcile_concurrency,
            tenant_concurrency=self.tenant_concurrency,
            http_timeout=self.http_timeout,
        )

    def firebase_web_config(self) -> FirebaseWebConfig:
        return FirebaseWebConfig(
            api_key=self.firebase_api_key,
            project_id=self.firebase_project_id,
            database_url=self.firebase_database_url,
        )
