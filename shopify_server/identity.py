"""Identity bridge — federated token minting and access-token persistence.

The identity provider (Firebase Auth + Realtime Database) is a remote
capability behind the :class:`IdentityProvider` protocol. The bridge mints a
custom auth token for the shop's stable federated user id, then persists the
platform access token and the shop profile under that id.

Error contract:
- Mint failure -> IdentityProviderError (nothing persisted)
- Persist failure after mint -> BridgeIncompleteError carrying the token
- Nothing is retried here; callers own the retry policy
- Tokens are never logged
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx
from jose import JOSEError, jwt

from shopify_server.config import ShopifyAppConfig
from shopify_server.errors import BridgeIncompleteError, IdentityProviderError
from shopify_server.sessions import SessionLedger
from shopify_server.tenants import TenantIdentity

logger = logging.getLogger(__name__)

_CUSTOM_TOKEN_AUDIENCE = (
    "https://identitytoolkit.googleapis.com/google.identity.identitytoolkit.v1.IdentityToolkit"
)
_CUSTOM_TOKEN_TTL = 3600  # maximum the identity toolkit accepts
_ALGORITHM = "RS256"

# Service-account OAuth2 access tokens for Realtime Database REST calls
_TOKEN_URI = "https://oauth2.googleapis.com/token"
_JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
_DATABASE_SCOPES = (
    "https://www.googleapis.com/auth/firebase.database",
    "https://www.googleapis.com/auth/userinfo.email",
)
_ACCESS_TOKEN_SKEW = 60  # refresh this many seconds before expiry


@runtime_checkable
class IdentityProvider(Protocol):
    """Remote identity/session store."""

    async def create_custom_token(self, uid: str) -> str:
        """Mint a custom auth token for ``uid``."""
        ...

    async def get_value(self, path: str) -> Any:
        """Read the record at ``path`` (None if absent)."""
        ...

    async def set_value(self, path: str, value: Any) -> None:
        """Write ``value`` at ``path``."""
        ...


class FirebaseIdentityProvider:
    """Firebase custom-token minting + Realtime Database REST access.

    Database requests are authorized with a short-lived OAuth2 access token
    obtained for the service account (JWT bearer grant), cached until shortly
    before it expires. A legacy ``database_secret``, when configured, is sent
    as ``auth`` instead.
    """

    def __init__(
        self,
        *,
        client_email: str,
        private_key: str,
        database_url: str,
        private_key_id: str = "",
        database_secret: str = "",
        token_uri: str = _TOKEN_URI,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._client_email = client_email
        self._private_key = private_key
        self._private_key_id = private_key_id
        self._database_url = database_url.rstrip("/")
        self._database_secret = database_secret
        self._token_uri = token_uri
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._access_token: str | None = None
        self._access_token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_service_account_file(
        cls, path: str | Path, database_url: str, **kwargs: Any
    ) -> FirebaseIdentityProvider:
        account = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(
            client_email=account["client_email"],
            private_key=account["private_key"],
            private_key_id=account.get("private_key_id", ""),
            database_url=database_url or f"https://{account['project_id']}.firebaseio.com",
            token_uri=account.get("token_uri") or _TOKEN_URI,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _sign(self, payload: dict[str, Any]) -> str:
        headers = {"kid": self._private_key_id} if self._private_key_id else None
        return jwt.encode(payload, self._private_key, algorithm=_ALGORITHM, headers=headers)

    async def create_custom_token(self, uid: str) -> str:
        now = int(time.time())
        payload = {
            "iss": self._client_email,
            "sub": self._client_email,
            "aud": _CUSTOM_TOKEN_AUDIENCE,
            "iat": now,
            "exp": now + _CUSTOM_TOKEN_TTL,
            "uid": uid,
        }
        try:
            return self._sign(payload)
        except (JOSEError, ValueError, TypeError) as e:
            raise IdentityProviderError(f"Custom token mint failed: {type(e).__name__}") from e

    # ── Database auth ─────────────────────────────────────────────────────

    async def _service_account_token(self) -> str:
        """Cached OAuth2 access token for the service account."""
        async with self._token_lock:
            if self._access_token and time.time() < self._access_token_expiry - _ACCESS_TOKEN_SKEW:
                return self._access_token

            now = int(time.time())
            try:
                assertion = self._sign(
                    {
                        "iss": self._client_email,
                        "scope": " ".join(_DATABASE_SCOPES),
                        "aud": self._token_uri,
                        "iat": now,
                        "exp": now + 3600,
                    }
                )
            except (JOSEError, ValueError, TypeError) as e:
                raise IdentityProviderError(f"Access token assertion failed: {type(e).__name__}") from e

            try:
                response = await self._http.post(
                    self._token_uri,
                    data={"grant_type": _JWT_BEARER_GRANT, "assertion": assertion},
                )
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise IdentityProviderError(f"Access token request failed: {type(e).__name__}") from e

            token = data.get("access_token") if isinstance(data, dict) else None
            if not token:
                raise IdentityProviderError("Access token response carried no token")
            self._access_token = token
            self._access_token_expiry = now + float(data.get("expires_in", 3600))
            logger.debug("Database access token refreshed for %s", self._client_email)
            return token

    async def _params(self) -> dict[str, str]:
        if self._database_secret:
            return {"auth": self._database_secret}
        return {"access_token": await self._service_account_token()}

    def _url(self, path: str) -> str:
        return f"{self._database_url}/{path.strip('/')}.json"

    async def get_value(self, path: str) -> Any:
        params = await self._params()
        try:
            response = await self._http.get(self._url(path), params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise IdentityProviderError(f"Identity store read failed at {path}: {type(e).__name__}") from e

    async def set_value(self, path: str, value: Any) -> None:
        params = await self._params()
        try:
            response = await self._http.put(self._url(path), params=params, json=value)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Identity store write failed at {path}: {type(e).__name__}") from e


@dataclass
class BridgeResult:
    federated_token: str
    federated_user_id: str
    profile_updated: bool = False


def token_path(config: ShopifyAppConfig, uid: str) -> str:
    return f"/{config.token_namespace}/{uid}"


def profile_shop_path(config: ShopifyAppConfig, uid: str) -> str:
    return f"/{config.profile_namespace}/{uid}/shop"


class IdentityBridge:
    """Mints federated tokens and persists platform tokens for shops."""

    def __init__(self, provider: IdentityProvider, config: ShopifyAppConfig):
        self.provider = provider
        self.config = config

    async def bridge(
        self,
        shop: str,
        platform_access_token: str,
        ledger: SessionLedger | None = None,
    ) -> BridgeResult:
        """Mint a federated token for ``shop`` and persist its access token.

        Args:
            shop: Shop name or domain.
            platform_access_token: Token produced by the OAuth handshake.
            ledger: If given, the federated token is recorded in the tenant session.

        Raises:
            IdentityProviderError: the token could not be minted.
            BridgeIncompleteError: minted, but persistence failed.
        """
        identity = TenantIdentity.from_shop(shop)
        uid = identity.federated_user_id

        try:
            token = await self.provider.create_custom_token(uid)
        except IdentityProviderError:
            logger.warning("Federated token mint failed: shop=%s", identity.shop_name)
            raise

        try:
            await self.provider.set_value(token_path(self.config, uid), platform_access_token)
            profile_updated = await self._sync_profile(identity)
        except IdentityProviderError as e:
            logger.error("Bridge incomplete: shop=%s uid=%s (%s)", identity.shop_name, uid, e)
            raise BridgeIncompleteError(
                f"Access token not persisted for {identity.shop_name}",
                federated_token=token,
                federated_user_id=uid,
            ) from e

        if ledger is not None:
            ledger.record_federated_token(self.config.app_name, identity.shop_name, token, uid)

        logger.info(
            "Identity bridged: shop=%s uid=%s profile_updated=%s",
            identity.shop_name,
            uid,
            profile_updated,
        )
        return BridgeResult(federated_token=token, federated_user_id=uid, profile_updated=profile_updated)

    async def _sync_profile(self, identity: TenantIdentity) -> bool:
        """Write the profile shop only when it differs from what is stored."""
        path = profile_shop_path(self.config, identity.federated_user_id)
        current = await self.provider.get_value(path)
        if current == identity.shop:
            return False
        await self.provider.set_value(path, identity.shop)
        return True
