"""OAuth handshake — authorization redirect, callback validation, code exchange.

Security contract:
- The state nonce is random (128 bits), single-use, and one per tenant
- State is checked before the signature, the signature before the exchange
- Every check fails closed with SecurityError and mutates nothing
- HMAC comparison is constant-time (hmac.compare_digest)
- The code is exchanged once; a failed exchange is terminal for the attempt
- Callbacks for the same tenant are serialized, so a replayed state loses the
  race against the nonce clear
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import logging
import secrets
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from urllib.parse import urlencode

import httpx

from shopify_server.config import ShopifyAppConfig
from shopify_server.errors import InvalidShopError, SecurityError
from shopify_server.sessions import SessionLedger
from shopify_server.shopify_api import exchange_code_for_token
from shopify_server.tenants import shop_domain, shop_name

logger = logging.getLogger(__name__)

# Query fields excluded from the signed message
_UNSIGNED_FIELDS = {"hmac", "signature"}


@dataclass(frozen=True)
class AuthorizationRedirect:
    """Where to send the browser, and the nonce that was stored for it."""

    url: str
    nonce: str
    shop: str


def generate_nonce() -> str:
    return secrets.token_hex(16)


def _escape_key(value: str) -> str:
    return value.replace("%", "%25").replace("&", "%26").replace("=", "%3D")


def _escape_value(value: str) -> str:
    return value.replace("%", "%25").replace("&", "%26")


def signed_message(query: Mapping[str, str]) -> str:
    """Canonical message Shopify signs: sorted ``k=v`` pairs joined by ``&``."""
    pairs = [
        f"{_escape_key(str(k))}={_escape_value(str(v))}"
        for k, v in query.items()
        if k not in _UNSIGNED_FIELDS
    ]
    return "&".join(sorted(pairs))


def compute_hmac(query: Mapping[str, str], shared_secret: str) -> str:
    return hmac.new(
        shared_secret.encode("utf-8"),
        signed_message(query).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_hmac(query: Mapping[str, str], shared_secret: str) -> bool:
    """Verify the HMAC-SHA256 signature of an OAuth callback query.

    Args:
        query: All query parameters from the callback URL.
        shared_secret: The app's API secret.

    Returns:
        True if the signature is valid. A missing secret or missing ``hmac``
        field always fails.
    """
    if not shared_secret:
        logger.warning("Shared secret not set — rejecting callback")
        return False
    received = query.get("hmac")
    if not received:
        return False
    computed = compute_hmac(query, shared_secret)
    return hmac.compare_digest(computed.encode(), str(received).encode())


@dataclass
class _TenantLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class OAuthHandshake:
    """Drives the authorization-code flow for one app."""

    def __init__(self, config: ShopifyAppConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._http = http_client
        self._tenant_locks: dict[str, _TenantLock] = {}

    @property
    def app_name(self) -> str:
        return self.config.app_name

    def build_authorization_url(self, shop: str, scopes: tuple[str, ...] | list[str], nonce: str) -> str:
        params = {
            "client_id": self.config.api_key,
            "scope": ",".join(scopes),
            "state": nonce,
        }
        if self.config.redirect_uri:
            params["redirect_uri"] = self.config.redirect_uri
        return f"https://{shop_domain(shop)}/admin/oauth/authorize?{urlencode(params)}"

    def app_install_url(self, shop: str) -> str:
        """Admin URL the merchant lands on once the app is authorized."""
        return f"https://{shop_domain(shop)}/admin/apps/{self.config.api_key}"

    def generate_authorization_redirect(
        self,
        ledger: SessionLedger,
        shop: str,
        scopes: tuple[str, ...] | list[str] | None = None,
    ) -> AuthorizationRedirect:
        """Create a nonce, store it for the tenant, and build the consent URL.

        A second redirect before the callback replaces the first nonce.
        """
        name = shop_name(shop)
        nonce = generate_nonce()
        url = self.build_authorization_url(shop, scopes or self.config.scopes, nonce)
        ledger.set_state(self.app_name, name, nonce)
        logger.info("OAuth redirect issued: app=%s shop=%s", self.app_name, name)
        return AuthorizationRedirect(url=url, nonce=nonce, shop=name)

    @contextlib.asynccontextmanager
    async def _tenant_lock(self, name: str) -> AsyncIterator[None]:
        """Serialize callbacks for one tenant; the lock is dropped once unused."""
        entry = self._tenant_locks.get(name)
        if entry is None:
            entry = self._tenant_locks[name] = _TenantLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._tenant_locks[name]

    async def handle_callback(self, ledger: SessionLedger, query: Mapping[str, str]) -> str:
        """Validate the callback and exchange its code for an access token.

        Raises:
            SecurityError: state or signature mismatch (nothing is mutated).
            ExchangeError: the platform refused or could not be reached.
        """
        shop = query.get("shop") or ""
        try:
            name = shop_name(shop)
            domain = shop_domain(shop)
        except InvalidShopError:
            logger.warning("OAuth callback rejected: app=%s invalid shop", self.app_name)
            raise SecurityError("Security checks failed (shop)") from None

        async with self._tenant_lock(name):
            if not ledger.state_matches(self.app_name, name, query.get("state")):
                logger.warning("OAuth callback rejected: app=%s shop=%s state mismatch", self.app_name, name)
                raise SecurityError("Security checks failed (state mismatch)")

            if not verify_hmac(query, self.config.shared_secret):
                logger.warning(
                    "OAuth callback rejected: app=%s shop=%s signature mismatch", self.app_name, name
                )
                raise SecurityError("Security checks failed (signature mismatch)")

            code = query.get("code")
            if not code:
                raise SecurityError("Security checks failed (code missing)")

            access_token = await exchange_code_for_token(
                domain,
                code,
                api_key=self.config.api_key,
                shared_secret=self.config.shared_secret,
                http_client=self._http,
                timeout=self.config.http_timeout,
            )

            ledger.complete_handshake(self.app_name, name, access_token)

        logger.info("OAuth handshake complete: app=%s shop=%s", self.app_name, name)
        return access_token
