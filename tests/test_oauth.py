"""Tests for the OAuth handshake.

Tests:
- Callback HMAC (canonical message, constant-time compare, fail-closed)
- Authorization redirect (URL shape, nonce storage)
- Callback ordering: state -> signature -> exchange, with no mutation on failure
- Code exchange against a mock transport (single attempt, safe errors)
"""

from __future__ import annotations

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from shopify_server.errors import ExchangeError, SecurityError
from shopify_server.oauth import (
    OAuthHandshake,
    compute_hmac,
    generate_nonce,
    signed_message,
    verify_hmac,
)
from tests.helpers import SHARED_SECRET, sign_query


def _exchange_transport(calls: list, status: int = 200, body: dict | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=body if body is not None else {"access_token": "shpat_abc"})

    return httpx.MockTransport(handler)


def _handshake(app_config, calls: list, **kwargs) -> OAuthHandshake:
    client = httpx.AsyncClient(transport=_exchange_transport(calls, **kwargs))
    return OAuthHandshake(app_config, http_client=client)


def _callback_query(state: str, shop: str = "acme.myshopify.com", code: str = "code-1") -> dict[str, str]:
    return sign_query({"code": code, "shop": shop, "state": state, "timestamp": "1700000000"})


# ── HMAC ──────────────────────────────────────────────────────────────────


class TestCallbackHmac:
    def test_message_is_sorted_and_excludes_signature_fields(self):
        query = {"shop": "acme.myshopify.com", "code": "c", "hmac": "x", "signature": "y"}
        assert signed_message(query) == "code=c&shop=acme.myshopify.com"

    def test_message_escapes_separators(self):
        assert signed_message({"a&b": "c%d", "k=v": "1"}) == "a%26b=c%25d&k%3Dv=1"

    def test_valid_signature(self):
        assert verify_hmac(sign_query({"shop": "acme.myshopify.com", "code": "c"}), SHARED_SECRET)

    def test_tampered_field(self):
        query = sign_query({"shop": "acme.myshopify.com", "code": "c"})
        query["code"] = "other"
        assert not verify_hmac(query, SHARED_SECRET)

    def test_missing_hmac(self):
        assert not verify_hmac({"shop": "acme.myshopify.com"}, SHARED_SECRET)

    def test_missing_secret_rejects(self):
        query = {"shop": "acme.myshopify.com"}
        query["hmac"] = compute_hmac(query, "")
        assert not verify_hmac(query, "")

    def test_non_ascii_hmac_rejected(self):
        assert not verify_hmac({"shop": "acme.myshopify.com", "hmac": "é"}, SHARED_SECRET)

    def test_nonce_is_128_bits_hex(self):
        nonce = generate_nonce()
        assert len(nonce) == 32
        int(nonce, 16)
        assert nonce != generate_nonce()


# ── Redirect ──────────────────────────────────────────────────────────────


class TestAuthorizationRedirect:
    def test_url_and_stored_nonce(self, app_config, ledger):
        handshake = OAuthHandshake(app_config)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")

        parsed = urlparse(redirect.url)
        params = parse_qs(parsed.query)
        assert parsed.scheme == "https"
        assert parsed.netloc == "acme.myshopify.com"
        assert parsed.path == "/admin/oauth/authorize"
        assert params["client_id"] == ["api-key-123"]
        assert params["scope"] == ["read_products,write_orders"]
        assert params["state"] == [redirect.nonce]
        assert params["redirect_uri"] == ["https://app.example.com/auth/tagger/callback"]
        assert ledger.state_matches("tagger", "acme", redirect.nonce)

    def test_domain_and_name_share_a_session(self, app_config, ledger):
        handshake = OAuthHandshake(app_config)
        redirect = handshake.generate_authorization_redirect(ledger, "acme.myshopify.com")
        assert redirect.shop == "acme"
        assert ledger.state_matches("tagger", "acme", redirect.nonce)

    def test_custom_scopes(self, app_config, ledger):
        redirect = OAuthHandshake(app_config).generate_authorization_redirect(
            ledger, "acme", scopes=["read_themes"]
        )
        assert parse_qs(urlparse(redirect.url).query)["scope"] == ["read_themes"]

    def test_install_url(self, app_config):
        assert (
            OAuthHandshake(app_config).app_install_url("acme")
            == "https://acme.myshopify.com/admin/apps/api-key-123"
        )


# ── Callback ──────────────────────────────────────────────────────────────


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_happy_path(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")

        token = await handshake.handle_callback(ledger, _callback_query(redirect.nonce))

        assert token == "shpat_abc"
        session = ledger.get("tagger", "acme")
        assert session.platform_access_token == "shpat_abc"
        assert session.state_nonce is None
        assert len(calls) == 1
        assert str(calls[0].url) == "https://acme.myshopify.com/admin/oauth/access_token"
        assert json.loads(calls[0].content) == {
            "client_id": "api-key-123",
            "client_secret": SHARED_SECRET,
            "code": "code-1",
        }

    @pytest.mark.asyncio
    async def test_state_mismatch(self, app_config, ledger, store):
        calls: list = []
        handshake = _handshake(app_config, calls)
        handshake.generate_authorization_redirect(ledger, "acme")
        before = json.dumps(store, sort_keys=True)

        with pytest.raises(SecurityError, match="state mismatch"):
            await handshake.handle_callback(ledger, _callback_query("forged"))

        assert json.dumps(store, sort_keys=True) == before
        assert calls == []

    @pytest.mark.asyncio
    async def test_tampered_signature_leaves_session_unchanged(self, app_config, ledger, store):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        before = json.dumps(store, sort_keys=True)

        query = _callback_query(redirect.nonce)
        query["code"] = "swapped"
        with pytest.raises(SecurityError, match="signature mismatch"):
            await handshake.handle_callback(ledger, query)

        assert json.dumps(store, sort_keys=True) == before
        assert ledger.state_matches("tagger", "acme", redirect.nonce)
        assert calls == []

    @pytest.mark.asyncio
    async def test_state_checked_before_signature(self, app_config, ledger):
        handshake = _handshake(app_config, [])
        handshake.generate_authorization_redirect(ledger, "acme")
        query = {"code": "c", "shop": "acme.myshopify.com", "state": "forged", "hmac": "bad"}
        with pytest.raises(SecurityError, match="state mismatch"):
            await handshake.handle_callback(ledger, query)

    @pytest.mark.asyncio
    async def test_callback_without_redirect(self, app_config, ledger):
        handshake = _handshake(app_config, [])
        with pytest.raises(SecurityError):
            await handshake.handle_callback(ledger, _callback_query("anything"))

    @pytest.mark.asyncio
    async def test_invalid_shop(self, app_config, ledger):
        handshake = _handshake(app_config, [])
        with pytest.raises(SecurityError, match="shop"):
            await handshake.handle_callback(ledger, _callback_query("n", shop="evil.com/x"))

    @pytest.mark.asyncio
    async def test_missing_code(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        query = sign_query({"shop": "acme.myshopify.com", "state": redirect.nonce})
        with pytest.raises(SecurityError, match="code missing"):
            await handshake.handle_callback(ledger, query)
        assert calls == []

    @pytest.mark.asyncio
    async def test_replay_is_rejected(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        query = _callback_query(redirect.nonce)

        await handshake.handle_callback(ledger, query)
        with pytest.raises(SecurityError, match="state mismatch"):
            await handshake.handle_callback(ledger, query)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_replay_exchanges_once(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        query = _callback_query(redirect.nonce)

        results = await asyncio.gather(
            handshake.handle_callback(ledger, query),
            handshake.handle_callback(ledger, query),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r == "shpat_abc") == 1
        assert sum(1 for r in results if isinstance(r, SecurityError)) == 1
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_tenant_locks_released_after_callbacks(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        query = _callback_query(redirect.nonce)

        await asyncio.gather(
            handshake.handle_callback(ledger, query),
            handshake.handle_callback(ledger, query),
            return_exceptions=True,
        )
        assert handshake._tenant_locks == {}

        with pytest.raises(SecurityError):
            await handshake.handle_callback(ledger, _callback_query("wrong", shop="globex.myshopify.com"))
        assert handshake._tenant_locks == {}

    @pytest.mark.asyncio
    async def test_mixed_case_callback_completes_same_session(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls)
        redirect = handshake.generate_authorization_redirect(ledger, "Acme")

        token = await handshake.handle_callback(ledger, _callback_query(redirect.nonce, shop="ACME.myshopify.com"))

        assert token == "shpat_abc"
        assert ledger.get("tagger", "acme").platform_access_token == "shpat_abc"
        assert str(calls[0].url) == "https://acme.myshopify.com/admin/oauth/access_token"

    @pytest.mark.asyncio
    async def test_exchange_rejected(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls, status=400, body={"error": "invalid_request"})
        redirect = handshake.generate_authorization_redirect(ledger, "acme")

        with pytest.raises(ExchangeError) as exc_info:
            await handshake.handle_callback(ledger, _callback_query(redirect.nonce, code="secret-code"))

        assert "secret-code" not in str(exc_info.value)
        assert SHARED_SECRET not in str(exc_info.value)
        assert ledger.get("tagger", "acme").platform_access_token is None
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exchange_without_token(self, app_config, ledger):
        handshake = _handshake(app_config, [], body={"scope": "read_products"})
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        with pytest.raises(ExchangeError, match="no access token"):
            await handshake.handle_callback(ledger, _callback_query(redirect.nonce))

    @pytest.mark.asyncio
    async def test_exchange_server_error_is_not_retried(self, app_config, ledger):
        calls: list = []
        handshake = _handshake(app_config, calls, status=503, body={})
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        with pytest.raises(ExchangeError, match="HTTP 503"):
            await handshake.handle_callback(ledger, _callback_query(redirect.nonce))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exchange_transport_error(self, app_config, ledger):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        handshake = OAuthHandshake(
            app_config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        redirect = handshake.generate_authorization_redirect(ledger, "acme")
        with pytest.raises(ExchangeError, match="ConnectError"):
            await handshake.handle_callback(ledger, _callback_query(redirect.nonce))
