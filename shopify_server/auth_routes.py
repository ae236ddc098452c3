"""OAuth HTTP routes — redirect, callback and federated-token lookup.

Routes (``{app}`` is the configured app name):
- GET /auth/{app}/{shop}/redirect  -> 307 to the consent screen
- GET /auth/{app}/callback         -> sign-in document, or 400/502
- GET /auth/{app}/{shop}/token     -> {"firebaseToken": ...} or 404

Security contract:
- Error responses carry a fixed safe message, never secrets or upstream detail
- Every value embedded in the sign-in document is JSON-encoded
- Session state lives in the hosting session (SessionMiddleware cookie)
"""

from __future__ import annotations

import json
import logging

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from shopify_server.config import FirebaseWebConfig
from shopify_server.errors import (
    BridgeIncompleteError,
    ExchangeError,
    IdentityProviderError,
    InvalidShopError,
    SecurityError,
)
from shopify_server.identity import IdentityBridge, profile_shop_path, token_path
from shopify_server.oauth import OAuthHandshake
from shopify_server.sessions import SessionLedger
from shopify_server.tenants import shop_domain, shop_name

logger = logging.getLogger(__name__)

_FIREBASE_SDK = "https://www.gstatic.com/firebasejs/8.10.1"


def _js(value: object) -> str:
    """JSON-encode for inline <script>, neutralizing ``</script>``."""
    return json.dumps(value).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def sign_in_document(
    *,
    shop: str,
    platform_access_token: str,
    federated_token: str,
    token_ref: str,
    profile_ref: str,
    install_url: str,
    firebase: FirebaseWebConfig,
) -> str:
    """HTML that signs into the identity provider client-side and finishes install.

    The browser signs in with the custom token, writes the access token to
    ``token_ref``, updates the profile shop if it differs, then redirects to
    the app-install URL.
    """
    config = {"apiKey": firebase.api_key, "databaseURL": firebase.resolved_database_url}
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Signing in…</title></head>
<body>
<script src="{_FIREBASE_SDK}/firebase-app.js"></script>
<script src="{_FIREBASE_SDK}/firebase-auth.js"></script>
<script src="{_FIREBASE_SDK}/firebase-database.js"></script>
<script>
  var shop = {_js(shop)};
  var accessToken = {_js(platform_access_token)};
  var token = {_js(federated_token)};
  var tempApp = firebase.initializeApp({_js(config)}, '_temp_');
  tempApp.auth().signInWithCustomToken(token).then(function(credential) {{
    var db = tempApp.database();
    var tasks = [db.ref({_js(token_ref)}).set(accessToken)];
    var profileRef = db.ref({_js(profile_ref)});
    tasks.push(profileRef.once('value').then(function(snapshot) {{
      if (snapshot.val() !== shop) {{
        return profileRef.set(shop);
      }}
    }}));
    return Promise.all(tasks);
  }}).then(function() {{
    var defaultApp = firebase.initializeApp({_js(config)});
    return Promise.all([tempApp.delete(), defaultApp.auth().signInWithCustomToken(token)]);
  }}).then(function() {{
    window.location.href = {_js(install_url)};
  }});
</script>
</body>
</html>"""


def register_auth_routes(
    app: FastAPI,
    handshake: OAuthHandshake,
    bridge: IdentityBridge,
    firebase: FirebaseWebConfig,
) -> None:
    """Register the OAuth routes for the handshake's app."""
    config = handshake.config
    base = config.auth_base_path

    @app.get(f"{base}/{{shop}}/redirect")
    async def oauth_redirect(request: Request, shop: str):
        """Send the merchant to the consent screen (stores a fresh nonce)."""
        ledger = SessionLedger(request.session)
        try:
            redirect = handshake.generate_authorization_redirect(ledger, shop)
        except InvalidShopError:
            return JSONResponse({"detail": "Invalid shop"}, status_code=400)
        return RedirectResponse(redirect.url, status_code=307)

    @app.get(f"{base}/callback")
    async def oauth_callback(request: Request):
        """Validate the callback, exchange the code, bridge the identity."""
        ledger = SessionLedger(request.session)
        query = dict(request.query_params)

        try:
            access_token = await handshake.handle_callback(ledger, query)
        except SecurityError as e:
            return JSONResponse({"detail": str(e)}, status_code=400)
        except ExchangeError:
            logger.warning("OAuth exchange failed: app=%s", config.app_name, exc_info=True)
            return JSONResponse({"detail": "Token exchange failed"}, status_code=502)

        shop = shop_domain(query["shop"])
        try:
            result = await bridge.bridge(shop, access_token, ledger)
        except BridgeIncompleteError:
            return JSONResponse({"detail": "Sign-in incomplete, retry"}, status_code=502)
        except IdentityProviderError:
            return JSONResponse({"detail": "Identity provider unavailable"}, status_code=502)

        html = sign_in_document(
            shop=shop,
            platform_access_token=access_token,
            federated_token=result.federated_token,
            token_ref=token_path(config, result.federated_user_id),
            profile_ref=profile_shop_path(config, result.federated_user_id),
            install_url=handshake.app_install_url(shop),
            firebase=firebase,
        )
        return HTMLResponse(html)

    @app.get(f"{base}/{{shop}}/token")
    async def federated_token(request: Request, shop: str):
        """Return the federated token once the handshake has completed."""
        try:
            name = shop_name(shop)
        except InvalidShopError:
            return JSONResponse({"detail": "Not Found"}, status_code=404)
        token = SessionLedger(request.session).federated_token(config.app_name, name)
        if token is None:
            return JSONResponse({"detail": "Not Found"}, status_code=404)
        return {"firebaseToken": token}

    logger.info("Auth routes registered under %s", base)
