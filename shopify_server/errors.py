"""Error taxonomy for the Shopify server.

Propagation contract:
- SecurityError / ExchangeError / IdentityProviderError fail fast per tenant
- RemoteApiError is caught per topic during reconciliation (never aborts siblings)
- InvalidTopicError / InvalidShopError are configuration errors (fatal at startup)
- Messages never contain secret material (tokens, codes, shared secrets)
"""

from __future__ import annotations


class ShopifyServerError(Exception):
    """Base exception for all shopify_server errors."""

    pass


class SecurityError(ShopifyServerError):
    """State or signature check failed. Terminal, never retried."""

    pass


class ExchangeError(ShopifyServerError):
    """Authorization code exchange failed. Codes are single-use, so terminal."""

    pass


class IdentityProviderError(ShopifyServerError):
    """Identity provider unreachable or rejected a mint/persist request."""

    pass


class BridgeIncompleteError(IdentityProviderError):
    """A federated token was minted but the access token was not persisted.

    The caller holds a usable token that does not yet guarantee durable
    storage of the platform credential, and owns the retry policy.
    """

    def __init__(self, message: str, federated_token: str, federated_user_id: str):
        super().__init__(message)
        self.federated_token = federated_token
        self.federated_user_id = federated_user_id


class RemoteApiError(ShopifyServerError):
    """A webhook list/create/update/delete call against the platform failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidTopicError(ShopifyServerError, ValueError):
    """Topic string is not of the form ``resource/action``."""

    pass


class InvalidShopError(ShopifyServerError, ValueError):
    """Shop identifier is empty or contains characters outside the hostname alphabet."""

    pass
