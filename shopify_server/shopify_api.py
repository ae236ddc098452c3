"""Shopify GraphQL Admin API client — webhook subscriptions and OAuth exchange.

REST is deprecated; webhook subscriptions go through the GraphQL Admin API.
Topics cross the wire as ``WebhookSubscriptionTopic`` enums (``ORDERS_CREATE``)
and come back out as ``resource/action`` strings. Subscription ids are opaque
GraphQL gids; a bare numeric id is promoted to a gid on update/delete.

Error contract:
- Any transport, HTTP or GraphQL/userErrors failure raises RemoteApiError
- The webhook listing (read-only) is retried with backoff; mutations are not
- The OAuth code exchange is never retried (codes are single-use)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from shopify_server.errors import ExchangeError, RemoteApiError
from shopify_server.retry import LISTING_RETRY, retry_with_backoff
from shopify_server.topics import DEFAULT_TOPICS, WEBHOOK_FORMAT, topic_from_enum, topic_to_enum

logger = logging.getLogger(__name__)

_GID_PREFIX = "gid://shopify/WebhookSubscription/"
_PAGE_SIZE = 250


@dataclass(frozen=True)
class WebhookSubscription:
    """A webhook subscription as registered on the platform."""

    id: str | None
    topic: str
    address: str
    format: str = WEBHOOK_FORMAT


@runtime_checkable
class WebhookApi(Protocol):
    """Remote webhook capability of one shop's API client."""

    async def list_webhooks(self) -> list[WebhookSubscription]:
        """Every subscription registered for the shop (all pages)."""
        ...

    async def create_webhook(
        self, topic: str, address: str, format: str = WEBHOOK_FORMAT
    ) -> WebhookSubscription:
        ...

    async def update_webhook(
        self, webhook_id: str, address: str, format: str = WEBHOOK_FORMAT
    ) -> WebhookSubscription:
        ...

    async def delete_webhook(self, webhook_id: str) -> None:
        ...


_LIST_QUERY = """
query ($first: Int!, $after: String) {
  webhookSubscriptions(first: $first, after: $after) {
    edges {
      node {
        id
        topic
        format
        endpoint {
          __typename
          ... on WebhookHttpEndpoint { callbackUrl }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

_SUBSCRIPTION_FIELDS = """
      id
      topic
      format
      endpoint {
        __typename
        ... on WebhookHttpEndpoint { callbackUrl }
      }
"""

_CREATE_MUTATION = (
    """
mutation webhookSubscriptionCreate($topic: WebhookSubscriptionTopic!, $webhookSubscription: WebhookSubscriptionInput!) {
  webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
    webhookSubscription {"""
    + _SUBSCRIPTION_FIELDS
    + """    }
    userErrors { field message }
  }
}
"""
)

_UPDATE_MUTATION = (
    """
mutation webhookSubscriptionUpdate($id: ID!, $webhookSubscription: WebhookSubscriptionInput!) {
  webhookSubscriptionUpdate(id: $id, webhookSubscription: $webhookSubscription) {
    webhookSubscription {"""
    + _SUBSCRIPTION_FIELDS
    + """    }
    userErrors { field message }
  }
}
"""
)

_DELETE_MUTATION = """
mutation webhookSubscriptionDelete($id: ID!) {
  webhookSubscriptionDelete(id: $id) {
    deletedWebhookSubscriptionId
    userErrors { field message }
  }
}
"""


def to_gid(webhook_id: str) -> str:
    webhook_id = str(webhook_id)
    if webhook_id.isdigit():
        return f"{_GID_PREFIX}{webhook_id}"
    return webhook_id


class ShopifyAdminClient:
    """Async GraphQL Admin API client bound to one shop's access token."""

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = "2025-01",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        known_topics: tuple[str, ...] | list[str] = DEFAULT_TOPICS,
    ):
        self.shop = shop
        self._access_token = access_token
        self._api_version = api_version
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._known_topics = tuple(known_topics)

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop}/admin/api/{self._api_version}/graphql.json"

    async def __aenter__(self) -> ShopifyAdminClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _post(self, query: str, variables: dict | None = None) -> dict:
        response = await self._http.post(
            self.endpoint,
            json={"query": query, "variables": variables or {}},
            headers={
                "X-Shopify-Access-Token": self._access_token,
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteApiError(f"Shopify API returned a non-JSON body for {self.shop}") from e
        if not isinstance(body, dict):
            raise RemoteApiError(f"Shopify API returned an unexpected body for {self.shop}")
        if body.get("errors"):
            raise RemoteApiError(_format_errors(body["errors"]))
        return body.get("data") or {}

    @retry_with_backoff(LISTING_RETRY)
    async def _read(self, query: str, variables: dict | None = None) -> dict:
        return await self._post(query, variables)

    async def _graphql(self, query: str, variables: dict | None = None, *, read: bool = False) -> dict:
        """Execute a GraphQL request, mapping transport failures to RemoteApiError."""
        try:
            if read:
                return await self._read(query, variables)
            return await self._post(query, variables)
        except httpx.HTTPStatusError as e:
            raise RemoteApiError(
                f"Shopify API returned HTTP {e.response.status_code} for {self.shop}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteApiError(f"Shopify API unreachable for {self.shop}: {type(e).__name__}") from e

    def _subscription(self, node: dict[str, Any]) -> WebhookSubscription:
        endpoint = node.get("endpoint") or {}
        return WebhookSubscription(
            id=node.get("id"),
            topic=topic_from_enum(node.get("topic", ""), self._known_topics),
            address=endpoint.get("callbackUrl", ""),
            format=str(node.get("format") or WEBHOOK_FORMAT).lower(),
        )

    async def list_webhooks(self) -> list[WebhookSubscription]:
        """List every webhook subscription, following the cursor to the last page."""
        subscriptions: list[WebhookSubscription] = []
        cursor: str | None = None
        while True:
            data = await self._graphql(_LIST_QUERY, {"first": _PAGE_SIZE, "after": cursor}, read=True)
            connection = data.get("webhookSubscriptions") or {}
            for edge in connection.get("edges", []):
                subscriptions.append(self._subscription(edge["node"]))
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")
        logger.debug("Listed %d webhooks for %s", len(subscriptions), self.shop)
        return subscriptions

    async def create_webhook(
        self, topic: str, address: str, format: str = WEBHOOK_FORMAT
    ) -> WebhookSubscription:
        data = await self._graphql(
            _CREATE_MUTATION,
            {
                "topic": topic_to_enum(topic),
                "webhookSubscription": {"callbackUrl": address, "format": format.upper()},
            },
        )
        payload = _mutation_payload(data, "webhookSubscriptionCreate")
        return self._subscription(payload.get("webhookSubscription") or {})

    async def update_webhook(
        self, webhook_id: str, address: str, format: str = WEBHOOK_FORMAT
    ) -> WebhookSubscription:
        data = await self._graphql(
            _UPDATE_MUTATION,
            {
                "id": to_gid(webhook_id),
                "webhookSubscription": {"callbackUrl": address, "format": format.upper()},
            },
        )
        payload = _mutation_payload(data, "webhookSubscriptionUpdate")
        return self._subscription(payload.get("webhookSubscription") or {})

    async def delete_webhook(self, webhook_id: str) -> None:
        data = await self._graphql(_DELETE_MUTATION, {"id": to_gid(webhook_id)})
        _mutation_payload(data, "webhookSubscriptionDelete")


def _format_errors(errors: Any) -> str:
    if isinstance(errors, list):
        messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]
        return "; ".join(messages)
    return str(errors)


def _mutation_payload(data: dict, name: str) -> dict:
    payload = data.get(name)
    if payload is None:
        raise RemoteApiError(f"{name} returned no payload")
    user_errors = payload.get("userErrors") or []
    if user_errors:
        raise RemoteApiError(f"{name}: {_format_errors(user_errors)}")
    return payload


async def exchange_code_for_token(
    shop: str,
    code: str,
    *,
    api_key: str,
    shared_secret: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> str:
    """Exchange an OAuth authorization code for a permanent access token.

    Single attempt. Raises ExchangeError on any failure; the error message
    never includes the code or the secret.
    """
    url = f"https://{shop}/admin/oauth/access_token"
    client = http_client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.post(
            url,
            json={"client_id": api_key, "client_secret": shared_secret, "code": code},
        )
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as e:
        raise ExchangeError(
            f"Token exchange rejected for {shop} (HTTP {e.response.status_code})"
        ) from e
    except (httpx.HTTPError, ValueError) as e:
        raise ExchangeError(f"Token exchange failed for {shop}: {type(e).__name__}") from e
    finally:
        if http_client is None:
            await client.aclose()

    token = data.get("access_token") if isinstance(data, dict) else None
    if not token:
        raise ExchangeError(f"Token exchange for {shop} returned no access token")
    return token
