"""Test doubles and signing helpers shared by the test suite."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import itertools
from typing import Any

from shopify_server.errors import IdentityProviderError, RemoteApiError
from shopify_server.shopify_api import WebhookSubscription
from shopify_server.topics import WEBHOOK_FORMAT

SHARED_SECRET = "hush"
APP_NAME = "tagger"
WEBHOOK_BASE = "https://hooks.example.com"


def sign_query(query: dict[str, str], secret: str = SHARED_SECRET) -> dict[str, str]:
    """Return ``query`` with a valid Shopify ``hmac`` field added."""
    message = "&".join(sorted(f"{k}={v}" for k, v in query.items() if k not in ("hmac", "signature")))
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return {**query, "hmac": digest}


class FakeWebhookApi:
    """In-memory WebhookApi that records every call."""

    def __init__(
        self,
        existing: list[WebhookSubscription] | None = None,
        fail_topics: set[str] | None = None,
        fail_list: bool = False,
        delay: float = 0.0,
    ):
        self.subscriptions: list[WebhookSubscription] = list(existing or [])
        self.fail_topics = fail_topics or set()
        self.fail_list = fail_list
        self.delay = delay
        self.calls: list[tuple[str, Any]] = []
        self._ids = itertools.count(1000)

    async def list_webhooks(self) -> list[WebhookSubscription]:
        self.calls.append(("list", None))
        if self.fail_list:
            raise RemoteApiError("listing unavailable", status_code=503)
        return list(self.subscriptions)

    async def create_webhook(self, topic: str, address: str, format: str = WEBHOOK_FORMAT):
        self.calls.append(("create", topic))
        if self.delay:
            await asyncio.sleep(self.delay)
        if topic in self.fail_topics:
            raise RemoteApiError(f"create rejected for {topic}", status_code=422)
        sub = WebhookSubscription(id=str(next(self._ids)), topic=topic, address=address, format=format)
        self.subscriptions.append(sub)
        return sub

    async def update_webhook(self, webhook_id: str, address: str, format: str = WEBHOOK_FORMAT):
        self.calls.append(("update", webhook_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        for i, sub in enumerate(self.subscriptions):
            if sub.id == webhook_id:
                if sub.topic in self.fail_topics:
                    raise RemoteApiError(f"update rejected for {sub.topic}", status_code=422)
                updated = WebhookSubscription(id=sub.id, topic=sub.topic, address=address, format=format)
                self.subscriptions[i] = updated
                return updated
        raise RemoteApiError(f"webhook {webhook_id} not found", status_code=404)

    async def delete_webhook(self, webhook_id: str) -> None:
        self.calls.append(("delete", webhook_id))
        before = len(self.subscriptions)
        self.subscriptions = [s for s in self.subscriptions if s.id != webhook_id]
        if len(self.subscriptions) == before:
            raise RemoteApiError(f"webhook {webhook_id} not found", status_code=404)

    def mutations(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] != "list"]


class FakeIdentityProvider:
    """In-memory IdentityProvider with switchable failures."""

    def __init__(self, fail_mint: bool = False, fail_write: bool = False):
        self.records: dict[str, Any] = {}
        self.fail_mint = fail_mint
        self.fail_write = fail_write
        self.minted: list[str] = []
        self.writes: list[tuple[str, Any]] = []

    async def create_custom_token(self, uid: str) -> str:
        if self.fail_mint:
            raise IdentityProviderError("identity provider unreachable")
        self.minted.append(uid)
        return f"custom-token-for-{uid}"

    async def get_value(self, path: str) -> Any:
        path = "/" + path.strip("/")
        if path in self.records:
            return self.records[path]
        prefix = path.rstrip("/") + "/"
        children = {k[len(prefix):]: v for k, v in self.records.items() if k.startswith(prefix)}
        return {k: v for k, v in children.items() if "/" not in k} or None

    async def set_value(self, path: str, value: Any) -> None:
        if self.fail_write:
            raise IdentityProviderError("write refused")
        path = "/" + path.strip("/")
        self.writes.append((path, value))
        self.records[path] = value

