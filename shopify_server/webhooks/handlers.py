"""Webhook HTTP handlers — one FastAPI route per enabled topic.

Each handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies the X-Shopify-Hmac-SHA256 signature
3. Parses the JSON payload
4. Calls ``controller[resource][action]`` with a WebhookDelivery
5. Returns 202 Accepted

Security contract:
- Never return error details to webhook caller (info disclosure)
- Return 401 only for signature failures
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shopify_server.config import ShopifyAppConfig
from shopify_server.topics import parse_topic, webhook_path
from shopify_server.webhooks.verification import verify_webhook

logger = logging.getLogger(__name__)

WebhookHandler = Callable[["WebhookDelivery"], Any]
Controller = Mapping[str, Mapping[str, WebhookHandler]]


@dataclass
class WebhookDelivery:
    """A verified delivery handed to a controller action."""

    app_name: str
    topic: str
    resource: str
    action: str
    shop: str = ""
    webhook_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


def _log_webhook(topic: str, shop: str, webhook_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT topic=%s shop=%s id=%s status=%s",
        topic,
        shop or "unknown",
        webhook_id or "unknown",
        status,
    )


def resolve_handler(controller: Controller, topic: str) -> WebhookHandler:
    """Look up ``controller[resource][action]`` for a topic.

    Raises:
        InvalidTopicError: malformed topic.
        LookupError: the controller has no handler for the topic.
    """
    resource, action = parse_topic(topic)
    handler = controller.get(resource, {}).get(action)
    if handler is None:
        raise LookupError(f"No webhook handler for {resource}.{action}")
    return handler


async def _handle_webhook(
    request: Request,
    config: ShopifyAppConfig,
    topic: str,
    handler: WebhookHandler,
) -> JSONResponse:
    start = time.time()
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    shop = headers.get("x-shopify-shop-domain", "")
    webhook_id = headers.get("x-shopify-webhook-id", "")

    # 1. Verify signature
    if not verify_webhook(body, headers, config.shared_secret):
        _log_webhook(topic, shop, webhook_id, "signature_failed")
        return JSONResponse({"status": "unauthorized"}, status_code=401)

    # 2. Parse JSON payload
    try:
        payload = json.loads(body) if body else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_webhook(topic, shop, webhook_id, "invalid_json")
        return JSONResponse({"status": "received"}, status_code=202)

    resource, action = parse_topic(topic)
    delivery = WebhookDelivery(
        app_name=config.app_name,
        topic=topic,
        resource=resource,
        action=action,
        shop=shop,
        webhook_id=webhook_id,
        payload=payload if isinstance(payload, dict) else {"data": payload},
    )

    # 3. Route to controller
    try:
        result = handler(delivery)
        if inspect.isawaitable(result):
            await result
        _log_webhook(topic, shop, webhook_id, "dispatched")
    except Exception:
        logger.exception("Webhook handler failed: %s.%s", resource, action)
        _log_webhook(topic, shop, webhook_id, "dispatch_failed")

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed_ms, topic)

    return JSONResponse({"status": "received"}, status_code=202)


def register_webhook_routes(
    app: FastAPI,
    config: ShopifyAppConfig,
    controller: Controller,
    topics: list[str] | tuple[str, ...] | None = None,
) -> list[str]:
    """Register ``POST /webhook/{app_name}/{topic}`` for every enabled topic.

    Handlers are resolved up front, so a missing ``controller[resource][action]``
    fails at startup rather than on the first delivery.

    Returns:
        The registered route paths.
    """
    enabled = config.catalog.resolve(topics)
    paths: list[str] = []

    for topic in enabled:
        handler = resolve_handler(controller, topic)
        path = webhook_path(config.app_name, topic)

        def _make(topic: str, handler: WebhookHandler):
            async def receive_webhook(request: Request):
                return await _handle_webhook(request, config, topic, handler)

            receive_webhook.__name__ = f"webhook_{topic.replace('/', '_')}"
            return receive_webhook

        app.add_api_route(path, _make(topic, handler), methods=["POST"], include_in_schema=False)
        paths.append(path)

    logger.info("Webhook routes registered: %d topics under /webhook/%s", len(paths), config.app_name)
    return paths
