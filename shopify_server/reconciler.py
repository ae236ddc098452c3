"""Webhook reconciler — converge each shop's subscriptions to a desired topic set.

Per tenant: list once, diff by topic, then create/update concurrently.

Contract:
- The listing strictly precedes every mutation for the same tenant
- A topic already registered is updated (first match, compared on the GraphQL
  enum so topics the client does not know by name still match), never re-created
- Capability-gated topics are reported ``skipped`` and never touch the API
- One topic failing never stops its siblings; every topic gets an outcome
- Nothing is deleted by ``reconcile``; duplicate cleanup is ``prune_duplicates``
- On cancellation no new mutation is dispatched; mutations already sent are
  awaited and logged before the cancellation propagates
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shopify_server.config import ShopifyAppConfig
from shopify_server.shopify_api import WebhookApi, WebhookSubscription
from shopify_server.topics import WEBHOOK_FORMAT, WebhookCatalog, topic_key, webhook_address

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Result of reconciling one topic for one tenant."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Tenant:
    """An authorized shop with an API client bound to its access token."""
    shop: str
    client: WebhookApi
    sales_channel: bool = False  # holds the listing capability


@dataclass
class DesiredWebhookSpec:
    topic: str
    address: str
    needs_update: bool = False
    existing_id: str | None = None
    requires_capability_not_held: bool = False


@dataclass(frozen=True)
class TopicOutcome:
    topic: str
    status: OutcomeStatus
    address: str = ""
    webhook_id: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"topic": self.topic, "status": self.status.value}
        if self.address:
            data["address"] = self.address
        if self.webhook_id:
            data["webhook_id"] = self.webhook_id
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class TenantOutcome:
    shop: str
    outcomes: list[TopicOutcome] = field(default_factory=list)
    listing_error: str = ""

    def by_status(self, status: OutcomeStatus) -> list[TopicOutcome]:
        return [o for o in self.outcomes if o.status == status]

    def get(self, topic: str) -> TopicOutcome | None:
        for outcome in self.outcomes:
            if outcome.topic == topic:
                return outcome
        return None

    @property
    def ok(self) -> bool:
        return not self.listing_error and not self.by_status(OutcomeStatus.FAILED)

    def summary(self) -> dict[str, int]:
        return {s.value: len(self.by_status(s)) for s in OutcomeStatus}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "shop": self.shop,
            "summary": self.summary(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
        if self.listing_error:
            data["listing_error"] = self.listing_error
        return data


@dataclass
class PruneOutcome:
    shop: str
    deleted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    listing_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"shop": self.shop, "deleted": list(self.deleted)}
        if self.failures:
            data["failures"] = dict(self.failures)
        if self.listing_error:
            data["listing_error"] = self.listing_error
        return data


class _Run:
    """Cancellation flag and in-flight mutations for one reconcile call."""

    def __init__(self) -> None:
        self.cancelled = False
        self.inflight: set[asyncio.Task] = set()

    def track(self, task: asyncio.Task) -> None:
        self.inflight.add(task)
        task.add_done_callback(self.inflight.discard)

    async def drain(self) -> None:
        if self.inflight:
            logger.warning("Reconcile cancelled; waiting for %d in-flight mutations", len(self.inflight))
            await asyncio.gather(*list(self.inflight), return_exceptions=True)


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _logged(tenant: Tenant, outcome: TopicOutcome) -> TopicOutcome:
    logger.info(
        "WEBHOOK_RECONCILE shop=%s topic=%s status=%s id=%s%s",
        tenant.shop,
        outcome.topic,
        outcome.status.value,
        outcome.webhook_id or "-",
        f" reason={outcome.reason}" if outcome.status == OutcomeStatus.FAILED else "",
    )
    return outcome


class WebhookReconciler:
    """Converges tenants' webhook subscriptions to the desired topics."""

    def __init__(self, config: ShopifyAppConfig):
        self.config = config
        self.catalog: WebhookCatalog = config.catalog

    def address_for(self, topic: str) -> str:
        return webhook_address(self.config.webhook_address, self.config.app_name, topic)

    def plan(
        self,
        topics: tuple[str, ...] | list[str],
        existing: list[WebhookSubscription],
        sales_channel: bool = False,
    ) -> list[DesiredWebhookSpec]:
        """Diff desired topics against the current subscriptions.

        When several subscriptions share a topic, the first one listed is
        updated and the others are left alone.
        """
        first_by_topic: dict[str, WebhookSubscription] = {}
        for sub in existing:
            first_by_topic.setdefault(topic_key(sub.topic), sub)

        specs: list[DesiredWebhookSpec] = []
        for topic in topics:
            spec = DesiredWebhookSpec(topic=topic, address=self.address_for(topic))
            if self.catalog.requires_capability(topic) and not sales_channel:
                spec.requires_capability_not_held = True
            else:
                match = first_by_topic.get(topic_key(topic))
                if match is not None:
                    spec.needs_update = True
                    spec.existing_id = match.id
            specs.append(spec)
        return specs

    async def reconcile(
        self,
        desired_topics: list[str] | tuple[str, ...] | None,
        tenants: list[Tenant],
    ) -> list[TenantOutcome]:
        """Reconcile every tenant concurrently. Empty topics means the full catalog.

        Returns one TenantOutcome per tenant, in input order. Never raises for
        remote failures.
        """
        topics = self.catalog.resolve(desired_topics)
        tenant_sem = asyncio.Semaphore(max(1, self.config.tenant_concurrency))
        run = _Run()

        async def _one(tenant: Tenant) -> TenantOutcome:
            async with tenant_sem:
                return await self._reconcile_tenant(tenant, topics, run)

        logger.info("Reconciling %d topics across %d tenants", len(topics), len(tenants))
        try:
            results = await asyncio.gather(*(_one(t) for t in tenants))
        except asyncio.CancelledError:
            run.cancelled = True
            await run.drain()
            raise
        return list(results)

    async def _reconcile_tenant(
        self, tenant: Tenant, topics: tuple[str, ...], run: _Run
    ) -> TenantOutcome:
        result = TenantOutcome(shop=tenant.shop)
        try:
            existing = await tenant.client.list_webhooks()
        except Exception as e:
            logger.error("Webhook listing failed: shop=%s (%s)", tenant.shop, _reason(e))
            existing = None
            result.listing_error = _reason(e)

        specs = self.plan(topics, existing or [], tenant.sales_channel)
        topic_sem = asyncio.Semaphore(max(1, self.config.reconcile_concurrency))

        async def _outcome(spec: DesiredWebhookSpec) -> TopicOutcome:
            if spec.requires_capability_not_held:
                return _logged(tenant, TopicOutcome(
                    spec.topic, OutcomeStatus.SKIPPED, spec.address, reason="capability not held"
                ))
            if existing is None:
                return _logged(tenant, TopicOutcome(
                    spec.topic, OutcomeStatus.FAILED, spec.address, reason=f"listing failed: {result.listing_error}"
                ))
            async with topic_sem:
                if run.cancelled:
                    raise asyncio.CancelledError()
                task = asyncio.ensure_future(self._apply(tenant, spec))
                run.track(task)
                return await asyncio.shield(task)

        result.outcomes = list(await asyncio.gather(*(_outcome(s) for s in specs)))
        return result

    async def _apply(self, tenant: Tenant, spec: DesiredWebhookSpec) -> TopicOutcome:
        """Create or update one subscription and log the outcome.

        The log line is written even when the mutation finishes while a
        cancelled reconcile is draining.
        """
        return _logged(tenant, await self._mutate(tenant, spec))

    async def _mutate(self, tenant: Tenant, spec: DesiredWebhookSpec) -> TopicOutcome:
        """Failures become a FAILED outcome."""
        try:
            if spec.needs_update and spec.existing_id is not None:
                sub = await tenant.client.update_webhook(spec.existing_id, spec.address, WEBHOOK_FORMAT)
                return TopicOutcome(
                    spec.topic, OutcomeStatus.UPDATED, spec.address, webhook_id=sub.id or spec.existing_id
                )
            sub = await tenant.client.create_webhook(spec.topic, spec.address, WEBHOOK_FORMAT)
            return TopicOutcome(spec.topic, OutcomeStatus.CREATED, spec.address, webhook_id=sub.id)
        except Exception as e:
            logger.warning(
                "Webhook %s failed: shop=%s topic=%s (%s)",
                "update" if spec.needs_update else "create",
                tenant.shop,
                spec.topic,
                _reason(e),
            )
            return TopicOutcome(
                spec.topic,
                OutcomeStatus.FAILED,
                spec.address,
                webhook_id=spec.existing_id,
                reason=_reason(e),
            )

    async def prune_duplicates(
        self,
        tenants: list[Tenant],
        topics: list[str] | tuple[str, ...] | None = None,
    ) -> list[PruneOutcome]:
        """Delete all but the first subscription for each duplicated topic.

        Separate from ``reconcile``: only runs when an operator asks for it.
        """
        wanted = set(self.catalog.resolve(topics))
        return list(await asyncio.gather(*(self._prune_tenant(t, wanted) for t in tenants)))

    async def _prune_tenant(self, tenant: Tenant, wanted: set[str]) -> PruneOutcome:
        result = PruneOutcome(shop=tenant.shop)
        try:
            existing = await tenant.client.list_webhooks()
        except Exception as e:
            result.listing_error = _reason(e)
            logger.error("Webhook listing failed: shop=%s (%s)", tenant.shop, result.listing_error)
            return result

        wanted_keys = {topic_key(t) for t in wanted}
        seen: set[str] = set()
        extras: list[WebhookSubscription] = []
        for sub in existing:
            key = topic_key(sub.topic)
            if key not in wanted_keys:
                continue
            if key in seen and sub.id:
                extras.append(sub)
            seen.add(key)

        sem = asyncio.Semaphore(max(1, self.config.reconcile_concurrency))

        async def _delete(sub: WebhookSubscription) -> None:
            async with sem:
                try:
                    await tenant.client.delete_webhook(sub.id)
                    result.deleted.append(sub.id)
                    logger.info("Duplicate webhook deleted: shop=%s topic=%s id=%s", tenant.shop, sub.topic, sub.id)
                except Exception as e:
                    result.failures[sub.id] = _reason(e)
                    logger.warning("Duplicate delete failed: shop=%s id=%s (%s)", tenant.shop, sub.id, _reason(e))

        await asyncio.gather(*(_delete(s) for s in extras))
        return result
