"""Webhook topic catalog — the static universe of subscribable topics.

Topics are ``resource/action`` strings (``orders/create``). The catalog is an
immutable value built once at startup and passed explicitly to the reconciler
and the webhook routes; construction validates every topic so a malformed
entry fails the process before any request is served.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from shopify_server.errors import InvalidTopicError

WEBHOOK_FORMAT = "json"

# https://shopify.dev/docs/api/admin-rest/latest/resources/webhook
DEFAULT_TOPICS: tuple[str, ...] = (
    "carts/create",
    "carts/update",
    "checkouts/create",
    "checkouts/delete",
    "checkouts/update",
    "collections/create",
    "collections/delete",
    "collections/update",
    "collection_listings/add",
    "collection_listings/remove",
    "collection_listings/update",
    "customers/create",
    "customers/delete",
    "customers/disable",
    "customers/enable",
    "customers/update",
    "customer_groups/create",
    "customer_groups/delete",
    "customer_groups/update",
    "draft_orders/create",
    "draft_orders/delete",
    "draft_orders/update",
    "fulfillments/create",
    "fulfillments/update",
    "fulfillment_events/create",
    "fulfillment_events/delete",
    "orders/cancelled",
    "orders/create",
    "orders/delete",
    "orders/fulfilled",
    "orders/paid",
    "orders/partially_fulfilled",
    "orders/updated",
    "order_transactions/create",
    "products/create",
    "products/delete",
    "products/update",
    "product_listings/add",
    "product_listings/remove",
    "product_listings/update",
    "refunds/create",
    "app/uninstalled",
    "shop/update",
    "themes/create",
    "themes/delete",
    "themes/publish",
    "themes/update",
)

# Listing topics only fire for apps that hold the sales-channel capability.
DEFAULT_CAPABILITY_GATED: frozenset[str] = frozenset(
    {
        "collection_listings/add",
        "collection_listings/remove",
        "collection_listings/update",
        "product_listings/add",
        "product_listings/remove",
        "product_listings/update",
    }
)


def parse_topic(topic: str) -> tuple[str, str]:
    """Split ``resource/action`` into its two parts.

    Raises:
        InvalidTopicError: if the topic does not contain exactly one separator
            or either side is empty.
    """
    if not isinstance(topic, str) or topic.count("/") != 1:
        raise InvalidTopicError(f"Invalid webhook topic: {topic!r}")
    resource, action = topic.split("/", 1)
    if not resource or not action:
        raise InvalidTopicError(f"Invalid webhook topic: {topic!r}")
    return resource, action


def webhook_path(app_name: str, topic: str) -> str:
    """Route path a delivery for ``topic`` is POSTed to."""
    parse_topic(topic)
    return f"/webhook/{app_name}/{topic}"


def webhook_address(base_address: str, app_name: str, topic: str) -> str:
    """Absolute callback URL registered with the platform for ``topic``."""
    return base_address.rstrip("/") + webhook_path(app_name, topic)


def topic_to_enum(topic: str) -> str:
    """``orders/create`` -> ``ORDERS_CREATE`` (GraphQL WebhookSubscriptionTopic)."""
    resource, action = parse_topic(topic)
    return f"{resource}_{action}".upper()


def topic_from_enum(value: str, known: tuple[str, ...] | list[str] = DEFAULT_TOPICS) -> str:
    """Inverse of :func:`topic_to_enum` for topics in ``known``.

    Unknown enum values come back lowercased; :func:`topic_key` still
    matches them against the ``resource/action`` form.
    """
    for topic in known:
        if topic_to_enum(topic) == value:
            return topic
    return value.lower()


def topic_key(topic: str) -> str:
    """Comparison key shared by ``orders/create``, ``ORDERS_CREATE`` and ``orders_create``."""
    try:
        return topic_to_enum(topic)
    except InvalidTopicError:
        return str(topic).upper()


@dataclass(frozen=True)
class WebhookCatalog:
    """Immutable set of supported topics plus the capability-gated subset."""

    topics: tuple[str, ...] = DEFAULT_TOPICS
    capability_gated: frozenset[str] = field(default=DEFAULT_CAPABILITY_GATED)

    def __post_init__(self) -> None:
        for topic in self.topics:
            parse_topic(topic)
        for topic in self.capability_gated:
            parse_topic(topic)
        if len(set(self.topics)) != len(self.topics):
            raise InvalidTopicError("Duplicate topics in webhook catalog")

    def __contains__(self, topic: object) -> bool:
        return topic in self.topics

    def __iter__(self):
        return iter(self.topics)

    def __len__(self) -> int:
        return len(self.topics)

    def requires_capability(self, topic: str) -> bool:
        return topic in self.capability_gated

    def resolve(self, topics: list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
        """Desired topic set: ``topics`` validated, or the full catalog if empty.

        Raises:
            InvalidTopicError: for a malformed topic or one outside the catalog.
        """
        if not topics:
            return self.topics
        resolved: list[str] = []
        for topic in topics:
            parse_topic(topic)
            if topic not in self.topics:
                raise InvalidTopicError(f"Webhook topic not in catalog: {topic!r}")
            if topic not in resolved:
                resolved.append(topic)
        return tuple(resolved)

    def routes(self) -> list[tuple[str, str, str]]:
        """``(topic, resource, action)`` for every catalog topic."""
        return [(topic, *parse_topic(topic)) for topic in self.topics]

    def topic_from_enum(self, value: str) -> str:
        return topic_from_enum(value, self.topics)
