"""Operator CLI for webhook reconciliation.

Usage:
    shopify-server reconcile [--topic orders/create ...] [--shop acme ...]
    shopify-server prune-duplicates [--topic ...] [--shop ...]
    shopify-server topics
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import httpx

from shopify_server.admin import InstalledShop, list_installed_shops
from shopify_server.app import build_identity_provider
from shopify_server.config import Settings
from shopify_server.errors import ShopifyServerError
from shopify_server.reconciler import Tenant, WebhookReconciler
from shopify_server.shopify_api import ShopifyAdminClient
from shopify_server.tenants import shop_name

logger = logging.getLogger(__name__)


def _select(shops: list[InstalledShop], wanted: list[str] | None) -> list[InstalledShop]:
    if not wanted:
        return shops
    names = {shop_name(s) for s in wanted}
    return [s for s in shops if s.shop_name in names]


async def _run(args: argparse.Namespace) -> int:
    settings = Settings()
    config = settings.app_config()
    topics = config.catalog.resolve(args.topic)

    async with httpx.AsyncClient(timeout=config.http_timeout) as http:
        provider = build_identity_provider(settings, http)
        shops = _select(await list_installed_shops(provider, config), args.shop)
        if not shops:
            print("No installed shops matched.", file=sys.stderr)
            return 1

        tenants = [
            Tenant(
                shop=s.shop,
                client=ShopifyAdminClient(
                    s.shop,
                    s.access_token,
                    config.api_version,
                    http_client=http,
                    known_topics=config.catalog.topics,
                ),
                sales_channel=args.sales_channel,
            )
            for s in shops
        ]
        reconciler = WebhookReconciler(config)

        if args.command == "prune-duplicates":
            pruned = await reconciler.prune_duplicates(tenants, topics)
            print(json.dumps([p.to_dict() for p in pruned], indent=2))
            return 0 if all(not p.failures and not p.listing_error for p in pruned) else 1

        outcomes = await reconciler.reconcile(topics, tenants)
        print(json.dumps([o.to_dict() for o in outcomes], indent=2))
        return 0 if all(o.ok for o in outcomes) else 1


def cmd_topics(args: argparse.Namespace) -> int:
    """Print the topic catalog, marking capability-gated topics."""
    catalog = Settings().app_config().catalog
    for topic in catalog:
        marker = "  (capability)" if catalog.requires_capability(topic) else ""
        print(f"{topic}{marker}")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="shopify-server",
        description="Shopify server operator tooling",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("reconcile", "Create/update webhook subscriptions for installed shops"),
        ("prune-duplicates", "Delete duplicate subscriptions, keeping the first per topic"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--topic", action="append", help="Topic to include (repeatable; default: catalog)")
        p.add_argument("--shop", action="append", help="Shop name or domain (repeatable; default: all)")
        p.add_argument(
            "--sales-channel",
            action="store_true",
            help="Shops hold the sales-channel capability (listing topics are not skipped)",
        )

    sub.add_parser("topics", help="List the webhook topic catalog")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "topics":
        sys.exit(cmd_topics(args))

    try:
        sys.exit(asyncio.run(_run(args)))
    except ValueError as e:
        # Bad topic or shop arguments, missing settings
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)
    except ShopifyServerError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
