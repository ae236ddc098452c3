"""Operator-side view of installed shops.

Lists every shop that completed the bridge (has an access token stored under
``/{token_namespace}``) so operator jobs can build tenants for
reconciliation. Not exposed over public HTTP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from shopify_server.config import ShopifyAppConfig
from shopify_server.errors import InvalidShopError
from shopify_server.identity import IdentityProvider
from shopify_server.tenants import TenantIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstalledShop:
    uid: str
    shop: str
    shop_name: str
    access_token: str


async def list_installed_shops(
    provider: IdentityProvider, config: ShopifyAppConfig
) -> list[InstalledShop]:
    """Return all shops with a stored access token, sorted by shop domain.

    Keys that do not decode to a shop identifier are skipped with a warning.
    """
    values = await provider.get_value(f"/{config.token_namespace}") or {}
    shops: list[InstalledShop] = []
    for uid, access_token in values.items():
        try:
            identity = TenantIdentity.from_uid(uid)
        except InvalidShopError:
            logger.warning("Skipping unrecognized identity-store key: %s", uid)
            continue
        if not access_token:
            continue
        shops.append(
            InstalledShop(
                uid=uid,
                shop=identity.shop,
                shop_name=identity.shop_name,
                access_token=str(access_token),
            )
        )
    shops.sort(key=lambda s: s.shop)
    logger.info("Installed shops: %d", len(shops))
    return shops
