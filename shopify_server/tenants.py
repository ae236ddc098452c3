"""Tenant identity codec — shop identifiers <-> identity-store keys.

A shop is addressed three ways:
- shop name:   ``acme`` (session key, route parameter)
- shop domain: ``acme.myshopify.com`` (API host, signed callback field)
- federated user id: ``shopify:acme_myshopify_com`` (identity-store key)

Identity-store paths can't contain ".", "#", "$", "[", "]" or "/", so dots are
written as underscores. Underscores and colons are not valid in a shop
hostname, so the transform is exactly invertible for every valid identifier.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from shopify_server.errors import InvalidShopError

UID_PREFIX = "shopify:"
PLATFORM_DOMAIN_SUFFIX = ".myshopify.com"

_SHOP_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9\-.]*[A-Za-z0-9])?$")


@dataclass(frozen=True)
class TenantIdentity:
    """Bidirectional mapping between a shop domain and its federated user id."""

    shop: str
    federated_user_id: str

    @property
    def shop_name(self) -> str:
        return shop_name(self.shop)

    @classmethod
    def from_shop(cls, shop: str) -> TenantIdentity:
        domain = shop_domain(shop)
        return cls(shop=domain, federated_user_id=encode(domain))

    @classmethod
    def from_uid(cls, uid: str) -> TenantIdentity:
        return cls(shop=decode(uid), federated_user_id=uid)


def validate_shop(shop: str) -> str:
    """Return ``shop`` lowercased if it is a valid identifier, else raise.

    Hostnames are case-insensitive, so every identifier is folded here and
    ``Acme.myshopify.com`` shares a session and uid with ``acme.myshopify.com``.
    """
    if not shop or not _SHOP_PATTERN.match(shop) or ".." in shop:
        raise InvalidShopError(f"Invalid shop identifier: {shop!r}")
    return shop.lower()


def shop_name(shop: str) -> str:
    """``acme.myshopify.com`` -> ``acme``. A bare name is returned as-is."""
    return validate_shop(shop).split(".", 1)[0]


def shop_domain(shop: str) -> str:
    """``acme`` -> ``acme.myshopify.com``. A value with a dot is already a domain."""
    shop = validate_shop(shop)
    if "." in shop:
        return shop
    return f"{shop}{PLATFORM_DOMAIN_SUFFIX}"


def encode(shop: str) -> str:
    """Derive the federated user id for a shop identifier."""
    return UID_PREFIX + validate_shop(shop).replace(".", "_")


def decode(uid: str) -> str:
    """Invert :func:`encode`."""
    if not uid.startswith(UID_PREFIX):
        raise InvalidShopError(f"Not a shop uid: {uid!r}")
    return validate_shop(uid[len(UID_PREFIX):].replace("_", "."))
