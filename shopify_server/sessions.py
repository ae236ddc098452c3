"""Tenant session ledger — typed per-(app, shop) records over a keyed store.

The hosting layer supplies the store (Starlette's ``request.session`` in the
web app, a plain dict in jobs and tests). Records are kept as plain dicts under
the composite key ``"{app_name}:{shop_name}"`` so cookie-backed sessions can
serialize them.

Security contract:
- A nonce matches at most once; it is cleared after a successful callback
- The federated token can only be recorded after the platform token
- Records for one tenant key are never written through another key
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import MutableMapping
from dataclasses import asdict, dataclass, fields
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TenantSession:
    """OAuth/bridge state for one tenant."""

    state_nonce: str | None = None
    platform_access_token: str | None = None
    federated_token: str | None = None
    federated_user_id: str | None = None

    @property
    def has_platform_token(self) -> bool:
        return bool(self.platform_access_token)

    @property
    def has_federated_token(self) -> bool:
        return bool(self.federated_token)

    def set_federated_token(self, token: str, user_id: str) -> None:
        if not self.platform_access_token:
            raise ValueError("Federated token requires a platform access token")
        self.federated_token = token
        self.federated_user_id = user_id

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TenantSession:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def session_key(app_name: str, shop_name: str) -> str:
    return f"{app_name}:{shop_name}"


class SessionLedger:
    """Typed view over the hosting session's keyed store."""

    def __init__(self, store: MutableMapping[str, Any]):
        self._store = store

    def get(self, app_name: str, shop_name: str) -> TenantSession | None:
        """Return the tenant's session, or None if none was ever created."""
        raw = self._store.get(session_key(app_name, shop_name))
        if not isinstance(raw, dict):
            return None
        return TenantSession.from_dict(raw)

    def get_or_create(self, app_name: str, shop_name: str) -> TenantSession:
        session = self.get(app_name, shop_name)
        if session is None:
            session = TenantSession()
            self.save(app_name, shop_name, session)
            logger.debug("Tenant session created: %s:%s", app_name, shop_name)
        return session

    def save(self, app_name: str, shop_name: str, session: TenantSession) -> None:
        self._store[session_key(app_name, shop_name)] = session.to_dict()

    def set_state(self, app_name: str, shop_name: str, nonce: str) -> None:
        """Store a fresh nonce, replacing any in-flight one."""
        session = self.get_or_create(app_name, shop_name)
        if session.state_nonce:
            logger.info("Replacing in-flight OAuth state for %s:%s", app_name, shop_name)
        session.state_nonce = nonce
        self.save(app_name, shop_name, session)

    def state_matches(self, app_name: str, shop_name: str, state: str | None) -> bool:
        """True only if a nonce is stored and equals ``state``."""
        session = self.get(app_name, shop_name)
        if session is None or not session.state_nonce or not state:
            return False
        return hmac.compare_digest(session.state_nonce.encode(), state.encode())

    def complete_handshake(self, app_name: str, shop_name: str, access_token: str) -> TenantSession:
        """Record the platform token and invalidate the nonce."""
        session = self.get_or_create(app_name, shop_name)
        session.platform_access_token = access_token
        session.state_nonce = None
        # Tokens minted for a previous handshake no longer apply.
        session.federated_token = None
        self.save(app_name, shop_name, session)
        return session

    def record_federated_token(
        self, app_name: str, shop_name: str, token: str, user_id: str
    ) -> TenantSession:
        session = self.get_or_create(app_name, shop_name)
        session.set_federated_token(token, user_id)
        self.save(app_name, shop_name, session)
        return session

    def federated_token(self, app_name: str, shop_name: str) -> str | None:
        session = self.get(app_name, shop_name)
        if session is None or not session.has_federated_token:
            return None
        return session.federated_token
