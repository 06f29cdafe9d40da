"""
OAuth state store for the Shopify install flow.

States are single-use and expire after ``ttl_seconds``. The store lives on
``app.state`` and is handed to the auth router; nothing else shares it.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Callable, Dict, Optional, Tuple

from settings import OAUTH_STATE_TTL_SECONDS, resolve_shop_id

logger = logging.getLogger(__name__)


class OAuthStateStore:
    def __init__(
        self,
        ttl_seconds: float = OAUTH_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: Dict[str, Tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self._states)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [state for state, (_, expires_at) in self._states.items() if expires_at <= now]
        for state in expired:
            del self._states[state]
        if expired:
            logger.debug("[oauth] evicted %d expired states", len(expired))

    def issue(self, shop_id: str) -> str:
        self._evict_expired()
        state = secrets.token_urlsafe(24)
        self._states[state] = (resolve_shop_id(shop_id), self._clock() + self.ttl_seconds)
        return state

    def consume(self, state: Optional[str]) -> Optional[str]:
        """Return the shop the state was issued for, or None if unknown/expired/used."""
        self._evict_expired()
        if not state:
            return None
        entry = self._states.pop(state, None)
        return entry[0] if entry else None
