"""
Concurrency Control Service
Per-shop mutual exclusion for catalog syncs plus cooperative cancellation.

Two syncs for the same shop would interleave upserts and double the API
load against Shopify's rate limits, so a second request fails fast with
``SyncInProgress`` instead of queueing. Different shops never block each other.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from services.errors import SyncInProgress
from settings import resolve_shop_id

logger = logging.getLogger(__name__)


class ConcurrencyController:
    """In-process registry of running syncs, keyed by normalized shop id."""

    def __init__(self) -> None:
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def is_running(self, shop_id: str) -> bool:
        return resolve_shop_id(shop_id) in self._cancel_events

    def running_shops(self) -> List[str]:
        return sorted(self._cancel_events)

    @asynccontextmanager
    async def acquire_shop_sync(self, shop_id: str) -> AsyncIterator[asyncio.Event]:
        """
        Hold the shop's sync slot for the duration of the context.

        Yields the cancel event the sync loop must poll between pages.

        Raises:
            SyncInProgress: another sync for this shop holds the slot.
        """
        normalized_shop_id = resolve_shop_id(shop_id)
        # Check-and-set without an await in between, so it is atomic on the event loop
        if normalized_shop_id in self._cancel_events:
            logger.warning(f"Sync already running for shop {normalized_shop_id}; rejecting new request")
            raise SyncInProgress(normalized_shop_id)
        cancel_event = asyncio.Event()
        self._cancel_events[normalized_shop_id] = cancel_event
        logger.info(f"Acquired sync slot for shop {normalized_shop_id}")
        try:
            yield cancel_event
        finally:
            self._cancel_events.pop(normalized_shop_id, None)
            logger.info(f"Released sync slot for shop {normalized_shop_id}")

    def cancel(self, shop_id: str) -> bool:
        """Request cancellation of a running sync. Returns False when none is running."""
        event = self._cancel_events.get(resolve_shop_id(shop_id))
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for shop {resolve_shop_id(shop_id)} sync")
        return True


# Global instance
concurrency_controller = ConcurrencyController()
