"""
Catalog Sync Engine
Pulls a shop's product catalog page by page and upserts it into the catalog store.

Partial failure is the normal case: a malformed product or a failed write is
logged and counted, never allowed to abort the page or the run.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from schemas import ShopCredentials, SyncReport, UpsertOutcome
from services.catalog_normalizer import normalize_raw_item
from services.deadlines import Deadline
from services.errors import FetchFailure, ItemUpsertError
from services.shopify_client import CatalogPageFetcher, ShopifyCatalogClient
from services.storage import StorageService
from settings import SYNC_MAX_PAGES

logger = logging.getLogger(__name__)

FetcherFactory = Callable[[ShopCredentials], CatalogPageFetcher]


class CatalogSyncEngine:
    def __init__(
        self,
        storage: StorageService,
        fetcher_factory: FetcherFactory = ShopifyCatalogClient,
        max_pages: int = SYNC_MAX_PAGES,
    ) -> None:
        self.storage = storage
        self.fetcher_factory = fetcher_factory
        self.max_pages = max_pages

    async def sync(
        self,
        credentials: ShopCredentials,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[Deadline] = None,
    ) -> SyncReport:
        """
        Run one full catalog sync for a shop.

        Raises:
            FetchFailure: the first page could not be fetched. Failures on later
                pages end the run with ``truncated=True`` and ``fetch_error`` set.
        """
        shop_id = credentials.shop_id
        fetcher = self.fetcher_factory(credentials)
        report = SyncReport(shop_id=shop_id, started_at=datetime.utcnow())
        cursor: Optional[str] = None

        logger.info("[sync] starting catalog sync shop=%s max_pages=%d", shop_id, self.max_pages)
        while True:
            try:
                page = await asyncio.to_thread(fetcher.fetch_page, cursor)
            except FetchFailure as exc:
                if report.pages == 0:
                    logger.error("[sync] first page failed shop=%s: %s", shop_id, exc)
                    raise
                logger.warning(
                    "[sync] page %d failed shop=%s, keeping %d fetched items: %s",
                    report.pages + 1, shop_id, report.total_fetched, exc,
                )
                report.truncated = True
                report.fetch_error = exc.message
                break

            report.pages += 1
            report.total_fetched += len(page.items)
            synced_at = datetime.utcnow()
            for raw in page.items:
                await self._upsert_one(shop_id, raw, synced_at, report)

            if not page.next_cursor:
                break
            if report.pages >= self.max_pages:
                logger.warning(
                    "[sync] page ceiling %d reached shop=%s; catalog truncated",
                    self.max_pages, shop_id,
                )
                report.truncated = True
                break
            if (cancel_event is not None and cancel_event.is_set()) or (deadline is not None and deadline.expired):
                logger.warning("[sync] cancelled after page %d shop=%s", report.pages, shop_id)
                report.cancelled = True
                break
            cursor = page.next_cursor

        report.finished_at = datetime.utcnow()
        logger.info(
            "[sync] finished shop=%s pages=%d fetched=%d created=%d updated=%d unchanged=%d errors=%d",
            shop_id, report.pages, report.total_fetched, report.created,
            report.updated, report.unchanged, report.errors,
        )
        return report

    async def _upsert_one(self, shop_id: str, raw, synced_at: datetime, report: SyncReport) -> None:
        try:
            outcome = await self.upsert_raw_item(shop_id, raw, synced_at)
        except ItemUpsertError as exc:
            logger.warning("[sync] skipping item shop=%s external_id=%s: %s", shop_id, exc.external_id, exc)
            report.errors += 1
            return
        except Exception as exc:
            logger.error(
                "[sync] unexpected error for item shop=%s: %s", shop_id, exc, exc_info=True,
            )
            report.errors += 1
            return
        report.record(outcome)

    async def upsert_raw_item(
        self, shop_id: str, raw, synced_at: Optional[datetime] = None
    ) -> UpsertOutcome:
        """Normalize and store one upstream product. Shared by bulk sync and webhooks."""
        item = normalize_raw_item(shop_id, raw)
        try:
            return await self.storage.upsert_catalog_item(item, synced_at)
        except SQLAlchemyError as exc:
            logger.error("[sync] store write failed shop=%s external_id=%s: %s", shop_id, item.external_id, exc)
            raise ItemUpsertError(f"store write failed: {exc}", external_id=item.external_id) from exc

    async def upsert_from_webhook(self, shop_id: str, raw) -> UpsertOutcome:
        outcome = await self.upsert_raw_item(shop_id, raw)
        logger.info("[webhook] product upsert shop=%s outcome=%s", shop_id, outcome.value)
        return outcome

    async def delete_item(self, shop_id: str, external_id: str) -> bool:
        deleted = await self.storage.delete_catalog_item(shop_id, external_id)
        logger.info("[webhook] product delete shop=%s external_id=%s deleted=%s", shop_id, external_id, deleted)
        return deleted
