"""
Mystery Box Service
Caller-facing operations: catalog sync, template management, bundle generation
and bundle history. Routers talk to this facade only.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from database import MysteryBox
from schemas import (
    BundleInstanceData,
    BundleStatistics,
    BundleTemplateData,
    InstanceStatus,
    SyncReport,
    UpsertOutcome,
)
from services.bundle_selector import BundleSelector
from services.catalog_sync import CatalogSyncEngine
from services.concurrency_control import ConcurrencyController, concurrency_controller
from services.deadlines import Deadline
from services.errors import (
    FetchFailure,
    ShopNotConnected,
    TemplateInactive,
    TemplateNotFound,
    InstanceNotFound,
)
from services.notifications import notify_bundle_generated, notify_sync_complete
from services.storage import StorageService, storage as default_storage
from services.template_validation import FILTER_FIELDS, build_template_values
from settings import SYNC_DEADLINE_SECONDS, resolve_shop_id

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = ("name", "description", "min_value", "max_value", "min_items", "max_items", "is_active") + FILTER_FIELDS


def template_to_dict(template: MysteryBox) -> Dict[str, Any]:
    return {
        "id": template.id,
        "shopId": template.shop_id,
        "name": template.name,
        "description": template.description,
        "minValue": float(template.min_value),
        "maxValue": float(template.max_value),
        "minItems": template.min_items,
        "maxItems": template.max_items,
        "includeTags": list(template.include_tags or []),
        "excludeTags": list(template.exclude_tags or []),
        "includeProductTypes": list(template.include_types or []),
        "excludeProductTypes": list(template.exclude_types or []),
        "isActive": template.is_active,
        "createdAt": template.created_at.isoformat() if template.created_at else None,
        "updatedAt": template.updated_at.isoformat() if template.updated_at else None,
    }


class MysteryBoxService:
    def __init__(
        self,
        storage: Optional[StorageService] = None,
        selector: Optional[BundleSelector] = None,
        sync_engine: Optional[CatalogSyncEngine] = None,
        concurrency: Optional[ConcurrencyController] = None,
        sync_deadline_seconds: float = SYNC_DEADLINE_SECONDS,
    ) -> None:
        self.storage = storage or default_storage
        self.selector = selector or BundleSelector()
        self.sync_engine = sync_engine or CatalogSyncEngine(self.storage)
        self.concurrency = concurrency or concurrency_controller
        self.sync_deadline_seconds = sync_deadline_seconds

    # ---------- Catalog sync ----------

    async def sync_catalog(self, shop_id: str) -> SyncReport:
        """
        Run a full catalog sync for a connected shop.

        Raises:
            ShopNotConnected: no active credentials for the shop.
            SyncInProgress: a sync for this shop is already running.
            FetchFailure: the first catalog page could not be fetched.
        """
        normalized_shop_id = resolve_shop_id(shop_id)
        credentials = await self.storage.get_shop_credentials(normalized_shop_id)
        if credentials is None:
            raise ShopNotConnected(normalized_shop_id)

        async with self.concurrency.acquire_shop_sync(normalized_shop_id) as cancel_event:
            await self.storage.mark_shop_sync_started(normalized_shop_id)
            try:
                report = await self.sync_engine.sync(
                    credentials,
                    cancel_event=cancel_event,
                    deadline=Deadline(seconds=self.sync_deadline_seconds),
                )
            except FetchFailure as exc:
                logger.error("[sync] catalog sync failed before any page for shop=%s", normalized_shop_id)
                await self.storage.mark_shop_sync_failed(normalized_shop_id, exc.message)
                raise
            await self.storage.mark_shop_sync_completed(normalized_shop_id, report)

        await notify_sync_complete(report)
        return report

    def cancel_sync(self, shop_id: str) -> bool:
        return self.concurrency.cancel(shop_id)

    async def get_sync_status(self, shop_id: str) -> Dict[str, Any]:
        normalized_shop_id = resolve_shop_id(shop_id)
        status = await self.storage.get_shop_sync_status(normalized_shop_id)
        return {
            "shopId": normalized_shop_id,
            "running": self.concurrency.is_running(normalized_shop_id),
            "initialSyncCompleted": bool(status and status.initial_sync_completed),
            "lastSyncStartedAt": status.last_sync_started_at.isoformat() if status and status.last_sync_started_at else None,
            "lastSyncCompletedAt": status.last_sync_completed_at.isoformat() if status and status.last_sync_completed_at else None,
            "lastReport": status.last_report if status else None,
        }

    # ---------- Webhooks ----------

    async def apply_product_webhook(self, shop_id: str, payload: Dict[str, Any]) -> UpsertOutcome:
        return await self.sync_engine.upsert_from_webhook(resolve_shop_id(shop_id), payload)

    async def apply_product_delete(self, shop_id: str, external_id: str) -> bool:
        return await self.sync_engine.delete_item(resolve_shop_id(shop_id), external_id)

    async def apply_inventory_level(self, shop_id: str, inventory_item_id: str, available: int) -> bool:
        updated = await self.storage.apply_inventory_level(shop_id, inventory_item_id, available)
        if not updated:
            logger.info(
                "[webhook] no catalog variant for inventory_item_id=%s shop=%s", inventory_item_id, shop_id
            )
        return updated

    # ---------- Tenant connection ----------

    async def connect_shop(self, shop_id: str, access_token: str) -> None:
        await self.storage.upsert_shop_credentials(shop_id, access_token)
        logger.info("[auth] shop connected shop=%s", resolve_shop_id(shop_id))

    async def disconnect_shop(self, shop_id: str) -> int:
        """Drop the shop's catalog and deactivate its credentials."""
        normalized_shop_id = resolve_shop_id(shop_id)
        if not await self.storage.deactivate_shop(normalized_shop_id):
            raise ShopNotConnected(normalized_shop_id)
        self.concurrency.cancel(normalized_shop_id)
        removed = await self.storage.delete_catalog(normalized_shop_id)
        logger.info("[auth] shop disconnected shop=%s removed_items=%d", normalized_shop_id, removed)
        return removed

    async def uninstall_shop(self, shop_id: str) -> Dict[str, int]:
        self.concurrency.cancel(shop_id)
        return await self.storage.purge_shop(shop_id)

    # ---------- Templates ----------

    async def create_template(self, shop_id: str, config: Dict[str, Any]) -> MysteryBox:
        values = build_template_values(config)
        template = await self.storage.create_template(shop_id, values)
        logger.info("Created mystery box %s for shop %s", template.id, template.shop_id)
        return template

    async def get_template(self, template_id: str, shop_id: Optional[str] = None) -> MysteryBox:
        template = await self.storage.get_template(template_id, shop_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    async def list_templates(self, shop_id: str) -> List[MysteryBox]:
        return await self.storage.list_templates(shop_id)

    async def update_template(
        self, template_id: str, updates: Dict[str, Any], shop_id: Optional[str] = None
    ) -> MysteryBox:
        """Partial edit; the merged result is validated as a whole."""
        existing = await self.get_template(template_id, shop_id)
        merged = {name: getattr(existing, name) for name in TEMPLATE_FIELDS}
        # Explicit nulls from a partial edit leave the stored value untouched
        merged.update({k: v for k, v in updates.items() if k in TEMPLATE_FIELDS and v is not None})
        values = build_template_values(merged)
        template = await self.storage.update_template(template_id, values)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    async def delete_template(self, template_id: str, shop_id: Optional[str] = None) -> None:
        await self.get_template(template_id, shop_id)
        await self.storage.delete_template(template_id)
        logger.info("Deleted mystery box %s", template_id)

    # ---------- Generation & history ----------

    async def _active_template(self, template_id: str, shop_id: Optional[str]) -> BundleTemplateData:
        template = BundleTemplateData.from_row(await self.get_template(template_id, shop_id))
        if not template.is_active:
            raise TemplateInactive(template_id)
        return template

    async def generate_bundle(self, template_id: str, shop_id: Optional[str] = None) -> BundleInstanceData:
        """
        Generate and persist one instance of a mystery box.

        Raises:
            TemplateNotFound / TemplateInactive: unknown or disabled template.
            NoEligibleItems / ConstraintUnsatisfiable: from the selector.
        """
        template = await self._active_template(template_id, shop_id)
        snapshot = await self.storage.load_catalog_snapshot(template.shop_id)
        draft = self.selector.generate(template, snapshot)
        instance = await self.storage.create_bundle_instance(draft)
        logger.info(
            "Generated mystery box instance %s template=%s items=%d total=%s strategy=%s",
            instance.id, template_id, instance.item_count, instance.total_value, instance.strategy,
        )
        await notify_bundle_generated(instance, template.name)
        return instance

    async def preview_eligible(
        self, template_id: str, shop_id: Optional[str] = None, limit: int = 10
    ) -> Dict[str, Any]:
        template = BundleTemplateData.from_row(await self.get_template(template_id, shop_id))
        snapshot = await self.storage.load_catalog_snapshot(template.shop_id)
        eligible = self.selector.eligible_items(template, snapshot)
        return {
            "eligibleCount": len(eligible),
            "items": [item.to_dict() for item in eligible[:max(0, limit)]],
        }

    async def get_statistics(self, template_id: str, shop_id: Optional[str] = None) -> BundleStatistics:
        await self.get_template(template_id, shop_id)
        return await self.storage.bundle_statistics(template_id)

    async def list_instances(
        self, template_id: str, shop_id: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[BundleInstanceData], int]:
        await self.get_template(template_id, shop_id)
        return await self.storage.list_bundle_instances(template_id, page=page, limit=limit)

    async def get_instance(self, instance_id: str, shop_id: Optional[str] = None) -> BundleInstanceData:
        instance = await self.storage.get_bundle_instance(instance_id, shop_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def update_instance_status(
        self, instance_id: str, status: InstanceStatus, shop_id: Optional[str] = None
    ) -> BundleInstanceData:
        instance = await self.storage.update_instance_status(instance_id, status, shop_id)
        logger.info("Instance %s moved to %s", instance_id, status.value)
        return instance


# Global service instance
mystery_box_service = MysteryBoxService()


def get_mystery_box_service() -> MysteryBoxService:
    """FastAPI dependency; tests swap it through ``app.dependency_overrides``."""
    return mystery_box_service
