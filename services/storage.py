"""
Storage Service Layer
Catalog store, mystery box templates, bundle history and sync bookkeeping.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, delete, func, desc, or_
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Dict, Any, Tuple
import logging
from datetime import datetime
from decimal import Decimal
from dataclasses import replace

from database import (
    AsyncSessionLocal, Shop, CatalogItem, MysteryBox, BoxInstance, ShopSyncStatus
)
from schemas import (
    ALLOWED_STATUS_TRANSITIONS,
    BundleDraft,
    BundleInstanceData,
    BundleStatistics,
    CatalogItemData,
    InstanceStatus,
    NumericRange,
    ShopCredentials,
    SyncReport,
    UpsertOutcome,
    VariantRef,
)
from schemas.mystery_box_schemas import CENT, ZERO
from services.errors import InstanceNotFound, InvalidStatusTransition
from settings import resolve_shop_id, sanitize_shop_id
from utils import retry_async

logger = logging.getLogger(__name__)

# Price floor for selection; free products never go into a box
MIN_ELIGIBLE_PRICE = Decimal("0.01")


def _as_decimal(value: Any, places: Decimal = CENT) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(places)


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self._session_factory()

    # ---------- Shops ----------

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        async with self.get_session() as session:
            return await session.get(Shop, resolve_shop_id(shop_id))

    async def get_shop_credentials(self, shop_id: str) -> Optional[ShopCredentials]:
        """Credentials of an active, connected shop or None."""
        shop = await self.get_shop(shop_id)
        if not shop or not shop.is_active or not shop.access_token:
            return None
        return ShopCredentials(shop_id=shop.shop_id, access_token=shop.access_token)

    async def upsert_shop_credentials(self, shop_id: str, access_token: str) -> Shop:
        normalized_shop_id = resolve_shop_id(shop_id)
        async with self.get_session() as session:
            shop = await session.get(Shop, normalized_shop_id)
            if not shop:
                shop = Shop(shop_id=normalized_shop_id, access_token=access_token, is_active=True)
                session.add(shop)
            else:
                shop.access_token = access_token
                shop.is_active = True
            await session.commit()
            await session.refresh(shop)
            return shop

    async def deactivate_shop(self, shop_id: str) -> bool:
        async with self.get_session() as session:
            shop = await session.get(Shop, resolve_shop_id(shop_id))
            if not shop:
                return False
            shop.is_active = False
            shop.access_token = None
            await session.commit()
            return True

    async def purge_shop(self, shop_id: str) -> Dict[str, int]:
        """Remove every row that belongs to a shop (app uninstall)."""
        normalized_shop_id = resolve_shop_id(shop_id)
        counts: Dict[str, int] = {}
        async with self.get_session() as session:
            for name, model in (
                ("box_instances", BoxInstance),
                ("mystery_boxes", MysteryBox),
                ("catalog_items", CatalogItem),
                ("shop_sync_status", ShopSyncStatus),
                ("shops", Shop),
            ):
                result = await session.execute(delete(model).where(model.shop_id == normalized_shop_id))
                counts[name] = result.rowcount or 0
            await session.commit()
        logger.info("[storage] purged shop=%s counts=%s", normalized_shop_id, counts)
        return counts

    # ---------- Catalog ----------

    async def upsert_catalog_item(
        self, item: CatalogItemData, synced_at: Optional[datetime] = None
    ) -> UpsertOutcome:
        """Insert or update one catalog row keyed by (shop_id, external_id).

        A row whose item-level fields already match only gets ``last_synced_at`` bumped
        and is reported as UNCHANGED.
        """
        synced_at = synced_at or datetime.utcnow()
        try:
            return await self._upsert_catalog_item_once(item, synced_at)
        except IntegrityError:
            # Lost an insert race against a concurrent writer (webhook vs bulk sync); the row exists now
            logger.info(
                "[storage] concurrent insert for shop=%s external_id=%s, retrying as update",
                item.shop_id, item.external_id,
            )
            return await self._upsert_catalog_item_once(item, synced_at)

    async def _upsert_catalog_item_once(self, item: CatalogItemData, synced_at: datetime) -> UpsertOutcome:
        values = item.column_values()
        async with self.get_session() as session:
            result = await session.execute(
                select(CatalogItem).where(
                    CatalogItem.shop_id == item.shop_id,
                    CatalogItem.external_id == item.external_id,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                session.add(CatalogItem(
                    shop_id=item.shop_id,
                    external_id=item.external_id,
                    last_synced_at=synced_at,
                    **values,
                ))
                outcome = UpsertOutcome.CREATED
            elif CatalogItemData.from_row(existing).column_values() == values:
                existing.last_synced_at = synced_at
                outcome = UpsertOutcome.UNCHANGED
            else:
                for key, value in values.items():
                    setattr(existing, key, value)
                existing.last_synced_at = synced_at
                outcome = UpsertOutcome.UPDATED
            await session.commit()
            return outcome

    async def delete_catalog_item(self, shop_id: str, external_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                delete(CatalogItem).where(
                    CatalogItem.shop_id == resolve_shop_id(shop_id),
                    CatalogItem.external_id == str(external_id),
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def delete_catalog(self, shop_id: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                delete(CatalogItem).where(CatalogItem.shop_id == resolve_shop_id(shop_id))
            )
            await session.commit()
            return result.rowcount or 0

    async def apply_inventory_level(self, shop_id: str, inventory_item_id: str, available: int) -> bool:
        """Set one variant's stock (single-location shops) and recompute the item total."""
        normalized_shop_id = resolve_shop_id(shop_id)
        inventory_item_id = str(inventory_item_id)
        async with self.get_session() as session:
            result = await session.execute(
                select(CatalogItem).where(CatalogItem.shop_id == normalized_shop_id)
            )
            for row in result.scalars():
                variants = [VariantRef.from_dict(v) for v in (row.variants or [])]
                if not any(v.inventory_item_id == inventory_item_id for v in variants):
                    continue
                updated = [
                    replace(v, stock_quantity=max(0, int(available)))
                    if v.inventory_item_id == inventory_item_id else v
                    for v in variants
                ]
                row.variants = [v.to_dict() for v in updated]
                row.stock_quantity = sum(v.stock_quantity for v in updated)
                await session.commit()
                return True
        return False

    @retry_async(max_retries=2, base_delay=0.25)
    async def load_catalog_snapshot(self, shop_id: str, eligible_only: bool = True) -> List[CatalogItemData]:
        """Point-in-time read of a shop's catalog in one SELECT."""
        query = select(CatalogItem).where(CatalogItem.shop_id == resolve_shop_id(shop_id))
        if eligible_only:
            query = query.where(
                CatalogItem.is_active.is_(True),
                CatalogItem.stock_quantity > 0,
                CatalogItem.price >= MIN_ELIGIBLE_PRICE,
            )
        query = query.order_by(CatalogItem.price, CatalogItem.external_id)
        async with self.get_session() as session:
            result = await session.execute(query)
            return [CatalogItemData.from_row(row) for row in result.scalars().all()]

    async def get_catalog_item(self, shop_id: str, external_id: str) -> Optional[CatalogItemData]:
        async with self.get_session() as session:
            result = await session.execute(
                select(CatalogItem).where(
                    CatalogItem.shop_id == resolve_shop_id(shop_id),
                    CatalogItem.external_id == str(external_id),
                )
            )
            row = result.scalar_one_or_none()
            return CatalogItemData.from_row(row) if row else None

    async def list_catalog_items(
        self,
        shop_id: str,
        page: int = 1,
        limit: int = 50,
        search: Optional[str] = None,
        product_type: Optional[str] = None,
    ) -> Tuple[List[CatalogItemData], int]:
        conditions = [CatalogItem.shop_id == resolve_shop_id(shop_id)]
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(
                func.lower(CatalogItem.title).like(pattern),
                func.lower(CatalogItem.vendor).like(pattern),
                func.lower(CatalogItem.product_type).like(pattern),
            ))
        if product_type:
            conditions.append(func.lower(CatalogItem.product_type).like(f"%{product_type.lower()}%"))

        async with self.get_session() as session:
            total = (await session.execute(
                select(func.count(CatalogItem.id)).where(*conditions)
            )).scalar() or 0
            result = await session.execute(
                select(CatalogItem)
                .where(*conditions)
                .order_by(desc(CatalogItem.updated_at), CatalogItem.external_id)
                .offset(max(0, page - 1) * limit)
                .limit(limit)
            )
            return [CatalogItemData.from_row(row) for row in result.scalars().all()], total

    async def catalog_statistics(self, shop_id: str) -> Dict[str, Any]:
        normalized_shop_id = resolve_shop_id(shop_id)
        shop_filter = CatalogItem.shop_id == normalized_shop_id
        async with self.get_session() as session:
            totals = (await session.execute(
                select(
                    func.count(CatalogItem.id),
                    func.max(CatalogItem.last_synced_at),
                ).where(shop_filter)
            )).one()
            active = (await session.execute(
                select(
                    func.count(CatalogItem.id),
                    func.min(CatalogItem.price),
                    func.max(CatalogItem.price),
                    func.avg(CatalogItem.price),
                ).where(shop_filter, CatalogItem.is_active.is_(True))
            )).one()
            in_stock = (await session.execute(
                select(func.count(CatalogItem.id)).where(
                    shop_filter, CatalogItem.is_active.is_(True), CatalogItem.stock_quantity > 0
                )
            )).scalar() or 0

        return {
            "totalProducts": totals[0] or 0,
            "availableProducts": active[0] or 0,
            "inStockProducts": in_stock,
            "productTypes": await self.list_distinct(normalized_shop_id, "product_type"),
            "vendors": await self.list_distinct(normalized_shop_id, "vendor"),
            "priceRange": {
                "min": float(_as_decimal(active[1])),
                "max": float(_as_decimal(active[2])),
                "average": float(_as_decimal(active[3])),
            },
            "lastSync": totals[1].isoformat() if totals[1] else None,
        }

    async def list_distinct(self, shop_id: str, column: str, search: Optional[str] = None) -> List[str]:
        """Sorted distinct non-empty values of ``product_type`` or ``vendor``."""
        attr = {"product_type": CatalogItem.product_type, "vendor": CatalogItem.vendor}[column]
        query = select(attr).where(
            CatalogItem.shop_id == resolve_shop_id(shop_id), attr.is_not(None), attr != ""
        ).distinct()
        if search:
            query = query.where(func.lower(attr).like(f"%{search.lower()}%"))
        async with self.get_session() as session:
            result = await session.execute(query)
            return sorted(value for value in result.scalars().all() if value)

    async def list_tags(self, shop_id: str, search: Optional[str] = None) -> List[str]:
        async with self.get_session() as session:
            result = await session.execute(
                select(CatalogItem.tags).where(CatalogItem.shop_id == resolve_shop_id(shop_id))
            )
            needle = search.lower() if search else None
            tags = {
                tag
                for row_tags in result.scalars().all()
                for tag in (row_tags or [])
                if tag and (needle is None or needle in tag.lower())
            }
        return sorted(tags)

    # ---------- Shop sync status ----------

    async def get_shop_sync_status(self, shop_id: str) -> Optional[ShopSyncStatus]:
        """Retrieve sync status for a shop."""
        async with self.get_session() as session:
            return await session.get(ShopSyncStatus, resolve_shop_id(shop_id))

    async def mark_shop_sync_started(self, shop_id: str) -> ShopSyncStatus:
        """Upsert sync status when a catalog sync begins."""
        normalized_shop_id = resolve_shop_id(shop_id)
        async with self.get_session() as session:
            status = await session.get(ShopSyncStatus, normalized_shop_id)
            now = datetime.utcnow()
            if not status:
                status = ShopSyncStatus(
                    shop_id=normalized_shop_id,
                    initial_sync_completed=False,
                    last_sync_started_at=now,
                )
                session.add(status)
            else:
                status.last_sync_started_at = now
            await session.commit()
            await session.refresh(status)
            return status

    async def mark_shop_sync_completed(self, shop_id: str, report: SyncReport) -> ShopSyncStatus:
        """Record the finished run and its report."""
        normalized_shop_id = resolve_shop_id(shop_id)
        async with self.get_session() as session:
            status = await session.get(ShopSyncStatus, normalized_shop_id)
            now = datetime.utcnow()
            if not status:
                status = ShopSyncStatus(shop_id=normalized_shop_id)
                session.add(status)
            # A cancelled or truncated run still leaves a usable catalog
            status.initial_sync_completed = True
            status.last_sync_completed_at = now
            status.last_report = report.to_dict()
            await session.commit()
            await session.refresh(status)
            return status

    async def mark_shop_sync_failed(self, shop_id: str, error: str) -> ShopSyncStatus:
        """Record a run that failed before any page was stored."""
        normalized_shop_id = resolve_shop_id(shop_id)
        async with self.get_session() as session:
            status = await session.get(ShopSyncStatus, normalized_shop_id)
            if not status:
                status = ShopSyncStatus(shop_id=normalized_shop_id, initial_sync_completed=False)
                session.add(status)
            status.last_report = {
                "shop_id": normalized_shop_id,
                "fetch_error": error,
                "failed_at": datetime.utcnow().isoformat(),
            }
            await session.commit()
            await session.refresh(status)
            return status

    # ---------- Templates ----------

    async def create_template(self, shop_id: str, values: Dict[str, Any]) -> MysteryBox:
        async with self.get_session() as session:
            template = MysteryBox(shop_id=resolve_shop_id(shop_id), **values)
            session.add(template)
            await session.commit()
            await session.refresh(template)
            return template

    async def get_template(self, template_id: str, shop_id: Optional[str] = None) -> Optional[MysteryBox]:
        async with self.get_session() as session:
            template = await session.get(MysteryBox, template_id)
            if template and shop_id and template.shop_id != sanitize_shop_id(shop_id):
                return None
            return template

    async def list_templates(self, shop_id: str) -> List[MysteryBox]:
        async with self.get_session() as session:
            result = await session.execute(
                select(MysteryBox)
                .where(MysteryBox.shop_id == resolve_shop_id(shop_id))
                .order_by(desc(MysteryBox.created_at))
            )
            return list(result.scalars().all())

    async def update_template(self, template_id: str, updates: Dict[str, Any]) -> Optional[MysteryBox]:
        async with self.get_session() as session:
            template = await session.get(MysteryBox, template_id)
            if not template:
                return None
            for key, value in updates.items():
                setattr(template, key, value)
            await session.commit()
            await session.refresh(template)
            return template

    async def delete_template(self, template_id: str) -> bool:
        """Delete a template and its instances."""
        async with self.get_session() as session:
            await session.execute(delete(BoxInstance).where(BoxInstance.template_id == template_id))
            result = await session.execute(delete(MysteryBox).where(MysteryBox.id == template_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Bundle history ----------

    async def create_bundle_instance(self, draft: BundleDraft) -> BundleInstanceData:
        async with self.get_session() as session:
            instance = BoxInstance(
                template_id=draft.template_id,
                shop_id=draft.shop_id,
                selected_items=[item.to_dict() for item in draft.selected_items],
                total_value=draft.total_value,
                item_count=draft.item_count,
                savings=draft.savings,
                strategy=draft.strategy,
                status=InstanceStatus.DRAFT.value,
                generated_at=datetime.utcnow(),
            )
            session.add(instance)
            await session.commit()
            await session.refresh(instance)
            return BundleInstanceData.from_row(instance)

    async def get_bundle_instance(
        self, instance_id: str, shop_id: Optional[str] = None
    ) -> Optional[BundleInstanceData]:
        async with self.get_session() as session:
            instance = await session.get(BoxInstance, instance_id)
            if not instance or (shop_id and instance.shop_id != sanitize_shop_id(shop_id)):
                return None
            return BundleInstanceData.from_row(instance)

    async def list_bundle_instances(
        self, template_id: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[BundleInstanceData], int]:
        async with self.get_session() as session:
            total = (await session.execute(
                select(func.count(BoxInstance.id)).where(BoxInstance.template_id == template_id)
            )).scalar() or 0
            result = await session.execute(
                select(BoxInstance)
                .where(BoxInstance.template_id == template_id)
                .order_by(desc(BoxInstance.generated_at), desc(BoxInstance.id))
                .offset(max(0, page - 1) * limit)
                .limit(limit)
            )
            return [BundleInstanceData.from_row(row) for row in result.scalars().all()], total

    async def update_instance_status(
        self, instance_id: str, status: InstanceStatus, shop_id: Optional[str] = None
    ) -> BundleInstanceData:
        """Advance an instance's status; only forward transitions are allowed."""
        async with self.get_session() as session:
            instance = await session.get(BoxInstance, instance_id)
            if not instance or (shop_id and instance.shop_id != sanitize_shop_id(shop_id)):
                raise InstanceNotFound(instance_id)
            current = InstanceStatus(instance.status)
            if status not in ALLOWED_STATUS_TRANSITIONS[current]:
                raise InvalidStatusTransition(current.value, status.value)
            instance.status = status.value
            instance.status_updated_at = datetime.utcnow()
            await session.commit()
            await session.refresh(instance)
            return BundleInstanceData.from_row(instance)

    async def bundle_statistics(self, template_id: str) -> BundleStatistics:
        """Aggregate all instances of a template in one query."""
        async with self.get_session() as session:
            row = (await session.execute(
                select(
                    func.count(BoxInstance.id),
                    func.sum(BoxInstance.total_value),
                    func.avg(BoxInstance.total_value),
                    func.avg(BoxInstance.item_count),
                    func.min(BoxInstance.total_value),
                    func.max(BoxInstance.total_value),
                    func.min(BoxInstance.item_count),
                    func.max(BoxInstance.item_count),
                ).where(BoxInstance.template_id == template_id)
            )).one()

        count = row[0] or 0
        if count == 0:
            return BundleStatistics()
        return BundleStatistics(
            count=count,
            total_value=_as_decimal(row[1]),
            avg_value=_as_decimal(row[2]),
            avg_items=_as_decimal(row[3]),
            value_range=NumericRange(min=_as_decimal(row[4]), max=_as_decimal(row[5])),
            item_range=NumericRange(min=Decimal(int(row[6])), max=Decimal(int(row[7]))),
        )

# Global storage instance
storage = StorageService()
