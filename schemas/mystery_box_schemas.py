"""
Mystery Box Schemas
===================

Typed data contracts shared by the catalog sync pipeline, the bundle selector
and bundle history.

JSON columns (tags, variants, images, selected items) are parsed into these
dataclasses exactly once, when a row is read from storage. Nothing downstream
of the storage layer touches raw JSON again.

MONEY:
------
All prices are ``Decimal`` quantized to cents. JSON payloads store them as
strings so no precision is lost on the way through JSONB.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, TypedDict
import logging

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Parse a price into a cent-quantized Decimal. Raises ValueError when unparseable."""
    if isinstance(value, Decimal):
        amount = value
    else:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("price is missing")
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"invalid price {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid price {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except ArithmeticError as exc:
        # quantize needs more digits than the context precision allows
        raise ValueError(f"price out of range {value!r}") from exc


def optional_money(value: Any) -> Optional[Decimal]:
    """Like ``to_money`` but maps missing, unparseable and zero amounts to None."""
    if value in (None, "", "null"):
        return None
    try:
        amount = to_money(value)
    except ValueError:
        return None
    return amount if amount > ZERO else None


def _money_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


# =============================================================================
# TYPE DEFINITIONS (JSON shapes stored in the database)
# =============================================================================

class VariantRefDict(TypedDict, total=False):
    external_variant_id: str
    title: str
    price: str
    compare_at_price: Optional[str]
    stock_quantity: int
    sku: str
    inventory_item_id: Optional[str]


class ImageRefDict(TypedDict, total=False):
    id: Optional[str]
    src: str
    alt: Optional[str]


class SelectedItemDict(TypedDict, total=False):
    external_id: str
    title: str
    variant: Optional[VariantRefDict]
    price_at_selection: str
    compare_at_price: Optional[str]


# =============================================================================
# CATALOG
# =============================================================================

@dataclass(frozen=True)
class VariantRef:
    external_variant_id: str
    price: Decimal
    stock_quantity: int = 0
    title: str = ""
    compare_at_price: Optional[Decimal] = None
    sku: str = ""
    inventory_item_id: Optional[str] = None

    @property
    def in_stock(self) -> bool:
        return self.stock_quantity > 0

    def to_dict(self) -> VariantRefDict:
        return {
            "external_variant_id": self.external_variant_id,
            "title": self.title,
            "price": str(self.price),
            "compare_at_price": _money_str(self.compare_at_price),
            "stock_quantity": self.stock_quantity,
            "sku": self.sku,
            "inventory_item_id": self.inventory_item_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariantRef":
        return cls(
            external_variant_id=str(data["external_variant_id"]),
            title=data.get("title") or "",
            price=to_money(data["price"]),
            compare_at_price=optional_money(data.get("compare_at_price")),
            stock_quantity=int(data.get("stock_quantity") or 0),
            sku=data.get("sku") or "",
            inventory_item_id=data.get("inventory_item_id"),
        )


@dataclass(frozen=True)
class ImageRef:
    src: str
    id: Optional[str] = None
    alt: Optional[str] = None

    def to_dict(self) -> ImageRefDict:
        return {"id": self.id, "src": self.src, "alt": self.alt}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRef":
        return cls(src=data.get("src") or "", id=data.get("id"), alt=data.get("alt"))


@dataclass(frozen=True)
class CatalogItemData:
    """One sellable product as the bundle engine sees it."""

    shop_id: str
    external_id: str
    title: str
    price: Decimal
    stock_quantity: int
    is_active: bool = True
    vendor: str = ""
    product_type: str = ""
    tags: FrozenSet[str] = frozenset()
    compare_at_price: Optional[Decimal] = None
    variants: Tuple[VariantRef, ...] = ()
    images: Tuple[ImageRef, ...] = ()
    last_synced_at: Optional[datetime] = None

    def column_values(self) -> Dict[str, Any]:
        """Item-level column values as written to ``catalog_items`` (no timestamps)."""
        return {
            "title": self.title,
            "vendor": self.vendor,
            "product_type": self.product_type,
            "tags": sorted(self.tags),
            "price": self.price,
            "compare_at_price": self.compare_at_price,
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
            "variants": [v.to_dict() for v in self.variants],
            "images": [i.to_dict() for i in self.images],
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "shopId": self.shop_id,
            "externalId": self.external_id,
            "title": self.title,
            "vendor": self.vendor,
            "productType": self.product_type,
            "tags": sorted(self.tags),
            "price": float(self.price),
            "compareAtPrice": float(self.compare_at_price) if self.compare_at_price is not None else None,
            "stockQuantity": self.stock_quantity,
            "isActive": self.is_active,
            "variants": [v.to_dict() for v in self.variants],
            "images": [i.to_dict() for i in self.images],
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
        return payload

    @classmethod
    def from_row(cls, row: Any) -> "CatalogItemData":
        """Build from a ``database.CatalogItem`` row, parsing JSON columns once."""
        return cls(
            shop_id=row.shop_id,
            external_id=row.external_id,
            title=row.title,
            vendor=row.vendor or "",
            product_type=row.product_type or "",
            tags=frozenset(row.tags or ()),
            price=to_money(row.price),
            compare_at_price=optional_money(row.compare_at_price),
            stock_quantity=int(row.stock_quantity or 0),
            is_active=bool(row.is_active),
            variants=tuple(VariantRef.from_dict(v) for v in (row.variants or ())),
            images=tuple(ImageRef.from_dict(i) for i in (row.images or ())),
            last_synced_at=row.last_synced_at,
        )


@dataclass(frozen=True)
class CatalogPage:
    """One page returned by the external catalog API."""
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class ShopCredentials:
    """Opaque tenant credential handed over by the OAuth collaborator."""
    shop_id: str
    access_token: str

    def __repr__(self) -> str:
        return f"ShopCredentials(shop_id={self.shop_id!r}, access_token='***')"


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class SyncReport:
    shop_id: str
    total_fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    pages: int = 0
    truncated: bool = False
    cancelled: bool = False
    fetch_error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome is UpsertOutcome.CREATED:
            self.created += 1
        elif outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("started_at", "finished_at"):
            value = payload.get(key)
            payload[key] = value.isoformat() if value else None
        return payload


# =============================================================================
# TEMPLATES & INSTANCES
# =============================================================================

@dataclass(frozen=True)
class BundleTemplateData:
    """Constraints of a mystery box template."""

    min_value: Decimal
    max_value: Decimal
    min_items: int
    max_items: int
    include_tags: FrozenSet[str] = frozenset()
    exclude_tags: FrozenSet[str] = frozenset()
    include_types: FrozenSet[str] = frozenset()
    exclude_types: FrozenSet[str] = frozenset()
    is_active: bool = True
    id: Optional[str] = None
    shop_id: Optional[str] = None
    name: str = ""
    description: str = ""

    @classmethod
    def from_row(cls, row: Any) -> "BundleTemplateData":
        return cls(
            id=row.id,
            shop_id=row.shop_id,
            name=row.name,
            description=row.description or "",
            min_value=to_money(row.min_value),
            max_value=to_money(row.max_value),
            min_items=int(row.min_items),
            max_items=int(row.max_items),
            include_tags=frozenset(row.include_tags or ()),
            exclude_tags=frozenset(row.exclude_tags or ()),
            include_types=frozenset(row.include_types or ()),
            exclude_types=frozenset(row.exclude_types or ()),
            is_active=bool(row.is_active),
        )


@dataclass(frozen=True)
class SelectedItem:
    external_id: str
    title: str
    price_at_selection: Decimal
    variant: Optional[VariantRef] = None
    compare_at_price: Optional[Decimal] = None

    def to_dict(self) -> SelectedItemDict:
        return {
            "external_id": self.external_id,
            "title": self.title,
            "variant": self.variant.to_dict() if self.variant else None,
            "price_at_selection": str(self.price_at_selection),
            "compare_at_price": _money_str(self.compare_at_price),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectedItem":
        variant = data.get("variant")
        return cls(
            external_id=str(data["external_id"]),
            title=data.get("title") or "",
            price_at_selection=to_money(data["price_at_selection"]),
            variant=VariantRef.from_dict(variant) if variant else None,
            compare_at_price=optional_money(data.get("compare_at_price")),
        )


@dataclass(frozen=True)
class BundleDraft:
    """A selected bundle that has not been persisted yet."""
    template_id: Optional[str]
    shop_id: Optional[str]
    selected_items: Tuple[SelectedItem, ...]
    total_value: Decimal
    item_count: int
    savings: Decimal
    strategy: str = "primary"


class InstanceStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    SOLD = "sold"


ALLOWED_STATUS_TRANSITIONS: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.DRAFT: frozenset({InstanceStatus.PUBLISHED, InstanceStatus.SOLD}),
    InstanceStatus.PUBLISHED: frozenset({InstanceStatus.SOLD}),
    InstanceStatus.SOLD: frozenset(),
}


@dataclass(frozen=True)
class BundleInstanceData:
    id: str
    template_id: str
    shop_id: str
    selected_items: Tuple[SelectedItem, ...]
    total_value: Decimal
    item_count: int
    savings: Decimal
    status: InstanceStatus
    generated_at: Optional[datetime]
    strategy: str = "primary"

    @classmethod
    def from_row(cls, row: Any) -> "BundleInstanceData":
        return cls(
            id=row.id,
            template_id=row.template_id,
            shop_id=row.shop_id,
            selected_items=tuple(SelectedItem.from_dict(i) for i in (row.selected_items or ())),
            total_value=to_money(row.total_value),
            item_count=int(row.item_count),
            savings=to_money(row.savings),
            status=InstanceStatus(row.status),
            generated_at=row.generated_at,
            strategy=row.strategy or "primary",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "templateId": self.template_id,
            "shopId": self.shop_id,
            "selectedItems": [i.to_dict() for i in self.selected_items],
            "totalValue": float(self.total_value),
            "itemCount": self.item_count,
            "savings": float(self.savings),
            "status": self.status.value,
            "strategy": self.strategy,
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
        }


@dataclass(frozen=True)
class NumericRange:
    min: Decimal = ZERO
    max: Decimal = ZERO


@dataclass(frozen=True)
class BundleStatistics:
    count: int = 0
    avg_value: Decimal = ZERO
    avg_items: Decimal = ZERO
    total_value: Decimal = ZERO
    value_range: NumericRange = field(default_factory=NumericRange)
    item_range: NumericRange = field(default_factory=NumericRange)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avgValue": float(self.avg_value),
            "avgItems": float(self.avg_items),
            "totalValue": float(self.total_value),
            "valueRange": {"min": float(self.value_range.min), "max": float(self.value_range.max)},
            "itemRange": {"min": int(self.item_range.min), "max": int(self.item_range.max)},
        }
