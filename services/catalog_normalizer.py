"""
Normalize raw Shopify product payloads into ``CatalogItemData``.

The same function serves bulk sync pages and product webhooks, so both paths
produce identical rows for identical upstream data.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from schemas import CatalogItemData, ImageRef, VariantRef, optional_money, to_money
from services.errors import ItemUpsertError
from utils import sanitize_string

logger = logging.getLogger(__name__)


def parse_tags(raw_tags: Any) -> frozenset:
    """Shopify sends tags as one comma-separated string; webhooks sometimes as a list."""
    if not raw_tags:
        return frozenset()
    if isinstance(raw_tags, str):
        parts: Iterable[Any] = raw_tags.split(",")
    elif isinstance(raw_tags, (list, tuple, set, frozenset)):
        parts = raw_tags
    else:
        return frozenset()
    return frozenset(t for t in (sanitize_string(p, max_length=255) for p in parts) if t)


def _external_id(value: Any) -> Optional[str]:
    text = sanitize_string(value, max_length=255)
    return text or None


def _parse_variant(raw: Dict[str, Any], external_id: str) -> VariantRef:
    variant_id = _external_id(raw.get("id"))
    if not variant_id:
        raise ItemUpsertError("variant is missing an id", external_id=external_id)
    try:
        price = to_money(raw.get("price"))
    except ValueError as exc:
        raise ItemUpsertError(f"variant {variant_id}: {exc}", external_id=external_id) from exc
    if price < 0:
        raise ItemUpsertError(f"variant {variant_id}: negative price {price}", external_id=external_id)

    try:
        stock = int(raw.get("inventory_quantity") or 0)
    except (TypeError, ValueError):
        stock = 0

    inventory_item_id = raw.get("inventory_item_id")
    return VariantRef(
        external_variant_id=variant_id,
        title=sanitize_string(raw.get("title"), max_length=255),
        price=price,
        compare_at_price=optional_money(raw.get("compare_at_price")),
        # Oversold variants report negative inventory; they count as empty
        stock_quantity=max(0, stock),
        sku=sanitize_string(raw.get("sku"), max_length=255),
        inventory_item_id=str(inventory_item_id) if inventory_item_id is not None else None,
    )


def _parse_images(raw_images: Any) -> List[ImageRef]:
    if not isinstance(raw_images, list):
        return []
    images = []
    for raw in raw_images:
        if not isinstance(raw, dict) or not raw.get("src"):
            continue
        image_id = raw.get("id")
        images.append(ImageRef(
            src=str(raw["src"]),
            id=str(image_id) if image_id is not None else None,
            alt=raw.get("alt"),
        ))
    return images


def normalize_raw_item(shop_id: str, raw: Any) -> CatalogItemData:
    """
    Turn one upstream product into a catalog row.

    Raises:
        ItemUpsertError: payload is not an object, has no id, no variants,
            or a variant has a missing/negative price.
    """
    if not isinstance(raw, dict):
        raise ItemUpsertError("product payload is not an object")

    external_id = _external_id(raw.get("id"))
    if not external_id:
        raise ItemUpsertError("product is missing an id")

    raw_variants = raw.get("variants")
    if not isinstance(raw_variants, list) or not raw_variants:
        raise ItemUpsertError("product has no variants", external_id=external_id)

    variants = []
    for raw_variant in raw_variants:
        if not isinstance(raw_variant, dict):
            raise ItemUpsertError("variant payload is not an object", external_id=external_id)
        variants.append(_parse_variant(raw_variant, external_id))

    first = variants[0]
    return CatalogItemData(
        shop_id=shop_id,
        external_id=external_id,
        title=sanitize_string(raw.get("title"), max_length=1000) or f"Product {external_id}",
        vendor=sanitize_string(raw.get("vendor"), max_length=255),
        product_type=sanitize_string(raw.get("product_type"), max_length=255),
        tags=parse_tags(raw.get("tags")),
        price=first.price,
        compare_at_price=first.compare_at_price,
        stock_quantity=sum(v.stock_quantity for v in variants),
        is_active=(raw.get("status") or "active") == "active",
        variants=tuple(variants),
        images=tuple(_parse_images(raw.get("images"))),
    )
