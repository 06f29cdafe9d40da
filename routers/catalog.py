"""
Catalog endpoints
Catalog sync control plus read-only views over the synced products.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from services.mystery_box_service import MysteryBoxService, get_mystery_box_service
from settings import sanitize_shop_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/catalog", tags=["catalog"])


def require_shop(shop: Optional[str] = Query(None)) -> str:
    shop_id = sanitize_shop_id(shop)
    if not shop_id:
        raise HTTPException(status_code=400, detail="Shop parameter is required")
    return shop_id


@router.post("/sync")
async def sync_catalog(
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    """Run a full catalog sync; returns the sync report."""
    report = await service.sync_catalog(shop_id)
    return {"success": True, "report": report.to_dict()}


@router.post("/sync/cancel")
async def cancel_sync(
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    cancelled = service.cancel_sync(shop_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail="No catalog sync running for this shop")
    return {"success": True, "cancelled": True}


@router.get("/sync/status")
async def sync_status(
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    return await service.get_sync_status(shop_id)


@router.get("/products")
async def list_products(
    shop_id: str = Depends(require_shop),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    search: Optional[str] = Query(None, max_length=255),
    product_type: Optional[str] = Query(None, alias="productType", max_length=255),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    items, total = await service.storage.list_catalog_items(
        shop_id, page=page, limit=limit, search=search, product_type=product_type
    )
    return {
        "products": [item.to_dict() for item in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/products/{external_id}")
async def get_product(
    external_id: str,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    item = await service.storage.get_catalog_item(shop_id, external_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return item.to_dict()


@router.get("/stats")
async def catalog_stats(
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    return await service.storage.catalog_statistics(shop_id)


@router.get("/tags")
async def list_tags(
    shop_id: str = Depends(require_shop),
    search: Optional[str] = Query(None, max_length=255),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    return {"tags": await service.storage.list_tags(shop_id, search)}


@router.get("/product-types")
async def list_product_types(
    shop_id: str = Depends(require_shop),
    search: Optional[str] = Query(None, max_length=255),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    return {"productTypes": await service.storage.list_distinct(shop_id, "product_type", search)}


@router.get("/vendors")
async def list_vendors(
    shop_id: str = Depends(require_shop),
    search: Optional[str] = Query(None, max_length=255),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    return {"vendors": await service.storage.list_distinct(shop_id, "vendor", search)}
