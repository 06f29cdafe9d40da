"""
Mystery box endpoints
Template CRUD, bundle generation, instance history and statistics.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from routers.catalog import require_shop
from schemas import InstanceStatus
from services.mystery_box_service import (
    MysteryBoxService,
    get_mystery_box_service,
    template_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mystery-boxes", tags=["mystery-boxes"])


class MysteryBoxCreateRequest(BaseModel):
    """Template payload posted by the embedded admin app."""

    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    min_value: Optional[Decimal] = Field(None, alias="minValue")
    max_value: Optional[Decimal] = Field(None, alias="maxValue")
    min_items: Optional[int] = Field(1, alias="minItems")
    max_items: Optional[int] = Field(10, alias="maxItems")
    include_tags: List[str] = Field(default_factory=list, alias="includeTags")
    exclude_tags: List[str] = Field(default_factory=list, alias="excludeTags")
    include_types: List[str] = Field(default_factory=list, alias="includeProductTypes")
    exclude_types: List[str] = Field(default_factory=list, alias="excludeProductTypes")
    is_active: bool = Field(True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class MysteryBoxUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    min_value: Optional[Decimal] = Field(None, alias="minValue")
    max_value: Optional[Decimal] = Field(None, alias="maxValue")
    min_items: Optional[int] = Field(None, alias="minItems")
    max_items: Optional[int] = Field(None, alias="maxItems")
    include_tags: Optional[List[str]] = Field(None, alias="includeTags")
    exclude_tags: Optional[List[str]] = Field(None, alias="excludeTags")
    include_types: Optional[List[str]] = Field(None, alias="includeProductTypes")
    exclude_types: Optional[List[str]] = Field(None, alias="excludeProductTypes")
    is_active: Optional[bool] = Field(None, alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class InstanceStatusRequest(BaseModel):
    status: InstanceStatus


# ---------- Instances ----------

@router.get("/instances/{instance_id}")
async def get_instance(
    instance_id: str,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    instance = await service.get_instance(instance_id, shop_id)
    return instance.to_dict()


@router.patch("/instances/{instance_id}/status")
async def update_instance_status(
    instance_id: str,
    request: InstanceStatusRequest,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    instance = await service.update_instance_status(instance_id, request.status, shop_id)
    return {"success": True, "instance": instance.to_dict()}


# ---------- Templates ----------

@router.get("")
async def list_mystery_boxes(
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    templates = await service.list_templates(shop_id)
    return {"mysteryBoxes": [template_to_dict(t) for t in templates]}


@router.post("", status_code=201)
async def create_mystery_box(
    request: MysteryBoxCreateRequest,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    template = await service.create_template(shop_id, request.model_dump())
    return {"success": True, "mysteryBox": template_to_dict(template)}


@router.get("/{template_id}")
async def get_mystery_box(
    template_id: str,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    template = await service.get_template(template_id, shop_id)
    return template_to_dict(template)


@router.put("/{template_id}")
async def update_mystery_box(
    template_id: str,
    request: MysteryBoxUpdateRequest,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    updates = request.model_dump(exclude_unset=True)
    template = await service.update_template(template_id, updates, shop_id)
    return {"success": True, "mysteryBox": template_to_dict(template)}


@router.delete("/{template_id}")
async def delete_mystery_box(
    template_id: str,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    await service.delete_template(template_id, shop_id)
    return {"success": True}


# ---------- Generation & history ----------

@router.post("/{template_id}/generate", status_code=201)
async def generate_mystery_box(
    template_id: str,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    instance = await service.generate_bundle(template_id, shop_id)
    return {"success": True, "instance": instance.to_dict()}


@router.get("/{template_id}/instances")
async def list_instances(
    template_id: str,
    shop_id: str = Depends(require_shop),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    instances, total = await service.list_instances(template_id, shop_id, page=page, limit=limit)
    return {
        "instances": [i.to_dict() for i in instances],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/{template_id}/statistics")
async def get_statistics(
    template_id: str,
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    stats = await service.get_statistics(template_id, shop_id)
    return stats.to_dict()


@router.get("/{template_id}/preview")
async def preview_eligible(
    template_id: str,
    shop_id: str = Depends(require_shop),
    limit: int = Query(10, ge=0, le=100),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    return await service.preview_eligible(template_id, shop_id, limit=limit)
