"""
Shopify webhook endpoints
Keeps the catalog current between full syncs and cleans up on uninstall.

Every request is authenticated with the ``X-Shopify-Hmac-Sha256`` header:
base64 HMAC-SHA256 of the raw body keyed with the webhook secret.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from services.mystery_box_service import MysteryBoxService, get_mystery_box_service
import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def compute_webhook_hmac(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_hmac(body: bytes, secret: str, received: str) -> bool:
    return hmac.compare_digest(compute_webhook_hmac(body, secret), received or "")


@dataclass
class VerifiedWebhook:
    shop_id: str
    topic: str
    payload: Dict[str, Any]


async def verified_webhook(request: Request) -> VerifiedWebhook:
    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256")
    topic = request.headers.get("X-Shopify-Topic")
    shop_id = settings.sanitize_shop_id(request.headers.get("X-Shopify-Shop-Domain"))
    if not hmac_header or not topic or not shop_id:
        raise HTTPException(status_code=401, detail="Missing required headers")

    if not settings.SHOPIFY_WEBHOOK_SECRET:
        logger.error("SHOPIFY_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await request.body()
    if not verify_webhook_hmac(body, settings.SHOPIFY_WEBHOOK_SECRET, hmac_header):
        logger.warning("[webhook] verification failed topic=%s shop=%s", topic, shop_id)
        raise HTTPException(status_code=401, detail="Webhook verification failed")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    logger.info("[webhook] received topic=%s shop=%s", topic, shop_id)
    return VerifiedWebhook(shop_id=shop_id, topic=topic, payload=payload)


async def _require_known_shop(service: MysteryBoxService, shop_id: str) -> None:
    if await service.storage.get_shop(shop_id) is None:
        logger.error("[webhook] shop not found: %s", shop_id)
        raise HTTPException(status_code=404, detail="Shop not found")


@router.post("/app/uninstalled")
async def app_uninstalled(
    webhook: VerifiedWebhook = Depends(verified_webhook),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    counts = await service.uninstall_shop(webhook.shop_id)
    logger.info("Cleaned up data for uninstalled shop: %s", webhook.shop_id)
    return {"received": True, "removed": counts}


@router.post("/products/create")
@router.post("/products/update")
async def product_upsert(
    webhook: VerifiedWebhook = Depends(verified_webhook),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    await _require_known_shop(service, webhook.shop_id)
    outcome = await service.apply_product_webhook(webhook.shop_id, webhook.payload)
    return {"received": True, "outcome": outcome.value}


@router.post("/products/delete")
async def product_delete(
    webhook: VerifiedWebhook = Depends(verified_webhook),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    await _require_known_shop(service, webhook.shop_id)
    external_id = webhook.payload.get("id")
    if external_id is None:
        raise HTTPException(status_code=400, detail="Product id missing from payload")
    deleted = await service.apply_product_delete(webhook.shop_id, str(external_id))
    return {"received": True, "deleted": deleted}


@router.post("/inventory_levels/update")
async def inventory_level_update(
    webhook: VerifiedWebhook = Depends(verified_webhook),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    await _require_known_shop(service, webhook.shop_id)
    inventory_item_id = webhook.payload.get("inventory_item_id")
    available = webhook.payload.get("available")
    if inventory_item_id is None:
        raise HTTPException(status_code=400, detail="inventory_item_id missing from payload")
    try:
        available = int(available or 0)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="available must be an integer")
    updated = await service.apply_inventory_level(webhook.shop_id, str(inventory_item_id), available)
    return {"received": True, "updated": updated}
