"""
Notification stubs for merchant-facing updates.
Currently logs events; replace with real integrations (email/Slack/Webhooks) when available.
"""
from __future__ import annotations

from typing import Any, Dict, Optional
import logging

from schemas import BundleInstanceData, SyncReport

logger = logging.getLogger(__name__)


async def notify_sync_complete(report: SyncReport) -> None:
    """Notify merchant that a catalog sync finished (fully or partially)."""
    payload: Dict[str, Any] = {
        "shop_id": report.shop_id,
        "total_fetched": report.total_fetched,
        "created": report.created,
        "updated": report.updated,
        "errors": report.errors,
        "partial": report.truncated or report.cancelled,
    }
    if report.fetch_error:
        payload["fetch_error"] = report.fetch_error
    logger.info("[NOTIFY] Catalog sync complete | payload=%s", payload)


async def notify_bundle_generated(
    instance: BundleInstanceData,
    template_name: Optional[str] = None,
) -> None:
    """Notify merchant that a mystery box instance was generated."""
    payload = {
        "shop_id": instance.shop_id,
        "template_id": instance.template_id,
        "template_name": template_name,
        "instance_id": instance.id,
        "item_count": instance.item_count,
        "total_value": float(instance.total_value),
        "strategy": instance.strategy,
    }
    logger.info("[NOTIFY] Mystery box generated | payload=%s", payload)
