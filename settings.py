"""
Centralized configuration helpers for shop scoping and the sync/selection pipeline.
"""
from __future__ import annotations

import os
from typing import Optional, Any

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SHOP_ID: str = os.getenv("DEFAULT_SHOP_ID") or "demo-shop"

# Shopify Admin API
SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2023-10")
SHOPIFY_API_KEY: str = os.getenv("SHOPIFY_API_KEY", "")
SHOPIFY_API_SECRET: str = os.getenv("SHOPIFY_API_SECRET", "")
SHOPIFY_WEBHOOK_SECRET: str = os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
SHOPIFY_SCOPES: str = os.getenv(
    "SHOPIFY_SCOPES",
    "read_products,write_products,read_inventory,write_inventory,read_orders",
)
APP_URL: str = os.getenv("APP_URL", "http://localhost:8080")

SHOPIFY_PAGE_LIMIT: int = int(os.getenv("SHOPIFY_PAGE_LIMIT", "250"))
SHOPIFY_HTTP_TIMEOUT: float = float(os.getenv("SHOPIFY_HTTP_TIMEOUT", "30"))
SHOPIFY_HTTP_MAX_RETRIES: int = int(os.getenv("SHOPIFY_HTTP_MAX_RETRIES", "3"))

# Catalog sync
SYNC_MAX_PAGES: int = int(os.getenv("SYNC_MAX_PAGES", "50"))
# Aligned with Cloud Run's 300 second request timeout
SYNC_DEADLINE_SECONDS: float = float(os.getenv("SYNC_DEADLINE_SECONDS", "270"))

# Bundle selection
SELECTION_MAX_ATTEMPTS: int = int(os.getenv("SELECTION_MAX_ATTEMPTS", "1000"))

OAUTH_STATE_TTL_SECONDS: float = float(os.getenv("OAUTH_STATE_TTL_SECONDS", "600"))


def sanitize_shop_id(value: Optional[Any]) -> Optional[str]:
    """Normalize raw IDs (strip scheme/whitespace/trailing slash, lower-case domains)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    text = str(value).strip()
    for prefix in ("https://", "http://"):
        if text.lower().startswith(prefix):
            text = text[len(prefix):]
    text = text.rstrip("/")
    if not text:
        return None
    return text.lower()


def resolve_shop_id(*candidates: Optional[Any]) -> str:
    """
    Pick the first usable shop identifier from candidates, otherwise fall back to DEFAULT_SHOP_ID.
    """
    for candidate in candidates:
        normalized = sanitize_shop_id(candidate)
        if normalized:
            return normalized
    return DEFAULT_SHOP_ID
