"""
Shopify Admin REST client for catalog pages.

Implements the ``CatalogPageFetcher`` contract used by the sync engine:
``fetch_page(cursor) -> CatalogPage``. Pagination is cursor based; the next
cursor is the ``page_info`` parameter of the ``rel="next"`` entry of the
``Link`` response header.
"""
from __future__ import annotations

import logging
import re
from urllib.parse import urlencode
from typing import Any, Dict, Optional, Protocol

import requests

from schemas import CatalogPage, ShopCredentials
from services.errors import FetchFailure
from settings import (
    SHOPIFY_API_VERSION,
    SHOPIFY_HTTP_MAX_RETRIES,
    SHOPIFY_HTTP_TIMEOUT,
    SHOPIFY_PAGE_LIMIT,
)
from utils import retry_sync

logger = logging.getLogger(__name__)

_PAGE_INFO_RE = re.compile(r"[?&]page_info=([^&>]+)")


class CatalogPageFetcher(Protocol):
    def fetch_page(self, cursor: Optional[str]) -> CatalogPage:
        ...


class RetryableHTTPError(Exception):
    """429/5xx response; retried by ``retry_sync`` before surfacing as FetchFailure."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the ``page_info`` cursor of the rel="next" link, if any."""
    if not link_header:
        return None
    for link in link_header.split(","):
        if 'rel="next"' not in link:
            continue
        match = _PAGE_INFO_RE.search(link)
        if match:
            return match.group(1)
    return None


class ShopifyCatalogClient:
    """Blocking Shopify products client bound to one shop's credentials."""

    def __init__(
        self,
        credentials: ShopCredentials,
        session: Optional[requests.Session] = None,
        page_limit: int = SHOPIFY_PAGE_LIMIT,
        timeout: float = SHOPIFY_HTTP_TIMEOUT,
        api_version: str = SHOPIFY_API_VERSION,
    ) -> None:
        self.credentials = credentials
        self.session = session or requests.Session()
        self.page_limit = page_limit
        self.timeout = timeout
        self.base_url = f"https://{credentials.shop_id}/admin/api/{api_version}"

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.credentials.access_token,
            "Content-Type": "application/json",
            "User-Agent": "mystery-box-backend/1.0",
        }

    @retry_sync(
        max_retries=SHOPIFY_HTTP_MAX_RETRIES,
        base_delay=1.0,
        max_delay=20.0,
        retry_on=(requests.exceptions.Timeout, requests.exceptions.ConnectionError, RetryableHTTPError),
    )
    def _get(self, path: str, params: Dict[str, Any]) -> requests.Response:
        response = self.session.get(
            f"{self.base_url}{path}",
            headers=self._headers(),
            params=params,
            timeout=self.timeout,
        )
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "[shopify] %s returned %s for shop=%s",
                path, response.status_code, self.credentials.shop_id,
            )
            raise RetryableHTTPError(response.status_code, response.text)
        return response

    def fetch_page(self, cursor: Optional[str]) -> CatalogPage:
        params: Dict[str, Any] = {"limit": self.page_limit}
        if cursor:
            # Shopify rejects filter params alongside page_info
            params["page_info"] = cursor

        try:
            response = self._get("/products.json", params)
        except RetryableHTTPError as exc:
            raise FetchFailure(f"Shopify API unavailable: {exc}", status=exc.status) from exc
        except requests.exceptions.RequestException as exc:
            raise FetchFailure(f"Failed to reach Shopify: {exc}") from exc

        if response.status_code in (401, 403):
            raise FetchFailure(
                f"Shopify rejected credentials for {self.credentials.shop_id}",
                status=response.status_code,
            )
        if response.status_code >= 400:
            raise FetchFailure(
                f"Failed to fetch products: HTTP {response.status_code}",
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise FetchFailure("Shopify returned a non-JSON products payload") from exc

        products = data.get("products") if isinstance(data, dict) else None
        if not isinstance(products, list):
            raise FetchFailure("Shopify products payload missing 'products' list")

        next_cursor = parse_next_page_info(response.headers.get("Link"))
        logger.info(
            "[shopify] fetched page shop=%s items=%d has_next=%s",
            self.credentials.shop_id, len(products), bool(next_cursor),
        )
        return CatalogPage(items=products, next_cursor=next_cursor)


def build_install_url(shop_id: str, state: str, api_key: str, scopes: str, redirect_uri: str) -> str:
    """Shopify authorize URL for app installation."""
    params = urlencode({
        "client_id": api_key,
        "scope": scopes,
        "redirect_uri": redirect_uri,
        "state": state,
    })
    return f"https://{shop_id}/admin/oauth/authorize?{params}"
