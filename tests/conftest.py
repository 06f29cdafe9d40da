import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base
from schemas import CatalogItemData, CatalogPage, VariantRef
from services.errors import FetchFailure
from services.storage import StorageService


async def build_storage():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, StorageService(session_factory=factory)


@pytest.fixture
def run_with_storage():
    """Run ``scenario(storage)`` on a fresh in-memory database inside one event loop."""

    def runner(scenario):
        async def main():
            engine, storage = await build_storage()
            try:
                return await scenario(storage)
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return runner


def raw_product(product_id, price="10.00", stock=5, **overrides):
    """Shopify-shaped product payload with one variant."""
    product = {
        "id": product_id,
        "title": f"Product {product_id}",
        "vendor": "Acme",
        "product_type": "Apparel",
        "tags": "summer, sale",
        "status": "active",
        "variants": [
            {
                "id": product_id * 10,
                "title": "Default",
                "price": price,
                "compare_at_price": None,
                "inventory_quantity": stock,
                "sku": f"SKU-{product_id}",
                "inventory_item_id": product_id * 100,
            }
        ],
        "images": [{"id": 1, "src": f"https://cdn.example.com/{product_id}.jpg", "alt": None}],
    }
    product.update(overrides)
    return product


def catalog_item(external_id, price, stock=3, product_type="Apparel", tags=(), compare_at=None, variants=None):
    price = Decimal(str(price))
    return CatalogItemData(
        shop_id="test-shop.myshopify.com",
        external_id=str(external_id),
        title=f"Item {external_id}",
        price=price,
        compare_at_price=Decimal(str(compare_at)) if compare_at is not None else None,
        stock_quantity=stock,
        product_type=product_type,
        tags=frozenset(tags),
        variants=tuple(variants) if variants is not None else (
            VariantRef(external_variant_id=f"{external_id}-v1", price=price, stock_quantity=stock),
        ),
    )


class FakeFetcher:
    """Serves pre-built pages; cursor ``None`` is page 1, then "2", "3", ..."""

    def __init__(self, pages, fail_on_page=None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.requested = []

    def fetch_page(self, cursor):
        index = int(cursor) if cursor else 1
        self.requested.append(index)
        if self.fail_on_page == index:
            raise FetchFailure(f"page {index} unavailable", status=503)
        next_cursor = str(index + 1) if index < len(self.pages) else None
        return CatalogPage(items=self.pages[index - 1], next_cursor=next_cursor)
