import asyncio
from decimal import Decimal

import pytest

from conftest import FakeFetcher, raw_product
from schemas import ShopCredentials, UpsertOutcome
from services.catalog_sync import CatalogSyncEngine
from services.deadlines import Deadline
from services.errors import FetchFailure, ItemUpsertError

SHOP = "test-shop.myshopify.com"
CREDS = ShopCredentials(shop_id=SHOP, access_token="shpat_test")


def engine_for(storage, fetcher, max_pages=50):
    return CatalogSyncEngine(storage, fetcher_factory=lambda creds: fetcher, max_pages=max_pages)


def three_pages(malformed_on_page_two=False):
    page_two = [raw_product(3, "24.99"), raw_product(4, "49.99")]
    if malformed_on_page_two:
        page_two[1] = raw_product(4, "49.99", variants=[])
    return [
        [raw_product(1, "12.99"), raw_product(2, "19.99")],
        page_two,
        [raw_product(5, "89.99")],
    ]


def test_scenario_d_malformed_item_is_counted_not_raised(run_with_storage):
    async def scenario(storage):
        report = await engine_for(storage, FakeFetcher(three_pages(malformed_on_page_two=True))).sync(CREDS)
        snapshot = await storage.load_catalog_snapshot(SHOP)
        return report, snapshot

    report, snapshot = run_with_storage(scenario)

    assert report.errors == 1
    assert report.created == 4
    assert report.pages == 3
    assert report.total_fetched == 5
    assert not report.truncated
    assert sorted(item.external_id for item in snapshot) == ["1", "2", "3", "5"]


def test_out_of_range_price_is_counted_not_raised(run_with_storage):
    page = [raw_product(1, "12.99"), raw_product(2, "1e30"), raw_product(3, "5.00")]

    async def scenario(storage):
        report = await engine_for(storage, FakeFetcher([page])).sync(CREDS)
        snapshot = await storage.load_catalog_snapshot(SHOP)
        return report, snapshot

    report, snapshot = run_with_storage(scenario)

    assert report.errors == 1
    assert report.created == 2
    assert sorted(item.external_id for item in snapshot) == ["1", "3"]


def test_second_sync_with_unchanged_data_updates_nothing(run_with_storage):
    async def scenario(storage):
        engine = engine_for(storage, FakeFetcher(three_pages()))
        first = await engine.sync(CREDS)
        before = {i.external_id: i.last_synced_at for i in await storage.load_catalog_snapshot(SHOP)}
        await asyncio.sleep(0.01)
        second = await engine.sync(CREDS)
        after = {i.external_id: i.last_synced_at for i in await storage.load_catalog_snapshot(SHOP)}
        return first, second, before, after

    first, second, before, after = run_with_storage(scenario)

    assert first.created == 5
    assert second.created == 0
    assert second.updated == 0
    assert second.unchanged == 5
    assert all(after[key] > before[key] for key in before)


def test_changed_price_is_reported_as_update(run_with_storage):
    async def scenario(storage):
        await engine_for(storage, FakeFetcher([[raw_product(1, "10.00")]])).sync(CREDS)
        report = await engine_for(storage, FakeFetcher([[raw_product(1, "11.50")]])).sync(CREDS)
        return report, await storage.get_catalog_item(SHOP, "1")

    report, item = run_with_storage(scenario)

    assert report.updated == 1
    assert item.price == Decimal("11.50")


def test_page_ceiling_truncates_without_failing(run_with_storage):
    fetcher = FakeFetcher(three_pages())

    async def scenario(storage):
        return await engine_for(storage, fetcher, max_pages=2).sync(CREDS)

    report = run_with_storage(scenario)

    assert report.truncated is True
    assert report.pages == 2
    assert fetcher.requested == [1, 2]
    assert report.created == 4


def test_first_page_fetch_failure_is_raised(run_with_storage):
    async def scenario(storage):
        with pytest.raises(FetchFailure):
            await engine_for(storage, FakeFetcher(three_pages(), fail_on_page=1)).sync(CREDS)
        return await storage.load_catalog_snapshot(SHOP)

    assert run_with_storage(scenario) == []


def test_later_page_fetch_failure_returns_partial_report(run_with_storage):
    async def scenario(storage):
        return await engine_for(storage, FakeFetcher(three_pages(), fail_on_page=2)).sync(CREDS)

    report = run_with_storage(scenario)

    assert report.truncated is True
    assert report.created == 2
    assert report.pages == 1
    assert "page 2 unavailable" in report.fetch_error


def test_cancel_event_stops_after_current_page(run_with_storage):
    fetcher = FakeFetcher(three_pages())

    async def scenario(storage):
        cancel = asyncio.Event()
        cancel.set()
        return await engine_for(storage, fetcher).sync(CREDS, cancel_event=cancel)

    report = run_with_storage(scenario)

    assert report.cancelled is True
    assert report.pages == 1
    assert report.created == 2
    assert fetcher.requested == [1]


def test_expired_deadline_cancels_between_pages(run_with_storage):
    async def scenario(storage):
        return await engine_for(storage, FakeFetcher(three_pages())).sync(CREDS, deadline=Deadline(seconds=0))

    report = run_with_storage(scenario)

    assert report.cancelled is True
    assert report.pages == 1


def test_stock_and_price_invariants_after_sync(run_with_storage):
    oversold = raw_product(1, "8.00")
    oversold["variants"].append({"id": 99, "price": "9.00", "inventory_quantity": -4})
    negative_price = raw_product(2, "-1.00")

    async def scenario(storage):
        report = await engine_for(storage, FakeFetcher([[oversold, negative_price]])).sync(CREDS)
        items = await storage.load_catalog_snapshot(SHOP, eligible_only=False)
        return report, items

    report, items = run_with_storage(scenario)

    assert report.errors == 1
    assert [i.external_id for i in items] == ["1"]
    assert items[0].stock_quantity == 5
    assert all(v.stock_quantity >= 0 for v in items[0].variants)
    assert items[0].price == Decimal("8.00")


def test_webhook_upsert_uses_the_same_path_as_bulk_sync(run_with_storage):
    async def scenario(storage):
        engine = engine_for(storage, FakeFetcher([[raw_product(1, "10.00")]]))
        await engine.sync(CREDS)
        repeat = await engine.upsert_from_webhook(SHOP, raw_product(1, "10.00"))
        created = await engine.upsert_from_webhook(SHOP, raw_product(2, "12.00"))
        with pytest.raises(ItemUpsertError):
            await engine.upsert_from_webhook(SHOP, {"id": 3, "variants": []})
        deleted = await engine.delete_item(SHOP, "1")
        remaining = await storage.load_catalog_snapshot(SHOP)
        return repeat, created, deleted, remaining

    repeat, created, deleted, remaining = run_with_storage(scenario)

    assert repeat is UpsertOutcome.UNCHANGED
    assert created is UpsertOutcome.CREATED
    assert deleted is True
    assert [i.external_id for i in remaining] == ["2"]


def test_draft_products_are_stored_but_not_eligible(run_with_storage):
    async def scenario(storage):
        await engine_for(storage, FakeFetcher([[raw_product(1, "10.00", status="draft")]])).sync(CREDS)
        return (
            await storage.load_catalog_snapshot(SHOP),
            await storage.load_catalog_snapshot(SHOP, eligible_only=False),
        )

    eligible, everything = run_with_storage(scenario)

    assert eligible == []
    assert len(everything) == 1
    assert everything[0].is_active is False
