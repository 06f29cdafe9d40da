import asyncio

import pytest

from services.concurrency_control import ConcurrencyController
from services.errors import SyncInProgress


def test_second_sync_for_same_shop_is_rejected():
    controller = ConcurrencyController()

    async def scenario():
        async with controller.acquire_shop_sync("shop-a.myshopify.com"):
            with pytest.raises(SyncInProgress):
                async with controller.acquire_shop_sync("SHOP-A.myshopify.com"):
                    pass
            async with controller.acquire_shop_sync("shop-b.myshopify.com"):
                assert controller.running_shops() == ["shop-a.myshopify.com", "shop-b.myshopify.com"]
        return controller.is_running("shop-a.myshopify.com")

    assert asyncio.run(scenario()) is False


def test_cancel_sets_the_running_sync_event():
    controller = ConcurrencyController()

    async def scenario():
        assert controller.cancel("shop-a.myshopify.com") is False
        async with controller.acquire_shop_sync("shop-a.myshopify.com") as cancel_event:
            assert controller.cancel("shop-a.myshopify.com") is True
            return cancel_event.is_set()

    assert asyncio.run(scenario()) is True


def test_slot_is_released_when_the_sync_raises():
    controller = ConcurrencyController()

    async def scenario():
        with pytest.raises(RuntimeError):
            async with controller.acquire_shop_sync("shop-a.myshopify.com"):
                raise RuntimeError("sync blew up")
        return controller.is_running("shop-a.myshopify.com")

    assert asyncio.run(scenario()) is False
