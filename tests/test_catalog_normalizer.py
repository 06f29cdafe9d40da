from decimal import Decimal

import pytest

from conftest import raw_product
from services.catalog_normalizer import normalize_raw_item, parse_tags
from services.errors import ItemUpsertError

SHOP = "test-shop.myshopify.com"


def test_parse_tags_accepts_comma_string_and_list():
    assert parse_tags("summer, sale ,, gift") == frozenset({"summer", "sale", "gift"})
    assert parse_tags(["a", " b ", ""]) == frozenset({"a", "b"})
    assert parse_tags(None) == frozenset()
    assert parse_tags(42) == frozenset()


def test_item_fields_come_from_first_variant_and_summed_stock():
    product = raw_product(7, "19.99", stock=3)
    product["variants"][0]["compare_at_price"] = "29.99"
    product["variants"].append({"id": 71, "price": "24.99", "inventory_quantity": 4, "compare_at_price": "0.00"})

    item = normalize_raw_item(SHOP, product)

    assert item.external_id == "7"
    assert item.price == Decimal("19.99")
    assert item.compare_at_price == Decimal("29.99")
    assert item.stock_quantity == 7
    assert item.variants[1].compare_at_price is None
    assert item.tags == frozenset({"summer", "sale"})
    assert item.images[0].src.endswith("/7.jpg")


def test_missing_title_falls_back_to_product_id():
    item = normalize_raw_item(SHOP, raw_product(8, title=None))
    assert item.title == "Product 8"


@pytest.mark.parametrize(
    "payload",
    [
        "not-an-object",
        {"title": "no id", "variants": [{"id": 1, "price": "1.00"}]},
        {"id": 1, "variants": []},
        {"id": 1, "variants": "broken"},
        {"id": 1, "variants": [{"id": 2, "price": "abc"}]},
        {"id": 1, "variants": [{"id": 2}]},
        {"id": 1, "variants": [{"price": "1.00"}]},
    ],
)
def test_malformed_payloads_raise_item_upsert_error(payload):
    with pytest.raises(ItemUpsertError):
        normalize_raw_item(SHOP, payload)


def test_unparseable_inventory_counts_as_zero():
    product = raw_product(9)
    product["variants"][0]["inventory_quantity"] = "lots"

    assert normalize_raw_item(SHOP, product).stock_quantity == 0


def test_price_beyond_decimal_precision_is_an_item_error():
    with pytest.raises(ItemUpsertError):
        normalize_raw_item(SHOP, raw_product(8, "1e30"))
