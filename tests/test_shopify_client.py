from urllib.parse import parse_qs, urlparse

import pytest
import requests

from schemas import ShopCredentials
from services.errors import FetchFailure
from services.shopify_client import ShopifyCatalogClient, build_install_url, parse_next_page_info

CREDS = ShopCredentials(shop_id="test-shop.myshopify.com", access_token="shpat_test")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "params": dict(params or {})})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr("utils.time.sleep", lambda seconds: None)


def test_parse_next_page_info_picks_the_next_link():
    header = (
        '<https://shop.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=prev123>; rel="previous", '
        '<https://shop.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=next456>; rel="next"'
    )
    assert parse_next_page_info(header) == "next456"


def test_parse_next_page_info_without_next_link():
    assert parse_next_page_info(None) is None
    assert parse_next_page_info('<https://x/products.json?page_info=abc>; rel="previous"') is None


def test_fetch_page_returns_items_and_cursor():
    session = FakeSession([
        FakeResponse(
            payload={"products": [{"id": 1}, {"id": 2}]},
            headers={"Link": '<https://x/products.json?limit=250&page_info=cursor2>; rel="next"'},
        )
    ])
    client = ShopifyCatalogClient(CREDS, session=session, page_limit=250)

    page = client.fetch_page(None)

    assert [p["id"] for p in page.items] == [1, 2]
    assert page.next_cursor == "cursor2"
    assert session.calls[0]["url"] == "https://test-shop.myshopify.com/admin/api/2023-10/products.json"
    assert session.calls[0]["headers"]["X-Shopify-Access-Token"] == "shpat_test"
    assert session.calls[0]["params"] == {"limit": 250}


def test_fetch_page_passes_cursor():
    session = FakeSession([FakeResponse(payload={"products": []})])

    page = ShopifyCatalogClient(CREDS, session=session).fetch_page("abc")

    assert session.calls[0]["params"]["page_info"] == "abc"
    assert page.next_cursor is None


def test_unauthorized_is_a_fetch_failure_without_retry():
    session = FakeSession([FakeResponse(status_code=401, text="Invalid API key")])

    with pytest.raises(FetchFailure) as excinfo:
        ShopifyCatalogClient(CREDS, session=session).fetch_page(None)

    assert excinfo.value.status == 401
    assert len(session.calls) == 1


def test_server_errors_are_retried_then_succeed():
    session = FakeSession([
        FakeResponse(status_code=503, text="unavailable"),
        FakeResponse(status_code=429, text="slow down"),
        FakeResponse(payload={"products": [{"id": 1}]}),
    ])

    page = ShopifyCatalogClient(CREDS, session=session).fetch_page(None)

    assert len(page.items) == 1
    assert len(session.calls) == 3


def test_persistent_network_errors_become_fetch_failure():
    session = FakeSession([requests.exceptions.ConnectionError("boom")] * 10)

    with pytest.raises(FetchFailure):
        ShopifyCatalogClient(CREDS, session=session).fetch_page(None)

    assert len(session.calls) == 4


def test_payload_without_products_list_is_a_fetch_failure():
    session = FakeSession([FakeResponse(payload={"errors": "nope"})])

    with pytest.raises(FetchFailure):
        ShopifyCatalogClient(CREDS, session=session).fetch_page(None)


def test_install_url_carries_state_and_scopes():
    url = build_install_url(
        "test-shop.myshopify.com", "state-1", api_key="key", scopes="read_products", redirect_uri="https://app/cb"
    )
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert parsed.netloc == "test-shop.myshopify.com"
    assert parsed.path == "/admin/oauth/authorize"
    assert query == {
        "client_id": ["key"],
        "scope": ["read_products"],
        "redirect_uri": ["https://app/cb"],
        "state": ["state-1"],
    }
