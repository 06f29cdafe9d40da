import json
import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from fastapi.testclient import TestClient

import settings
from database import MysteryBox
from main import app
from routers.webhooks import compute_webhook_hmac
from schemas import BundleInstanceData, BundleStatistics, InstanceStatus, NumericRange, UpsertOutcome
from services.errors import ConstraintUnsatisfiable, TemplateNotFound
from services.mystery_box_service import get_mystery_box_service
from services.oauth_state import OAuthStateStore
from services.template_validation import build_template_values

SHOP = "test-shop.myshopify.com"
SECRET = "whsec_test"
STORED_CONFIG = {"name": "Starter box", "min_value": 10, "max_value": 60, "min_items": 2, "max_items": 4}


class FakeStorage:
    def __init__(self, known_shops):
        self.known_shops = set(known_shops)

    async def get_shop(self, shop_id):
        return object() if shop_id in self.known_shops else None


class FakeService:
    def __init__(self):
        self.storage = FakeStorage({SHOP})
        self.calls = []

    async def apply_product_webhook(self, shop_id, payload):
        self.calls.append(("upsert", shop_id, payload["id"]))
        return UpsertOutcome.CREATED

    async def uninstall_shop(self, shop_id):
        self.calls.append(("uninstall", shop_id))
        return {"catalog_items": 3}

    async def connect_shop(self, shop_id, access_token):
        self.calls.append(("connect", shop_id, access_token))

    async def generate_bundle(self, template_id, shop_id=None):
        self.calls.append(("generate", template_id, shop_id))
        if template_id == "missing":
            raise TemplateNotFound(template_id)
        raise ConstraintUnsatisfiable(
            eligible_count=5,
            cheapest_price=Decimal("12.99"),
            most_expensive_price=Decimal("89.99"),
            min_value=Decimal("1000.00"),
            max_value=Decimal("1001.00"),
            min_items=1,
            max_items=1,
        )

    async def create_template(self, shop_id, config):
        self.calls.append(("create_template", shop_id, config))
        return MysteryBox(id="tpl-1", shop_id=shop_id, **build_template_values(config))

    async def get_template(self, template_id, shop_id=None):
        self.calls.append(("get_template", template_id, shop_id))
        return MysteryBox(id=template_id, shop_id=shop_id, **build_template_values(STORED_CONFIG))

    async def update_template(self, template_id, updates, shop_id=None):
        self.calls.append(("update_template", template_id, shop_id, updates))
        return MysteryBox(id=template_id, shop_id=shop_id, **build_template_values(STORED_CONFIG))

    async def update_instance_status(self, instance_id, status, shop_id=None):
        self.calls.append(("update_status", instance_id, status, shop_id))
        return BundleInstanceData(
            id=instance_id,
            template_id="tpl-1",
            shop_id=shop_id,
            selected_items=(),
            total_value=Decimal("42.00"),
            item_count=2,
            savings=Decimal("0.00"),
            status=status,
            generated_at=None,
        )

    async def get_statistics(self, template_id, shop_id=None):
        self.calls.append(("statistics", template_id, shop_id))
        return BundleStatistics(
            count=2,
            avg_value=Decimal("30.00"),
            avg_items=Decimal("2.50"),
            total_value=Decimal("60.00"),
            value_range=NumericRange(Decimal("25.00"), Decimal("35.00")),
            item_range=NumericRange(Decimal("2"), Decimal("3")),
        )


@pytest.fixture
def client(monkeypatch):
    service = FakeService()
    monkeypatch.setattr(settings, "SHOPIFY_WEBHOOK_SECRET", SECRET)
    app.dependency_overrides[get_mystery_box_service] = lambda: service
    app.state.oauth_states = OAuthStateStore(ttl_seconds=60)
    try:
        yield TestClient(app), service
    finally:
        app.dependency_overrides.clear()


def signed_headers(body: bytes, topic: str, secret: str = SECRET):
    return {
        "X-Shopify-Hmac-Sha256": compute_webhook_hmac(body, secret),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": SHOP,
        "Content-Type": "application/json",
    }


def test_healthz(client):
    http, _ = client
    assert http.get("/healthz").json() == {"ok": True}


def test_signed_product_webhook_is_applied(client):
    http, service = client
    body = json.dumps({"id": 123, "title": "Hat", "variants": []}).encode()

    response = http.post("/api/webhooks/products/update", content=body, headers=signed_headers(body, "products/update"))

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "created"}
    assert service.calls == [("upsert", SHOP, 123)]


def test_webhook_with_bad_signature_is_rejected(client):
    http, service = client
    body = json.dumps({"id": 123}).encode()

    response = http.post(
        "/api/webhooks/products/create",
        content=body,
        headers=signed_headers(body, "products/create", secret="wrong"),
    )

    assert response.status_code == 401
    assert service.calls == []


def test_webhook_without_headers_is_rejected(client):
    http, _ = client
    response = http.post("/api/webhooks/app/uninstalled", content=b"{}")
    assert response.status_code == 401
    assert response.json() == {"error": "Missing required headers"}


def test_uninstall_webhook_purges_shop(client):
    http, service = client
    body = b"{}"

    response = http.post("/api/webhooks/app/uninstalled", content=body, headers=signed_headers(body, "app/uninstalled"))

    assert response.status_code == 200
    assert service.calls == [("uninstall", SHOP)]


def test_connect_requires_a_state_issued_for_the_same_shop(client):
    http, service = client
    state = app.state.oauth_states.issue(SHOP)

    forged = http.post("/api/auth/connect", json={"shop": SHOP, "state": "forged", "accessToken": "tok"})
    other_shop = http.post(
        "/api/auth/connect", json={"shop": "other.myshopify.com", "state": state, "accessToken": "tok"}
    )

    assert forged.status_code == 400
    assert forged.json()["code"] == "invalid_oauth_state"
    assert other_shop.status_code == 400
    assert service.calls == []


def test_connect_stores_token_once(client):
    http, service = client
    state = app.state.oauth_states.issue(SHOP)

    first = http.post("/api/auth/connect", json={"shop": SHOP, "state": state, "accessToken": "tok"})
    replay = http.post("/api/auth/connect", json={"shop": SHOP, "state": state, "accessToken": "tok"})

    assert first.status_code == 200
    assert replay.status_code == 400
    assert service.calls == [("connect", SHOP, "tok")]


def test_domain_errors_render_as_json(client):
    http, _ = client

    unsatisfiable = http.post(f"/api/mystery-boxes/tpl-1/generate?shop={SHOP}")
    missing = http.post(f"/api/mystery-boxes/missing/generate?shop={SHOP}")

    assert unsatisfiable.status_code == 422
    body = unsatisfiable.json()
    assert body["code"] == "constraint_unsatisfiable"
    assert body["details"]["eligible_count"] == 5
    assert body["details"]["most_expensive_price"] == 89.99
    assert missing.status_code == 404


def test_shop_parameter_is_required(client):
    http, _ = client
    response = http.get("/api/catalog/stats")
    assert response.status_code == 400
    assert response.json() == {"error": "Shop parameter is required"}


def test_create_maps_camel_case_fields_to_template_config(client):
    http, service = client
    payload = {
        "name": "Gift box",
        "minValue": 20,
        "maxValue": 50,
        "minItems": 2,
        "maxItems": 4,
        "includeProductTypes": ["Apparel"],
        "excludeProductTypes": ["Shoes"],
        "includeTags": ["summer"],
        "excludeTags": ["clearance"],
        "isActive": False,
    }

    response = http.post(f"/api/mystery-boxes?shop={SHOP}", json=payload)

    assert response.status_code == 201
    _, shop_id, config = service.calls[0]
    assert shop_id == SHOP
    assert config["min_value"] == Decimal("20")
    assert config["include_types"] == ["Apparel"]
    assert config["exclude_types"] == ["Shoes"]
    assert config["include_tags"] == ["summer"]
    assert config["exclude_tags"] == ["clearance"]
    assert config["is_active"] is False
    box = response.json()["mysteryBox"]
    assert box["includeProductTypes"] == ["Apparel"]
    assert box["excludeTags"] == ["clearance"]
    assert box["minValue"] == 20.0
    assert box["isActive"] is False


def test_update_forwards_only_fields_the_client_sent(client):
    http, service = client

    response = http.put(f"/api/mystery-boxes/tpl-1?shop={SHOP}", json={"maxItems": 6, "isActive": None})

    assert response.status_code == 200
    assert service.calls == [("update_template", "tpl-1", SHOP, {"max_items": 6, "is_active": None})]


def test_instance_status_patch(client):
    http, service = client

    response = http.patch(f"/api/mystery-boxes/instances/inst-1/status?shop={SHOP}", json={"status": "published"})
    rejected = http.patch(f"/api/mystery-boxes/instances/inst-1/status?shop={SHOP}", json={"status": "shipped"})

    assert response.status_code == 200
    assert response.json()["instance"]["status"] == "published"
    assert service.calls == [("update_status", "inst-1", InstanceStatus.PUBLISHED, SHOP)]
    assert rejected.status_code == 422


def test_statistics_endpoint(client):
    http, service = client

    response = http.get(f"/api/mystery-boxes/tpl-1/statistics?shop={SHOP}")

    assert response.status_code == 200
    assert response.json() == {
        "count": 2,
        "avgValue": 30.0,
        "avgItems": 2.5,
        "totalValue": 60.0,
        "valueRange": {"min": 25.0, "max": 35.0},
        "itemRange": {"min": 2, "max": 3},
    }
    assert service.calls == [("statistics", "tpl-1", SHOP)]


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/mystery-boxes/tpl-1"),
        ("put", "/api/mystery-boxes/tpl-1"),
        ("delete", "/api/mystery-boxes/tpl-1"),
        ("post", "/api/mystery-boxes/tpl-1/generate"),
        ("get", "/api/mystery-boxes/tpl-1/instances"),
        ("get", "/api/mystery-boxes/tpl-1/statistics"),
        ("get", "/api/mystery-boxes/tpl-1/preview"),
        ("get", "/api/mystery-boxes/instances/inst-1"),
    ],
)
def test_template_routes_require_a_shop(client, method, path):
    http, service = client
    kwargs = {"json": {}} if method == "put" else {}

    response = getattr(http, method)(path, **kwargs)

    assert response.status_code == 400
    assert response.json() == {"error": "Shop parameter is required"}
    assert service.calls == []


def test_template_reads_are_scoped_to_the_requesting_shop(client):
    http, service = client

    response = http.get(f"/api/mystery-boxes/tpl-1?shop={SHOP}")

    assert response.status_code == 200
    assert service.calls == [("get_template", "tpl-1", SHOP)]
