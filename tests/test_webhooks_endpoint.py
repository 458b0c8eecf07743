import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from src.auth.context import AuthContext
from src.auth.dependencies import get_current_auth
from src.domain import platforms
from src.main import app
from src.routers import webhooks as webhooks_router


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.insert_payload = None
        self.update_payload = None
        self.filters = []

    def select(self, _fields: str):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.insert_payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.update_payload = payload
        return self

    def eq(self, key: str, value):
        self.filters.append((key, value))
        return self

    def _matches(self, row: dict) -> bool:
        return all(row.get(key) == value for key, value in self.filters)

    def execute(self):
        table = self.db.tables.setdefault(self.table_name, [])
        if self.operation == "insert":
            if self.table_name == "webhook_events":
                platform = self.insert_payload.get("platform")
                event_key = self.insert_payload.get("event_key")
                for row in table:
                    if row.get("platform") == platform and row.get("event_key") == event_key:
                        raise Exception("duplicate key value violates unique constraint")
            row = dict(self.insert_payload or {})
            row.setdefault("id", f"{self.table_name}-{len(table)+1}")
            row.setdefault("created_at", _ts())
            table.append(row)
            return FakeResponse([row])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self.update_payload or {})
                    updated.append(dict(row))
            return FakeResponse(updated)

        rows = [dict(row) for row in table if self._matches(row)]
        return FakeResponse(rows)


class FakeSupabase:
    def __init__(self, tables: dict):
        self.tables = tables

    def table(self, table_name: str):
        return FakeQuery(table_name, self)


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def _config(config_id: str, user_id: str, platform: str, secret: str, credentials: dict | None = None) -> dict:
    return {
        "id": config_id,
        "user_id": user_id,
        "platform": platform,
        "webhook_url": f"https://api.example/api/webhooks/{platform}",
        "webhook_secret": secret,
        "events": [],
        "credentials": credentials or {},
        "external_webhook_ids": [],
        "is_active": True,
        "last_triggered": None,
    }


def _b64_sig(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _hex_sig(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode()


def _shopify_order(order_id: int = 5001, **overrides) -> dict:
    order = {
        "id": order_id,
        "financial_status": "pending",
        "fulfillment_status": None,
        "total_price": "99.90",
        "customer": {"first_name": "Ana", "last_name": "Souza", "email": "ana@example.com"},
        "shipping_address": {"city": "Recife", "province": "PE"},
        "fulfillments": [],
    }
    order.update(overrides)
    return order


def _post_shopify(client: TestClient, payload: dict, *, topic: str, secret: str = "shop-secret", delivery_id=None):
    body = _body(payload)
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Hmac-Sha256": _b64_sig(body, secret),
    }
    if delivery_id:
        headers["X-Shopify-Webhook-Id"] = delivery_id
    return client.post("/api/webhooks/shopify", content=body, headers=headers)


def _clear_overrides():
    app.dependency_overrides.clear()


def test_unknown_platform_returns_404(monkeypatch):
    monkeypatch.setattr(webhooks_router, "supabase", FakeSupabase({}))
    client = TestClient(app)

    response = client.post("/api/webhooks/magento", json={"id": 1})
    assert response.status_code == 404


def test_invalid_signature_is_rejected_without_writes(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(client, _shopify_order(), topic="orders/create", secret="wrong-secret")
    missing = client.post(
        "/api/webhooks/shopify",
        content=_body(_shopify_order()),
        headers={"X-Shopify-Topic": "orders/create"},
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid webhook signature"
    assert missing.status_code == 401
    assert fake_db.tables["webhook_events"] == []
    assert fake_db.tables["orders"] == []
    assert fake_db.tables["webhook_configs"][0]["last_triggered"] is None


def test_signature_without_active_config_is_rejected(monkeypatch):
    fake_db = FakeSupabase({"webhook_configs": [], "webhook_events": [], "orders": []})
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(client, _shopify_order(), topic="orders/create")
    assert response.status_code == 401
    assert fake_db.tables["webhook_events"] == []


def test_signed_order_create_inserts_order_for_config_owner(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(client, _shopify_order(), topic="orders/create", delivery_id="delivery-1")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processed"
    assert body["event_type"] == "orders/create"
    assert body["event_key"] == "delivery-1"
    assert body["action"] == "create"

    orders = fake_db.tables["orders"]
    assert len(orders) == 1
    assert orders[0]["user_id"] == "u-1"
    assert orders[0]["external_id"] == "5001"
    assert orders[0]["status"] == "pending"
    assert orders[0]["customer_name"] == "Ana Souza"

    events = fake_db.tables["webhook_events"]
    assert len(events) == 1
    assert events[0]["status"] == "completed"
    assert events[0]["config_id"] == "cfg-1"
    assert events[0]["processed_at"] is not None
    assert fake_db.tables["webhook_configs"][0]["last_triggered"] is not None


def test_duplicate_delivery_is_ignored(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    first = _post_shopify(client, _shopify_order(), topic="orders/create")
    second = _post_shopify(client, _shopify_order(), topic="orders/create")

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate_ignored"
    assert second.json()["event_key"] == first.json()["event_key"]
    assert len(fake_db.tables["webhook_events"]) == 1
    assert len(fake_db.tables["orders"]) == 1


def test_update_and_fulfilled_events_upsert_existing_order(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    _post_shopify(client, _shopify_order(), topic="orders/create", delivery_id="d-1")
    updated = _post_shopify(
        client,
        _shopify_order(total_price="120.00"),
        topic="orders/updated",
        delivery_id="d-2",
    )
    fulfilled = _post_shopify(
        client,
        _shopify_order(fulfillments=[{"tracking_number": "BR123", "tracking_company": "Correios"}]),
        topic="orders/fulfilled",
        delivery_id="d-3",
    )

    assert updated.json()["action"] == "update"
    assert fulfilled.json()["action"] == "fulfilled"
    orders = fake_db.tables["orders"]
    assert len(orders) == 1
    assert orders[0]["order_value"] == 120.0
    assert orders[0]["tracking_code"] == "BR123"
    assert orders[0]["carrier"] == "Correios"
    assert orders[0]["status"] == "in_transit"


def test_update_for_unknown_order_inserts_it(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(client, _shopify_order(order_id=6000), topic="orders/updated")

    assert response.status_code == 200
    assert [row["external_id"] for row in fake_db.tables["orders"]] == ["6000"]


def test_unhandled_event_is_recorded_without_touching_orders(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(client, {"id": 1, "title": "Camiseta"}, topic="products/update")

    assert response.status_code == 200
    assert response.json()["action"] == "ignored"
    assert fake_db.tables["orders"] == []
    assert fake_db.tables["webhook_events"][0]["status"] == "completed"


def test_processing_failure_marks_event_failed(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(client, {"financial_status": "paid"}, topic="orders/create")

    assert response.status_code == 500
    assert response.json()["detail"]["type"] == "webhook_processing_failed"
    event = fake_db.tables["webhook_events"][0]
    assert event["status"] == "failed"
    assert "missing id" in event["error_message"]
    assert fake_db.tables["orders"] == []


def test_invalid_json_with_valid_signature_returns_400(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)
    body = b"not-json"

    response = client.post(
        "/api/webhooks/shopify",
        content=body,
        headers={"X-Shopify-Hmac-Sha256": _b64_sig(body, "shop-secret")},
    )

    assert response.status_code == 400
    assert fake_db.tables["webhook_events"] == []


def test_woocommerce_signature_selects_matching_tenant(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [
                _config("cfg-a", "u-a", "woocommerce", "secret-a"),
                _config("cfg-b", "u-b", "woocommerce", "secret-b"),
            ],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)
    body = _body({"id": 812, "status": "processing", "billing": {"first_name": "João"}})

    response = client.post(
        "/api/webhooks/woocommerce",
        content=body,
        headers={
            "X-WC-Webhook-Topic": "order.created",
            "X-WC-Webhook-Delivery-ID": "wc-1",
            "X-WC-Webhook-Signature": _b64_sig(body, "secret-b"),
        },
    )

    assert response.status_code == 200
    orders = fake_db.tables["orders"]
    assert len(orders) == 1
    assert orders[0]["user_id"] == "u-b"
    assert orders[0]["status"] == "in_transit"
    assert fake_db.tables["webhook_events"][0]["config_id"] == "cfg-b"


def test_mercadolivre_unsigned_notification_is_audited_and_expanded(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [
                _config("cfg-1", "u-1", "mercadolivre", "ml-1", {"access_token": "tok-1", "user_id": "111"}),
                _config("cfg-2", "u-2", "mercadolivre", "ml-2", {"access_token": "tok-2", "user_id": "222"}),
            ],
            "webhook_events": [],
            "orders": [],
        }
    )
    fetched = []

    def _fake_get_order(**kwargs):
        fetched.append((kwargs["access_token"], kwargs["order_id"]))
        return {"id": 2000003508, "status": "paid", "buyer": {"nickname": "COMPRADOR"}}

    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    monkeypatch.setattr(webhooks_router.settings, "mercadolivre_signature_mode", "permissive_audit")
    monkeypatch.setattr(platforms.mercadolivre_client, "get_order", _fake_get_order)
    client = TestClient(app)

    response = client.post(
        "/api/webhooks/mercadolivre",
        json={"_id": "notif-1", "resource": "/orders/2000003508", "user_id": 222, "topic": "orders_v2"},
    )

    assert response.status_code == 200
    assert response.json()["event_key"] == "notif-1"
    assert response.json()["action"] == "update"
    assert fetched == [("tok-2", "2000003508")]
    orders = fake_db.tables["orders"]
    assert orders[0]["user_id"] == "u-2"
    assert orders[0]["status"] == "in_transit"
    assert orders[0]["customer_name"] == "COMPRADOR"


def test_mercadolivre_enforce_mode_rejects_unsigned(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "mercadolivre", "ml-1", {"access_token": "tok"})],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    monkeypatch.setattr(webhooks_router.settings, "mercadolivre_signature_mode", "enforce")
    client = TestClient(app)

    response = client.post("/api/webhooks/mercadolivre", json={"resource": "/orders/1", "topic": "orders_v2"})

    assert response.status_code == 401
    assert fake_db.tables["webhook_events"] == []


def test_mercadolivre_enforce_mode_accepts_signed(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "mercadolivre", "ml-secret", {"access_token": "tok"})],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    monkeypatch.setattr(webhooks_router.settings, "mercadolivre_signature_mode", "enforce")
    monkeypatch.setattr(
        platforms.mercadolivre_client,
        "get_order",
        lambda **kwargs: {"id": 1234, "status": "delivered"},
    )
    client = TestClient(app)
    manifest = "id:1234;request-id:req-abc;ts:1704908010;"
    digest = hmac.new(b"ml-secret", manifest.encode(), hashlib.sha256).hexdigest()

    response = client.post(
        "/api/webhooks/mercadolivre?data.id=1234&type=orders_v2",
        json={"resource": "/orders/1234", "topic": "orders_v2"},
        headers={"x-signature": f"ts=1704908010,v1={digest}", "x-request-id": "req-abc"},
    )

    assert response.status_code == 200
    assert response.json()["event_key"] == "req-abc"
    assert fake_db.tables["orders"][0]["status"] == "delivered"


def test_mercadolivre_without_config_is_rejected(monkeypatch):
    fake_db = FakeSupabase({"webhook_configs": [], "webhook_events": [], "orders": []})
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    monkeypatch.setattr(webhooks_router.settings, "mercadolivre_signature_mode", "permissive_audit")
    client = TestClient(app)

    response = client.post("/api/webhooks/mercadolivre", json={"resource": "/orders/1", "topic": "orders_v2"})
    assert response.status_code == 401


def test_nuvemshop_notification_uses_app_secret_and_fetches_order(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [
                _config("cfg-1", "u-1", "nuvemshop", "", {"store_id": "123", "access_token": "nv-tok"}),
            ],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    monkeypatch.setattr(webhooks_router.settings, "nuvemshop_webhook_secret", "nv-secret")
    monkeypatch.setattr(
        platforms.nuvemshop_client,
        "get_order",
        lambda **kwargs: {
            "id": int(kwargs["order_id"]),
            "number": 1042,
            "shipping_status": "unpacked",
            "contact_name": "Maria Silva",
        },
    )
    client = TestClient(app)
    body = _body({"store_id": 123, "event": "order/created", "id": 77})

    response = client.post(
        "/api/webhooks/nuvemshop",
        content=body,
        headers={"X-Linkedstore-HMAC-SHA256": _hex_sig(body, "nv-secret")},
    )

    assert response.status_code == 200
    assert response.json()["event_type"] == "order/created"
    order = fake_db.tables["orders"][0]
    assert order["external_id"] == "77"
    assert order["tracking_code"] == "NV1042"
    assert order["status"] == "pending"


def test_nuvemshop_repeated_notification_body_applies_each_order_change(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_configs": [
                _config("cfg-1", "u-1", "nuvemshop", "", {"store_id": "123", "access_token": "nv-tok"}),
            ],
            "webhook_events": [],
            "orders": [],
        }
    )
    shipping_states = ["packed", "shipped"]
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    monkeypatch.setattr(webhooks_router.settings, "nuvemshop_webhook_secret", "nv-secret")
    monkeypatch.setattr(
        platforms.nuvemshop_client,
        "get_order",
        lambda **kwargs: {
            "id": int(kwargs["order_id"]),
            "number": 1042,
            "shipping_status": shipping_states.pop(0),
        },
    )
    client = TestClient(app)
    body = _body({"store_id": 123, "event": "order/updated", "id": 77})
    headers = {"X-Linkedstore-HMAC-SHA256": _hex_sig(body, "nv-secret")}

    first = client.post("/api/webhooks/nuvemshop", content=body, headers=headers)
    assert fake_db.tables["orders"][0]["status"] == "pending"
    second = client.post("/api/webhooks/nuvemshop", content=body, headers=headers)

    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "processed"
    assert first.json()["event_key"] != second.json()["event_key"]
    assert len(fake_db.tables["webhook_events"]) == 2
    assert len(fake_db.tables["orders"]) == 1
    assert fake_db.tables["orders"][0]["status"] == "in_transit"


class _RacingOrderInsertQuery(FakeQuery):
    def execute(self):
        if self.table_name == "orders" and self.operation == "insert" and not self.db.raced:
            # Another delivery commits the same order between our lookup and insert.
            self.db.raced = True
            self.db.tables["orders"].append(
                {
                    "id": "orders-concurrent",
                    "user_id": self.insert_payload["user_id"],
                    "platform": self.insert_payload["platform"],
                    "external_id": self.insert_payload["external_id"],
                    "status": "pending",
                    "order_value": 99.9,
                    "tracking_code": "",
                    "created_at": _ts(),
                }
            )
            raise Exception('duplicate key value violates unique constraint "orders_user_id_platform_external_id_key"')
        return super().execute()


class _RacingOrderInsertSupabase(FakeSupabase):
    raced = False

    def table(self, table_name: str):
        return _RacingOrderInsertQuery(table_name, self)


def test_order_inserted_concurrently_is_updated_instead(monkeypatch):
    fake_db = _RacingOrderInsertSupabase(
        {
            "webhook_configs": [_config("cfg-1", "u-1", "shopify", "shop-secret")],
            "webhook_events": [],
            "orders": [],
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)
    client = TestClient(app)

    response = _post_shopify(
        client,
        _shopify_order(total_price="150.00", fulfillment_status="partial"),
        topic="orders/updated",
        delivery_id="d-race",
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    orders = fake_db.tables["orders"]
    assert len(orders) == 1
    assert orders[0]["id"] == "orders-concurrent"
    assert orders[0]["order_value"] == 150.0
    assert orders[0]["status"] == "in_transit"
    assert fake_db.tables["webhook_events"][0]["status"] == "completed"


def test_event_listing_is_scoped_to_current_user(monkeypatch):
    fake_db = FakeSupabase(
        {
            "webhook_events": [
                {
                    "id": "evt-1",
                    "user_id": "u-1",
                    "config_id": "cfg-1",
                    "platform": "shopify",
                    "event_key": "k-1",
                    "event_type": "orders/create",
                    "status": "completed",
                    "payload": {"id": 1},
                    "created_at": "2024-01-01T00:00:00+00:00",
                },
                {
                    "id": "evt-2",
                    "user_id": "u-2",
                    "config_id": "cfg-2",
                    "platform": "shopify",
                    "event_key": "k-2",
                    "event_type": "orders/create",
                    "status": "failed",
                    "payload": {"id": 2},
                    "created_at": "2024-01-02T00:00:00+00:00",
                },
            ]
        }
    )
    monkeypatch.setattr(webhooks_router, "supabase", fake_db)

    async def _override():
        return AuthContext(user_id="u-1")

    app.dependency_overrides[get_current_auth] = _override
    client = TestClient(app)

    listing = client.get("/api/webhooks/events")
    detail = client.get("/api/webhooks/events/evt-1")
    foreign = client.get("/api/webhooks/events/evt-2")
    _clear_overrides()

    assert listing.status_code == 200
    assert [row["id"] for row in listing.json()] == ["evt-1"]
    assert detail.status_code == 200
    assert detail.json()["payload"] == {"id": 1}
    assert foreign.status_code == 404


def test_event_listing_requires_auth():
    client = TestClient(app)
    response = client.get("/api/webhooks/events")
    assert response.status_code == 401
