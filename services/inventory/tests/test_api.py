import pytest
from fastapi.testclient import TestClient

from conftest import FakeRedis, alert_logs, movements_of, stock_of
from khopos_inventory import models
from khopos_inventory.cache import ReportCache, get_report_cache
from khopos_inventory.exceptions import StorageError
from khopos_inventory.ledger import StockLedger
from khopos_inventory.main import app


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/healthz").json() == {"status": "healthy"}


def test_requires_token(client):
    assert client.get("/inventory").status_code in (401, 403)


def test_invalid_token_is_rejected(client):
    response = client.get("/inventory", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_cashier_cannot_write_stock(client, auth_headers, make_product):
    pid = make_product(stock=5)
    response = client.put(
        "/inventory/stock", json={"product_id": pid, "new_stock": 9}, headers=auth_headers("cashier")
    )
    assert response.status_code == 403


def test_manager_sets_stock(client, db, auth_headers, make_product):
    pid = make_product(stock=5, min_stock=1)

    response = client.put(
        "/inventory/stock", json={"product_id": pid, "new_stock": 9}, headers=auth_headers("manager", user_id=4)
    )
    body = response.json()

    assert response.status_code == 200
    assert (body["previous_stock"], body["new_stock"], body["movement_type"]) == (5, 9, "purchase")
    assert movements_of(db, pid)[0].user_id == 4

    again = client.put("/inventory/stock", json={"product_id": pid, "new_stock": 9}, headers=auth_headers())
    assert again.json()["movement_id"] is None
    assert again.json()["message"] == "Stock unchanged"


def test_movement_errors_map_to_status(client, auth_headers, make_product):
    pid = make_product(stock=2)
    headers = auth_headers()

    negative = client.post(
        "/inventory/movement",
        json={"product_id": pid, "movement_type": "sale", "quantity_change": -5},
        headers=headers,
    )
    assert negative.status_code == 400
    assert negative.json()["resulting_stock"] == -3

    missing = client.post(
        "/inventory/movement",
        json={"product_id": 404, "movement_type": "sale", "quantity_change": -1},
        headers=headers,
    )
    assert missing.status_code == 404

    bad_type = client.post(
        "/inventory/movement",
        json={"product_id": pid, "movement_type": "theft", "quantity_change": -1},
        headers=headers,
    )
    assert bad_type.status_code == 422


def test_movement_and_history(client, auth_headers, make_product):
    pid = make_product(stock=20, min_stock=5)

    created = client.post(
        "/inventory/movement",
        json={"product_id": pid, "movement_type": "sale", "quantity_change": -16, "reference_id": 99, "reference_type": "order"},
        headers=auth_headers(),
    )
    assert created.status_code == 201
    assert created.json()["new_stock"] == 4

    history = client.get(f"/inventory/movements/{pid}", headers=auth_headers("cashier")).json()
    assert history["pagination"]["total"] == 1
    assert history["data"][0]["quantity_before"] == 20
    assert history["data"][0]["quantity_after"] == 4

    alerts = client.get("/inventory/alerts", headers=auth_headers("cashier")).json()
    assert [p["id"] for p in alerts["low_stock"]] == [pid]
    assert alerts["recent_alerts"][0]["entity_id"] == pid

    assert client.get("/inventory/movements/12345", headers=auth_headers()).status_code == 404


def test_batch_movement_partial_failure(client, auth_headers, make_product):
    a = make_product(stock=10, min_stock=0)
    b = make_product(stock=1, min_stock=0)
    c = make_product(stock=4, min_stock=0)

    response = client.post(
        "/inventory/batch-movement",
        json={"movements": [
            {"product_id": a, "movement_type": "sale", "quantity_change": -2},
            {"product_id": b, "movement_type": "sale", "quantity_change": -5},
            {"product_id": c, "movement_type": "purchase", "quantity_change": 6},
        ]},
        headers=auth_headers(),
    )
    body = response.json()

    assert response.status_code == 200
    assert (body["total_processed"], body["successful"], body["failed"]) == (3, 2, 1)
    assert [r["success"] for r in body["results"]] == [True, False, True]
    assert body["results"][0]["new_stock"] == 8
    assert body["results"][2]["new_stock"] == 10


def test_low_stock_and_valuation(client, auth_headers, make_product):
    make_product(stock=50, min_stock=5)
    low = make_product(stock=1, min_stock=10)

    low_stock = client.get("/inventory/low-stock", headers=auth_headers("cashier")).json()
    assert [p["id"] for p in low_stock] == [low]
    assert low_stock[0]["is_low_stock"] is True

    assert client.get("/inventory/valuation", headers=auth_headers("cashier")).status_code == 403
    valuation = client.get("/inventory/valuation", headers=auth_headers("manager")).json()
    assert valuation["summary"]["total_items"] == 51
    assert valuation["summary"]["total_value"] == pytest.approx(51 * 2.5)


def test_inventory_overview(client, auth_headers, make_product):
    make_product(stock=0, min_stock=2, name="Rice")
    make_product(stock=9, min_stock=2, name="Soy milk")

    overview = client.get("/inventory", headers=auth_headers("cashier")).json()
    assert overview["summary"]["total_products"] == 2
    assert overview["summary"]["out_of_stock"] == 1
    assert overview["summary"]["low_stock"] == 1
    assert [p["name"] for p in overview["products"]] == ["Rice", "Soy milk"]

    searched = client.get("/inventory?search=soy", headers=auth_headers("cashier")).json()
    assert [p["name"] for p in searched["products"]] == ["Soy milk"]
    assert searched["pagination"]["total"] == 1


def test_reconcile_endpoint(client, auth_headers, make_product):
    pid = make_product(stock=3, min_stock=0)
    client.post(
        "/inventory/movement",
        json={"product_id": pid, "movement_type": "purchase", "quantity_change": 7},
        headers=auth_headers(),
    )

    report = client.get(f"/inventory/reconcile/{pid}", headers=auth_headers()).json()
    assert report["reconciled"] is True
    assert report["stock"] == 10


def test_product_lifecycle_goes_through_ledger(client, db, auth_headers):
    created = client.post(
        "/products",
        json={"name": "Fish sauce", "price": "3.20", "cost_price": "2.10", "stock": 12, "min_stock": 3},
        headers=auth_headers(),
    )
    assert created.status_code == 201
    product = created.json()
    assert product["stock"] == 12
    assert product["recent_movements"][0]["notes"] == "Initial inventory for new product"
    assert product["recent_movements"][0]["movement_type"] == "purchase"

    updated = client.put(
        f"/products/{product['id']}", json={"stock": 4, "price": "3.50"}, headers=auth_headers()
    ).json()
    assert updated["stock"] == 4
    assert updated["recent_movements"][0]["movement_type"] == "adjustment"
    assert updated["recent_movements"][0]["notes"] == "Stock adjustment"

    listed = client.get("/products", headers=auth_headers("cashier")).json()
    assert [p["id"] for p in listed] == [product["id"]]

    assert client.delete(f"/products/{product['id']}", headers=auth_headers()).status_code == 204
    db.expire_all()
    assert db.get(models.Product, product["id"]).active is False
    assert client.get("/products", headers=auth_headers("cashier")).json() == []


def test_order_places_and_deducts_stock(client, db, auth_headers, make_product):
    a = make_product(stock=10, min_stock=0)

    response = client.post(
        "/orders",
        json={"items": [{"product_id": a, "quantity": 3, "price": "2.00"}], "total": "6.00"},
        headers=auth_headers("cashier", user_id=7),
    )
    order = response.json()

    assert response.status_code == 201
    assert order["status"] == "completed"
    assert stock_of(db, a) == 7
    assert movements_of(db, a)[0].reference_id == order["id"]

    assert client.get(f"/orders/{order['id']}", headers=auth_headers("cashier", user_id=7)).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=auth_headers("cashier", user_id=8)).status_code == 403


def test_order_with_insufficient_stock_is_rolled_back(client, db, auth_headers, make_product):
    a = make_product(stock=10, min_stock=0)
    b = make_product(stock=5, min_stock=0)

    response = client.post(
        "/orders",
        json={"items": [
            {"product_id": a, "quantity": 3, "price": "1.00"},
            {"product_id": b, "quantity": 1000, "price": "1.00"},
        ]},
        headers=auth_headers("cashier"),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "InsufficientStockError"
    assert stock_of(db, a) == 10 and stock_of(db, b) == 5
    db.expire_all()
    assert db.query(models.Order).count() == 0


def test_order_validation(client, auth_headers, make_product):
    a = make_product(stock=10)
    headers = auth_headers("cashier")

    duplicate = client.post(
        "/orders",
        json={"items": [{"product_id": a, "quantity": 1, "price": "1"}, {"product_id": a, "quantity": 1, "price": "1"}]},
        headers=headers,
    )
    assert duplicate.status_code == 400

    mismatch = client.post(
        "/orders", json={"items": [{"product_id": a, "quantity": 2, "price": "1"}], "total": "5"}, headers=headers
    )
    assert mismatch.status_code == 400
    assert "mismatch" in mismatch.json()["detail"]


def test_order_low_stock_alert_runs_in_background(client, db, auth_headers, make_product):
    pid = make_product(stock=6, min_stock=5)

    client.post(
        "/orders", json={"items": [{"product_id": pid, "quantity": 2, "price": "1"}]}, headers=auth_headers("cashier")
    )

    assert len(alert_logs(db, pid)) == 1


def test_return_restocks_order_items(client, db, auth_headers, make_product):
    pid = make_product(stock=10, min_stock=0)
    order = client.post(
        "/orders", json={"items": [{"product_id": pid, "quantity": 4, "price": "1"}]}, headers=auth_headers("cashier")
    ).json()

    assert client.post(
        f"/orders/{order['id']}/returns", json={"items": [{"product_id": pid, "quantity": 1}]},
        headers=auth_headers("cashier"),
    ).status_code == 403

    response = client.post(
        f"/orders/{order['id']}/returns",
        json={"items": [{"product_id": pid, "quantity": 3, "return_reason": "Expired"}], "reason": "Customer complaint"},
        headers=auth_headers("manager"),
    )
    assert response.status_code == 201
    assert response.json()["movements"][0]["new_stock"] == 9
    assert movements_of(db, pid)[-1].notes == "Expired"

    too_many = client.post(
        f"/orders/{order['id']}/returns", json={"items": [{"product_id": pid, "quantity": 2}]},
        headers=auth_headers("manager"),
    )
    assert too_many.status_code == 400
    assert stock_of(db, pid) == 9


@pytest.fixture
def report_cache():
    cache = ReportCache(FakeRedis())
    app.dependency_overrides[get_report_cache] = lambda: cache
    yield cache
    app.dependency_overrides.pop(get_report_cache, None)


def test_catalog_changes_refresh_cached_reports(client, auth_headers, make_product, report_cache):
    gone = make_product(stock=1, min_stock=5)
    raised = make_product(stock=3, min_stock=0)
    headers = auth_headers("manager")

    assert [p["id"] for p in client.get("/inventory/low-stock", headers=headers).json()] == [gone]
    assert client.get("/inventory/valuation", headers=headers).json()["summary"]["total_value"] == pytest.approx(10.0)

    assert client.delete(f"/products/{gone}", headers=headers).status_code == 204
    assert client.get("/inventory/low-stock", headers=headers).json() == []

    client.put(f"/products/{raised}", json={"min_stock": 5, "cost_price": "4.00"}, headers=headers)
    assert [p["id"] for p in client.get("/inventory/low-stock", headers=headers).json()] == [raised]
    assert client.get("/inventory/valuation", headers=headers).json()["summary"]["total_value"] == pytest.approx(12.0)

    client.post("/products", json={"name": "Empty shelf", "price": "1", "stock": 0, "min_stock": 2}, headers=headers)
    assert len(client.get("/inventory/low-stock", headers=headers).json()) == 2


def test_failed_opening_stock_removes_product(client, db, auth_headers, monkeypatch):
    def failing_movement(self, *args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(StockLedger, "record_movement", failing_movement)

    response = client.post(
        "/products", json={"name": "Green tea", "price": "2.00", "stock": 5}, headers=auth_headers()
    )

    assert response.status_code == 500
    db.expire_all()
    assert db.query(models.Product).count() == 0


def test_product_lookup_by_barcode(client, auth_headers):
    created = client.post(
        "/products",
        json={"name": "Condensed milk", "barcode": "8934673123456", "price": "1.10", "stock": 6},
        headers=auth_headers(),
    ).json()

    found = client.get("/products/barcode/8934673123456", headers=auth_headers("cashier"))
    assert found.status_code == 200
    assert found.json()["id"] == created["id"]
    assert found.json()["stock"] == 6

    assert client.get("/products/barcode/0000000000000", headers=auth_headers("cashier")).status_code == 404
