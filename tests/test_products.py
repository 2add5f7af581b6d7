from decimal import Decimal

from conftest import make_product


def test_create_and_get_product(client, producer_headers, client_headers):
    product = make_product(client, producer_headers, name="Shiitake", price="12.50")
    assert product["name"] == "Shiitake"
    assert Decimal(str(product["price"])) == Decimal("12.50")
    assert Decimal(str(product["stock_quantity"])) == Decimal("20")

    res = client.get(f"/products/{product['id']}", headers=client_headers)
    assert res.status_code == 200
    assert res.json()["id"] == product["id"]


def test_clients_cannot_create_products(client, client_headers):
    res = client.post(
        "/products",
        json={"name": "X", "price": "1", "type": "FRESH", "unit": "kg"},
        headers=client_headers,
    )
    assert res.status_code == 403


def test_list_filters_and_sorting(client, producer_headers, client_headers):
    make_product(client, producer_headers, name="Cheap", price="2.00")
    make_product(client, producer_headers, name="Dear", price="30.00", type="DRIED")
    make_product(client, producer_headers, name="Hidden", price="5.00", available=False)

    res = client.get("/products", params={"sort_by": "price_asc"}, headers=client_headers)
    assert res.status_code == 200
    body = res.json()
    names = [p["name"] for p in body["products"]]
    # clients only see available products by default
    assert names == ["Cheap", "Dear"]
    assert body["pagination"]["total"] == 2

    res = client.get("/products", params={"type": "DRIED"}, headers=client_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Dear"]

    res = client.get("/products", params={"min_price": "3", "max_price": "40"}, headers=client_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Dear"]

    res = client.get("/products", params={"search": "chea"}, headers=client_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Cheap"]


def test_producer_only_sees_own_products(client, producer_headers, other_producer_headers):
    make_product(client, producer_headers, name="Mine")
    make_product(client, other_producer_headers, name="Theirs")

    res = client.get("/products", headers=producer_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Mine"]


def test_update_and_delete_require_ownership(client, producer_headers, other_producer_headers, product):
    res = client.patch(f"/products/{product['id']}", json={"price": "11.00"}, headers=other_producer_headers)
    assert res.status_code == 403

    res = client.patch(f"/products/{product['id']}", json={"price": "11.00"}, headers=producer_headers)
    assert res.status_code == 200
    assert Decimal(str(res.json()["price"])) == Decimal("11.00")

    assert client.delete(f"/products/{product['id']}", headers=other_producer_headers).status_code == 403
    res = client.delete(f"/products/{product['id']}", headers=producer_headers)
    assert res.status_code == 200
    assert res.json() == {"deleted": True, "id": product["id"]}
    assert client.get(f"/products/{product['id']}", headers=producer_headers).status_code == 404


def test_product_in_an_order_cannot_be_deleted(client, producer_headers, client_headers, product):
    res = client.post("/orders", json={"items": [{"product_id": product["id"], "quantity": "1"}]}, headers=client_headers)
    assert res.status_code == 201

    res = client.delete(f"/products/{product['id']}", headers=producer_headers)
    assert res.status_code == 409


def test_low_stock_update_notifies_producer(client, producer_headers, product):
    res = client.patch(f"/products/{product['id']}/stock", json={"quantity": "3"}, headers=producer_headers)
    assert res.status_code == 200
    assert Decimal(str(res.json()["stock_quantity"])) == Decimal("3")

    res = client.get("/notifications", params={"type": "LOW_STOCK"}, headers=producer_headers)
    assert res.status_code == 200
    assert len(res.json()["notifications"]) == 1


def test_stock_cannot_be_negative(client, producer_headers, product):
    res = client.patch(f"/products/{product['id']}/stock", json={"quantity": "-1"}, headers=producer_headers)
    assert res.status_code == 422


def _cart_with(client, headers, product_id, quantity):
    res = client.post("/orders", json={"items": [{"product_id": product_id, "quantity": quantity}]}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def test_stock_history_records_every_movement(client, producer_headers, client_headers, product):
    order = _cart_with(client, client_headers, product["id"], "7")
    item_id = order["items"][0]["id"]
    client.patch(f"/orders/items/{item_id}", json={"quantity": "5"}, headers=client_headers)
    client.patch(f"/products/{product['id']}/stock", json={"quantity": "30"}, headers=producer_headers)

    res = client.get(f"/products/{product['id']}/stock-history", headers=producer_headers)
    assert res.status_code == 200
    history = res.json()["history"]
    assert [h["type"] for h in history] == ["initial", "sale", "return", "adjustment"]
    assert [Decimal(str(h["balance"])) for h in history] == [Decimal("20"), Decimal("13"), Decimal("15"), Decimal("30")]
    assert history[1]["order_id"] == order["id"]
    assert history[2]["order_id"] == order["id"]
    assert Decimal(str(history[2]["quantity"])) == Decimal("2")
    # adjustments are signed deltas
    assert Decimal(str(history[3]["quantity"])) == Decimal("15")
    assert history[3]["order_id"] is None


def test_stock_history_sell_through(client, producer_headers, client_headers, product):
    _cart_with(client, client_headers, product["id"], "7")

    body = client.get(f"/products/{product['id']}/stock-history", headers=producer_headers).json()
    assert Decimal(str(body["current_stock"])) == Decimal("13")
    assert Decimal(str(body["weekly_rate"])) == Decimal("1.75")
    assert body["days_until_empty"] == 52


def test_stock_history_without_sales(client, producer_headers, product):
    body = client.get(f"/products/{product['id']}/stock-history", headers=producer_headers).json()
    assert Decimal(str(body["weekly_rate"])) == Decimal("0")
    assert body["days_until_empty"] is None


def test_stock_history_is_for_the_owner(client, other_producer_headers, client_headers, admin_headers, product):
    assert client.get(f"/products/{product['id']}/stock-history", headers=other_producer_headers).status_code == 403
    assert client.get(f"/products/{product['id']}/stock-history", headers=client_headers).status_code == 403
    assert client.get(f"/products/{product['id']}/stock-history", headers=admin_headers).status_code == 200


def test_stock_alert_defaults_and_upsert(client, producer_headers, other_producer_headers, product):
    res = client.get(f"/products/{product['id']}/alerts", headers=producer_headers)
    assert res.status_code == 200
    body = res.json()
    assert Decimal(str(body["threshold"])) == Decimal("0")
    assert body["percentage"] is False
    assert body["email_alert"] is True

    alert = {"threshold": "2", "percentage": False, "email_alert": False}
    res = client.post(f"/products/{product['id']}/alerts", json=alert, headers=producer_headers)
    assert res.status_code == 200
    res = client.post(f"/products/{product['id']}/alerts", json={**alert, "threshold": "4"}, headers=producer_headers)
    assert res.status_code == 200

    body = client.get(f"/products/{product['id']}/alerts", headers=producer_headers).json()
    assert Decimal(str(body["threshold"])) == Decimal("4")
    assert body["email_alert"] is False

    res = client.post(f"/products/{product['id']}/alerts", json=alert, headers=other_producer_headers)
    assert res.status_code == 403
    res = client.post(f"/products/{product['id']}/alerts", json={**alert, "threshold": "-1"}, headers=producer_headers)
    assert res.status_code == 422


def test_absolute_alert_replaces_the_default_threshold(client, producer_headers, product):
    client.post(
        f"/products/{product['id']}/alerts",
        json={"threshold": "2", "percentage": False, "email_alert": True},
        headers=producer_headers,
    )
    # low under the default threshold, not under the product's own
    client.patch(f"/products/{product['id']}/stock", json={"quantity": "3"}, headers=producer_headers)
    res = client.get("/notifications", params={"type": "LOW_STOCK"}, headers=producer_headers)
    assert res.json()["notifications"] == []


def test_percentage_alert_mails_the_producer(monkeypatch, client, producer_headers, product):
    from marketplace.routers import product_router

    emitted = []
    monkeypatch.setattr(product_router, "emit_event", lambda key, payload: emitted.append((key, payload)))

    client.post(
        f"/products/{product['id']}/alerts",
        json={"threshold": "50", "percentage": True, "email_alert": True},
        headers=producer_headers,
    )
    # half of the initial 20
    client.patch(f"/products/{product['id']}/stock", json={"quantity": "11"}, headers=producer_headers)
    assert emitted == []

    client.patch(f"/products/{product['id']}/stock", json={"quantity": "9"}, headers=producer_headers)
    assert len(emitted) == 1
    key, payload = emitted[0]
    assert key == "stock.low"
    assert payload["product_name"] == product["name"]
    assert payload["user_email"] == "farm@example.com"
    assert len(client.get("/notifications", params={"type": "LOW_STOCK"}, headers=producer_headers).json()["notifications"]) == 1


def test_low_stock_without_mail(monkeypatch, client, producer_headers, product):
    from marketplace.routers import product_router

    emitted = []
    monkeypatch.setattr(product_router, "emit_event", lambda key, payload: emitted.append(key))

    client.post(
        f"/products/{product['id']}/alerts",
        json={"threshold": "10", "percentage": False, "email_alert": False},
        headers=producer_headers,
    )
    client.patch(f"/products/{product['id']}/stock", json={"quantity": "8"}, headers=producer_headers)
    assert emitted == []
    assert len(client.get("/notifications", params={"type": "LOW_STOCK"}, headers=producer_headers).json()["notifications"]) == 1
