from decimal import Decimal

from conftest import PASSWORD, login, make_product, make_slot


def test_admin_only(client, client_headers, producer_headers):
    assert client.get("/admin/users", headers=client_headers).status_code == 403
    assert client.get("/admin/stats", headers=producer_headers).status_code == 403


def test_user_management_is_logged(client, admin_headers, client_headers):
    res = client.post(
        "/admin/users",
        json={"name": "New Producer", "email": "new@example.com", "password": PASSWORD, "role": "PRODUCER"},
        headers=admin_headers,
    )
    assert res.status_code == 201, res.text
    created = res.json()
    assert created["role"] == "PRODUCER"

    # producers created by an admin get a profile as well
    producer_headers = login(client, "new@example.com")
    assert client.get("/users/producer-profile", headers=producer_headers).status_code == 200

    res = client.get("/admin/users", params={"role": "PRODUCER"}, headers=admin_headers)
    assert [u["email"] for u in res.json()["users"]] == ["new@example.com"]
    res = client.get("/admin/users", params={"search": "new"}, headers=admin_headers)
    assert res.json()["pagination"]["total"] == 1

    res = client.patch(f"/admin/users/{created['id']}", json={"is_active": False}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["is_active"] is False

    # disabled accounts can neither log in nor use old tokens
    res = client.post("/auth/login", data={"email": "new@example.com", "password": PASSWORD})
    assert res.status_code == 403
    assert client.get("/users/me", headers=producer_headers).status_code == 403

    res = client.delete(f"/admin/users/{created['id']}", headers=admin_headers)
    assert res.status_code == 200

    logs = client.get("/admin/logs", params={"entity_type": "User"}, headers=admin_headers).json()
    assert [log["action"] for log in logs["logs"]] == ["DELETE_USER", "UPDATE_USER", "CREATE_USER"]
    assert logs["logs"][1]["details"]["changes"]["is_active"] == {"from": True, "to": False}


def test_admin_cannot_delete_self_or_users_with_orders(client, admin_headers, client_headers, product):
    me = client.get("/users/me", headers=admin_headers).json()
    res = client.delete(f"/admin/users/{me['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "cannot_delete_self"

    client.post("/orders", json={"items": [{"product_id": product["id"], "quantity": "1"}]}, headers=client_headers)
    customer = client.get("/users/me", headers=client_headers).json()
    res = client.delete(f"/admin/users/{customer['id']}", headers=admin_headers)
    assert res.status_code == 409

    assert client.delete("/admin/users/9999", headers=admin_headers).status_code == 404


def test_admin_duplicate_email(client, admin_headers, client_headers):
    res = client.post(
        "/admin/users",
        json={"name": "Copy", "email": "client@example.com", "password": PASSWORD},
        headers=admin_headers,
    )
    assert res.status_code == 400


def test_orders_and_notes(client, admin_headers, client_headers, product):
    order = client.post(
        "/orders", json={"items": [{"product_id": product["id"], "quantity": "2"}]}, headers=client_headers
    ).json()

    # drafts are not listed
    assert client.get("/admin/orders", headers=admin_headers).json()["orders"] == []

    client.post(f"/orders/{order['id']}/checkout", json={}, headers=client_headers)
    listed = client.get("/admin/orders", headers=admin_headers).json()
    assert [o["id"] for o in listed["orders"]] == [order["id"]]
    assert client.get("/admin/orders", params={"status": "CONFIRMED"}, headers=admin_headers).json()["pagination"][
        "total"
    ] == 1

    res = client.patch(f"/admin/orders/{order['id']}/notes", json={"admin_notes": "call first"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["admin_notes"] == "call first"
    assert client.patch("/admin/orders/999/notes", json={"admin_notes": "x"}, headers=admin_headers).status_code == 404

    # admins may move any order to any status
    res = client.patch(f"/orders/{order['id']}/status", json={"status": "DELIVERED"}, headers=admin_headers)
    assert res.status_code == 200


def test_stats(client, admin_headers, client_headers, producer_headers, product):
    order = client.post(
        "/orders", json={"items": [{"product_id": product["id"], "quantity": "3"}]}, headers=client_headers
    ).json()
    client.post(f"/orders/{order['id']}/checkout", json={}, headers=client_headers)

    stats = client.get("/admin/stats", headers=admin_headers).json()
    assert stats["users"]["total"] == 3
    assert stats["users"]["by_role"] == {"ADMIN": 1, "CLIENT": 1, "PRODUCER": 1}
    assert stats["orders"]["total"] == 1
    assert stats["orders"]["by_status"] == {"CONFIRMED": 1}
    assert Decimal(stats["orders"]["total_value"]) == Decimal("30.00")
    assert stats["products"]["by_type"] == {"FRESH": 1}
    assert stats["top_products"][0]["product_id"] == product["id"]
    assert Decimal(stats["top_products"][0]["quantity"]) == Decimal("3")
    assert len(stats["monthly_revenue"]) == 6
    assert Decimal(stats["monthly_revenue"][-1]["revenue"]) == Decimal("30.00")


def test_top_products_count_slot_bookings(client, admin_headers, client_headers, producer_headers, product):
    dried = make_product(client, producer_headers, name="Dried shiitake", type="DRIED")
    slot = make_slot(client, producer_headers, dried["id"], max_capacity="10")

    order = client.post(
        "/orders", json={"items": [{"product_id": product["id"], "quantity": "2"}]}, headers=client_headers
    ).json()
    res = client.post(
        f"/delivery-slots/{slot['id']}/book", json={"quantity": "5", "order_id": order["id"]}, headers=client_headers
    )
    assert res.status_code == 201, res.text
    client.post(f"/orders/{order['id']}/checkout", json={}, headers=client_headers)

    top = client.get("/admin/stats", headers=admin_headers).json()["top_products"]
    assert [row["product_id"] for row in top] == [dried["id"], product["id"]]
    assert top[0]["name"] == "Dried shiitake"
    assert Decimal(top[0]["quantity"]) == Decimal("5")
