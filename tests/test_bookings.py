import datetime as dt
from decimal import Decimal

import pytest

from conftest import make_slot
from marketplace.models import Booking


@pytest.fixture
def booking(client, producer_headers, client_headers, product):
    slot = make_slot(client, producer_headers, product["id"], max_capacity="10")
    order = client.post("/orders", json={"items": []}, headers=client_headers).json()
    res = client.post(
        f"/delivery-slots/{slot['id']}/book",
        json={"quantity": "3", "order_id": order["id"]},
        headers=client_headers,
    )
    assert res.status_code == 201, res.text
    return res.json()


def _stock(client, headers, product_id):
    return Decimal(str(client.get(f"/products/{product_id}", headers=headers).json()["stock_quantity"]))


def _reserved(client, headers, slot_id):
    return Decimal(str(client.get(f"/delivery-slots/{slot_id}", headers=headers).json()["reserved"]))


def test_booking_detail(client, client_headers, producer_headers, other_client_headers, booking):
    res = client.get(f"/bookings/{booking['id']}", headers=client_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["can_modify"] is True
    assert body["is_expired"] is False
    assert Decimal(str(body["total_value"])) == Decimal("30.00")
    assert body["days_until_delivery"] in (3, 4)
    assert body["slot"]["id"] == booking["slot_id"]

    assert client.get(f"/bookings/{booking['id']}", headers=producer_headers).status_code == 200
    assert client.get(f"/bookings/{booking['id']}", headers=other_client_headers).status_code == 403
    assert client.get("/bookings/999", headers=client_headers).status_code == 404


def test_change_quantity(client, client_headers, producer_headers, product, booking):
    res = client.patch(f"/bookings/{booking['id']}", json={"quantity": "5"}, headers=client_headers)
    assert res.status_code == 200
    assert Decimal(str(res.json()["quantity"])) == Decimal("5")
    assert _stock(client, producer_headers, product["id"]) == Decimal("15")
    assert _reserved(client, producer_headers, booking["slot_id"]) == Decimal("5")

    order = client.get(f"/orders/{booking['order_id']}", headers=client_headers).json()
    assert Decimal(str(order["total"])) == Decimal("50.00")

    res = client.patch(f"/bookings/{booking['id']}", json={"quantity": "11"}, headers=client_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "insufficient_capacity"

    res = client.patch(f"/bookings/{booking['id']}", json={"quantity": "2000"}, headers=client_headers)
    assert res.status_code == 422


def test_cancel_releases_capacity_and_stock(client, client_headers, producer_headers, product, booking):
    res = client.patch(f"/bookings/{booking['id']}", json={"status": "CANCELLED"}, headers=client_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "CANCELLED"
    assert _stock(client, producer_headers, product["id"]) == Decimal("20")
    assert _reserved(client, producer_headers, booking["slot_id"]) == Decimal("0")

    order = client.get(f"/orders/{booking['order_id']}", headers=client_headers).json()
    assert Decimal(str(order["total"])) == Decimal("0")

    res = client.patch(f"/bookings/{booking['id']}", json={"quantity": "1"}, headers=client_headers)
    assert res.status_code == 403


def test_producer_confirms_booking(client, producer_headers, client_headers, booking):
    res = client.patch(f"/bookings/{booking['id']}", json={"status": "CONFIRMED"}, headers=producer_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "CONFIRMED"
    assert res.json()["expires_at"] is None

    # the owner can no longer edit it
    res = client.patch(f"/bookings/{booking['id']}", json={"quantity": "1"}, headers=client_headers)
    assert res.status_code == 403


def test_delete_booking(client, client_headers, producer_headers, product, booking):
    res = client.delete(f"/bookings/{booking['id']}", headers=client_headers)
    assert res.status_code == 200
    assert res.json() == {"deleted": True, "id": booking["id"]}
    assert _stock(client, producer_headers, product["id"]) == Decimal("20")
    assert client.get(f"/bookings/{booking['id']}", headers=client_headers).status_code == 404

    order = client.get(f"/orders/{booking['order_id']}", headers=client_headers).json()
    assert order["bookings"] == []


def test_admin_deletes_confirmed_booking(client, client_headers, admin_headers, booking):
    client.post(f"/orders/{booking['order_id']}/checkout", json={}, headers=client_headers)
    assert client.delete(f"/bookings/{booking['id']}", headers=client_headers).status_code == 400
    assert client.delete(f"/bookings/{booking['id']}", headers=admin_headers).status_code == 200


def test_cleanup_expired_bookings(client, db, client_headers, producer_headers, product, booking):
    row = db.get(Booking, booking["id"])
    row.expires_at = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=5)
    db.commit()

    res = client.post("/bookings/cleanup", headers=producer_headers)
    assert res.status_code == 200
    assert res.json() == {"cleaned": 1, "booking_ids": [booking["id"]]}

    assert _stock(client, producer_headers, product["id"]) == Decimal("20")
    assert _reserved(client, producer_headers, booking["slot_id"]) == Decimal("0")
    detail = client.get(f"/bookings/{booking['id']}", headers=client_headers).json()
    assert detail["status"] == "CANCELLED"

    # nothing left to clean
    assert client.post("/bookings/cleanup", headers=client_headers).json()["cleaned"] == 0


def test_expired_holds_are_released_before_checkout(client, db, client_headers, booking):
    row = db.get(Booking, booking["id"])
    row.expires_at = dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1)
    db.commit()

    res = client.post(f"/orders/{booking['order_id']}/checkout", json={}, headers=client_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "order_empty"
