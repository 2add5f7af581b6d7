from decimal import Decimal

import pytest


def _d(value):
    return Decimal(str(value))


def _wallet(client, headers):
    res = client.get("/wallet", headers=headers)
    assert res.status_code == 200, res.text
    return res.json()


@pytest.fixture
def paid_order(client, client_headers, product):
    order = client.post(
        "/orders", json={"items": [{"product_id": product["id"], "quantity": "4"}]}, headers=client_headers
    ).json()
    res = client.post(f"/orders/{order['id']}/checkout", json={"payment_method": "card"}, headers=client_headers)
    assert res.status_code == 200
    return res.json()


def _deliver(client, headers, order_id):
    for status in ("SHIPPED", "DELIVERED"):
        res = client.patch(f"/orders/{order_id}/status", json={"status": status}, headers=headers)
        assert res.status_code == 200, res.text


def test_checkout_credits_pending_balance(client, producer_headers, paid_order):
    assert _d(paid_order["platform_fee"]) == Decimal("2.00")

    wallet = _wallet(client, producer_headers)
    assert _d(wallet["pending_balance"]) == Decimal("38.00")
    assert _d(wallet["balance"]) == Decimal("0")
    assert _d(wallet["total_earned"]) == Decimal("38.00")

    sale = wallet["transactions"][0]
    assert sale["type"] == "SALE"
    assert sale["status"] == "PENDING"
    assert sale["order_id"] == paid_order["id"]
    assert sale["data"]["gross_amount"] == "40.00"


def test_delivery_moves_credit_to_balance(client, producer_headers, paid_order):
    _deliver(client, producer_headers, paid_order["id"])

    wallet = _wallet(client, producer_headers)
    assert _d(wallet["balance"]) == Decimal("38.00")
    assert _d(wallet["pending_balance"]) == Decimal("0")
    assert wallet["transactions"][0]["status"] == "COMPLETED"


def test_cancelled_order_reverses_pending_credit(client, producer_headers, paid_order):
    res = client.patch(f"/orders/{paid_order['id']}/status", json={"status": "CANCELLED"}, headers=producer_headers)
    assert res.status_code == 200

    wallet = _wallet(client, producer_headers)
    assert _d(wallet["pending_balance"]) == Decimal("0")
    assert _d(wallet["total_earned"]) == Decimal("0")
    assert wallet["transactions"][0]["status"] == "CANCELLED"


def test_withdrawal_needs_iban_and_balance(client, producer_headers, paid_order):
    _deliver(client, producer_headers, paid_order["id"])

    res = client.post("/wallet/withdraw", json={"amount": "10"}, headers=producer_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "bank_details_missing"

    client.patch("/users/producer-profile", json={"iban": "CH9300762011623852957"}, headers=producer_headers)
    res = client.post("/wallet/withdraw", json={"amount": "50"}, headers=producer_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "insufficient_balance"

    res = client.post("/wallet/withdraw", json={"amount": "0"}, headers=producer_headers)
    assert res.status_code == 422


def test_withdrawal_lifecycle(client, producer_headers, admin_headers, paid_order):
    _deliver(client, producer_headers, paid_order["id"])
    client.patch("/users/producer-profile", json={"iban": "CH9300762011623852957"}, headers=producer_headers)

    res = client.post("/wallet/withdraw", json={"amount": "30"}, headers=producer_headers)
    assert res.status_code == 201, res.text
    withdrawal = res.json()
    assert withdrawal["status"] == "PENDING"
    assert withdrawal["bank_details"]["iban"] == "CH9300762011623852957"

    wallet = _wallet(client, producer_headers)
    assert _d(wallet["balance"]) == Decimal("8.00")
    assert _d(wallet["pending_balance"]) == Decimal("30.00")
    assert wallet["transactions"][0]["type"] == "WITHDRAWAL"
    assert _d(wallet["transactions"][0]["amount"]) == Decimal("-30.00")

    listed = client.get("/admin/withdrawals", params={"status": "pending"}, headers=admin_headers).json()
    assert [w["id"] for w in listed["withdrawals"]] == [withdrawal["id"]]

    res = client.post(
        f"/admin/withdrawals/{withdrawal['id']}/process",
        json={"status": "COMPLETED", "reference": "BANK-42"},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "COMPLETED"
    assert res.json()["reference"] == "BANK-42"

    wallet = _wallet(client, producer_headers)
    assert _d(wallet["pending_balance"]) == Decimal("0")
    assert _d(wallet["total_withdrawn"]) == Decimal("30.00")

    res = client.post(
        f"/admin/withdrawals/{withdrawal['id']}/process",
        json={"status": "REJECTED"},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "withdrawal_processed"


def test_rejected_withdrawal_returns_balance(client, producer_headers, admin_headers, paid_order):
    _deliver(client, producer_headers, paid_order["id"])
    client.patch("/users/producer-profile", json={"iban": "CH9300762011623852957"}, headers=producer_headers)
    withdrawal = client.post("/wallet/withdraw", json={"amount": "20"}, headers=producer_headers).json()

    res = client.post(
        f"/admin/withdrawals/{withdrawal['id']}/process",
        json={"status": "REJECTED", "note": "IBAN does not match"},
        headers=admin_headers,
    )
    assert res.status_code == 200

    wallet = _wallet(client, producer_headers)
    assert _d(wallet["balance"]) == Decimal("38.00")
    assert _d(wallet["pending_balance"]) == Decimal("0")


def test_wallet_is_producer_only(client, client_headers):
    assert client.get("/wallet", headers=client_headers).status_code == 403
