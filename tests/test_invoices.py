import asyncio
import datetime as dt
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from conftest import make_product
from marketplace.models import Invoice
from marketplace.routers import payment_router


def _future(days=10):
    return (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=days)).isoformat()


@pytest.fixture
def order(client, client_headers, product):
    res = client.post("/orders", json={"items": [{"product_id": product["id"], "quantity": "2"}]}, headers=client_headers)
    assert res.status_code == 201
    return res.json()


@pytest.fixture
def invoice(client, client_headers, order):
    res = client.post(
        "/invoices",
        json={"order_id": order["id"], "amount": "45.50", "due_date": _future(), "notes": "first"},
        headers=client_headers,
    )
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def deferred_invoice(client, client_headers, producer_headers):
    product = make_product(client, producer_headers, name="Dried ceps", type="DRIED", accept_deferred=True)
    order = client.post(
        "/orders", json={"items": [{"product_id": product["id"], "quantity": "1"}]}, headers=client_headers
    ).json()
    res = client.post(f"/orders/{order['id']}/checkout", json={"payment_method": "invoice"}, headers=client_headers)
    assert res.json()["status"] == "INVOICE_PENDING"
    return client.get("/invoices", headers=client_headers).json()[0]


def _intent(invoice, user_id, status="succeeded", amount=None, intent_id="pi_test_1"):
    return SimpleNamespace(
        id=intent_id,
        status=status,
        amount=amount if amount is not None else int(Decimal(str(invoice["amount"])) * 100),
        client_secret=f"{intent_id}_secret",
        metadata={"invoice_id": str(invoice["id"]), "user_id": str(user_id)},
    )


@pytest.fixture
def fake_stripe(monkeypatch):
    calls = {"create": [], "retrieve": []}
    intents = {}

    def create(**kwargs):
        calls["create"].append(kwargs)
        intent = SimpleNamespace(
            id=f"pi_test_{len(calls['create'])}",
            status="requires_payment_method",
            amount=kwargs["amount"],
            client_secret="secret",
            metadata=kwargs["metadata"],
        )
        intents[intent.id] = intent
        return intent

    def retrieve(intent_id):
        calls["retrieve"].append(intent_id)
        if intent_id not in intents:
            raise stripe.InvalidRequestError("No such payment_intent", "id")
        return intents[intent_id]

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", retrieve)
    return SimpleNamespace(calls=calls, intents=intents)


def test_create_invoice_rules(client, client_headers, other_client_headers, order, invoice):
    assert invoice["status"] == "PENDING"
    assert invoice["invoice_number"] == f"INV-{invoice['id']:08d}"
    assert Decimal(str(invoice["amount"])) == Decimal("45.50")

    res = client.post(
        "/invoices",
        json={"order_id": order["id"], "amount": "10", "due_date": _future()},
        headers=client_headers,
    )
    assert res.status_code == 409

    res = client.post(
        "/invoices",
        json={"order_id": order["id"], "amount": "10", "due_date": _future(-1)},
        headers=client_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "due_date_in_past"

    res = client.post(
        "/invoices",
        json={"order_id": order["id"], "amount": "10", "due_date": _future()},
        headers=other_client_headers,
    )
    assert res.status_code == 403

    res = client.post(
        "/invoices",
        json={"order_id": order["id"], "amount": "1000000", "due_date": _future()},
        headers=client_headers,
    )
    assert res.status_code == 422


def test_invoice_visibility(client, client_headers, other_client_headers, admin_headers, invoice):
    assert client.get(f"/invoices/{invoice['id']}", headers=client_headers).status_code == 200
    assert client.get(f"/invoices/{invoice['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/invoices/{invoice['id']}", headers=other_client_headers).status_code == 403
    assert client.get("/invoices/12345", headers=client_headers).status_code == 404


def test_payment_intent_is_created_then_reused(client, client_headers, invoice, fake_stripe):
    res = client.post(f"/invoices/{invoice['id']}/create-payment-intent", headers=client_headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["payment_intent_id"] == "pi_test_1"
    assert body["amount"] == 4550
    assert body["publishable_key"] == "pk_test_dummy"

    metadata = fake_stripe.calls["create"][0]["metadata"]
    assert metadata["invoice_id"] == str(invoice["id"])
    assert metadata["type"] == "invoice_payment"

    res = client.post(f"/invoices/{invoice['id']}/create-payment-intent", headers=client_headers)
    assert res.json()["payment_intent_id"] == "pi_test_1"
    assert len(fake_stripe.calls["create"]) == 1

    stored = client.get(f"/invoices/{invoice['id']}", headers=client_headers).json()
    assert stored["stripe_payment_intent_id"] == "pi_test_1"


def test_payment_intent_unknown_invoice(client, client_headers, other_client_headers, invoice, fake_stripe):
    res = client.post(f"/invoices/{invoice['id']}/create-payment-intent", headers=other_client_headers)
    assert res.status_code == 404


def test_pay_by_card(client, client_headers, producer_headers, order, invoice, fake_stripe):
    user_id = client.get("/users/me", headers=client_headers).json()["id"]
    fake_stripe.intents["pi_test_9"] = _intent(invoice, user_id, intent_id="pi_test_9")

    res = client.post(
        f"/invoices/{invoice['id']}/pay",
        json={"payment_method": "card", "stripe_payment_intent_id": "pi_test_9"},
        headers=client_headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "PAID"
    assert body["paid_at"] is not None
    assert body["payment_method"] == "card"

    assert client.get(f"/orders/{order['id']}", headers=client_headers).json()["status"] == "INVOICE_PAID"

    paid = client.get("/notifications", params={"type": "INVOICE_PAID"}, headers=client_headers).json()
    assert len(paid["notifications"]) == 1
    received = client.get("/notifications", params={"type": "PAYMENT_RECEIVED"}, headers=producer_headers).json()
    assert len(received["notifications"]) == 1

    res = client.post(f"/invoices/{invoice['id']}/pay", json={"payment_method": "bank_transfer"}, headers=client_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "invoice_already_paid"


def test_card_payment_checks(client, client_headers, invoice, fake_stripe):
    user_id = client.get("/users/me", headers=client_headers).json()["id"]

    res = client.post(f"/invoices/{invoice['id']}/pay", json={"payment_method": "card"}, headers=client_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "payment_intent_required"

    fake_stripe.intents["pi_pending"] = _intent(invoice, user_id, status="processing", intent_id="pi_pending")
    res = client.post(
        f"/invoices/{invoice['id']}/pay",
        json={"payment_method": "card", "stripe_payment_intent_id": "pi_pending"},
        headers=client_headers,
    )
    assert res.json()["detail"]["error"] == "payment_not_succeeded"

    fake_stripe.intents["pi_short"] = _intent(invoice, user_id, amount=100, intent_id="pi_short")
    res = client.post(
        f"/invoices/{invoice['id']}/pay",
        json={"payment_method": "card", "stripe_payment_intent_id": "pi_short"},
        headers=client_headers,
    )
    assert res.json()["detail"]["error"] == "payment_amount_mismatch"

    fake_stripe.intents["pi_other"] = _intent(invoice, user_id + 100, intent_id="pi_other")
    res = client.post(
        f"/invoices/{invoice['id']}/pay",
        json={"payment_method": "card", "stripe_payment_intent_id": "pi_other"},
        headers=client_headers,
    )
    assert res.json()["detail"]["error"] == "payment_user_mismatch"

    res = client.post(
        f"/invoices/{invoice['id']}/pay",
        json={"payment_method": "card", "stripe_payment_intent_id": "pi_missing"},
        headers=client_headers,
    )
    assert res.json()["detail"]["error"] == "payment_intent_not_found"

    res = client.post(
        f"/invoices/{invoice['id']}/pay",
        json={"payment_method": "card", "stripe_payment_intent_id": "not-an-intent"},
        headers=client_headers,
    )
    assert res.status_code == 422

    assert client.get(f"/invoices/{invoice['id']}", headers=client_headers).json()["status"] == "PENDING"


def test_mark_paid_by_producer(client, producer_headers, other_producer_headers, client_headers, deferred_invoice):
    res = client.post(f"/invoices/{deferred_invoice['id']}/mark-paid", json={}, headers=other_producer_headers)
    assert res.status_code == 403

    res = client.post(
        f"/invoices/{deferred_invoice['id']}/mark-paid",
        json={"payment_method": "cash", "notes": "paid at the market"},
        headers=producer_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "PAID"
    assert res.json()["payment_method"] == "cash"

    order = client.get(f"/orders/{deferred_invoice['order_id']}", headers=client_headers).json()
    assert order["status"] == "INVOICE_PAID"

    res = client.post(f"/invoices/{deferred_invoice['id']}/mark-paid", json={}, headers=producer_headers)
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "invoice_already_paid"


def test_overdue_invoices(client, db, client_headers, deferred_invoice):
    row = db.get(Invoice, deferred_invoice["id"])
    row.due_date = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=1)
    db.commit()

    invoices = client.get("/invoices", headers=client_headers).json()
    assert invoices[0]["status"] == "OVERDUE"
    order = client.get(f"/orders/{deferred_invoice['order_id']}", headers=client_headers).json()
    assert order["status"] == "INVOICE_OVERDUE"
    # overdue invoices are still payable
    assert client.get("/invoices/pending-count", headers=client_headers).json() == {"count": 1}


def _webhook_event(intent, event_type="payment_intent.succeeded"):
    return SimpleNamespace(type=event_type, data=SimpleNamespace(object=intent))


def test_webhook_settles_invoice(client, client_headers, invoice, monkeypatch):
    user_id = client.get("/users/me", headers=client_headers).json()["id"]
    event = _webhook_event(_intent(invoice, user_id, intent_id="pi_hook"))
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda **kwargs: event)

    res = client.post("/payments/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert res.status_code == 200
    assert res.json() == {"received": True}

    stored = client.get(f"/invoices/{invoice['id']}", headers=client_headers).json()
    assert stored["status"] == "PAID"
    assert stored["stripe_payment_intent_id"] == "pi_hook"

    # replays are acknowledged without paying twice
    res = client.post("/payments/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert res.json() == {"received": True}
    paid = client.get("/notifications", params={"type": "INVOICE_PAID"}, headers=client_headers).json()
    assert len(paid["notifications"]) == 1


def test_webhook_work_runs_off_the_event_loop(client, monkeypatch):
    event = _webhook_event(SimpleNamespace(id="pi_thread", metadata={}))
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda **kwargs: event)
    seen = []

    def record(db, received):
        try:
            asyncio.get_running_loop()
            seen.append("event loop")
        except RuntimeError:
            seen.append("worker thread")
        assert received is event

    monkeypatch.setattr(payment_router, "handle_stripe_event", record)

    res = client.post("/payments/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert res.json() == {"received": True}
    assert seen == ["worker thread"]


def test_webhook_rejects_bad_signature(client, monkeypatch):
    assert client.post("/payments/stripe/webhook", content=b"{}").status_code == 400

    def bad_signature(**kwargs):
        raise stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")

    monkeypatch.setattr(stripe.Webhook, "construct_event", bad_signature)
    res = client.post("/payments/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "invalid_signature"


def test_webhook_ignores_other_events(client, client_headers, invoice, monkeypatch):
    user_id = client.get("/users/me", headers=client_headers).json()["id"]
    event = _webhook_event(_intent(invoice, user_id), event_type="payment_intent.payment_failed")
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda **kwargs: event)

    res = client.post("/payments/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert res.json() == {"received": True}
    assert client.get(f"/invoices/{invoice['id']}", headers=client_headers).json()["status"] == "PENDING"
