import datetime as dt
import os

# must be set before the application modules read their configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_PUBLISHABLE_KEY"] = "pk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_dummy"
os.environ["PLATFORM_FEE_PERCENTAGE"] = "5"

import pytest
from fastapi.testclient import TestClient

from marketplace.crud import users as crud_users
from marketplace.database import SessionLocal, engine
from marketplace.main import app
from marketplace.models import Base, UserRole

PASSWORD = "secret-pass-123"


@pytest.fixture(autouse=True)
def _fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    # no context manager: startup (broker consumer, admin bootstrap) is not run
    return TestClient(app)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def register(client, email, role="CLIENT", name="Test User", company_name=None):
    data = {"name": name, "email": email, "password": PASSWORD, "role": role}
    if company_name:
        data["company_name"] = company_name
    res = client.post("/auth/register", data=data)
    assert res.status_code == 201, res.text
    return res.json()


def login(client, email, password=PASSWORD):
    res = client.post("/auth/login", data={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture
def client_headers(client):
    register(client, "client@example.com", name="Carla Client")
    return login(client, "client@example.com")


@pytest.fixture
def other_client_headers(client):
    register(client, "other@example.com", name="Oscar Other")
    return login(client, "other@example.com")


@pytest.fixture
def producer_headers(client):
    register(client, "farm@example.com", role="PRODUCER", name="Paula Producer", company_name="Green Farm")
    return login(client, "farm@example.com")


@pytest.fixture
def other_producer_headers(client):
    register(client, "orchard@example.com", role="PRODUCER", name="Peter Orchard", company_name="Orchard")
    return login(client, "orchard@example.com")


@pytest.fixture
def admin_headers(client, db):
    crud_users.create_user(
        db,
        name="Admin",
        email="admin@example.com",
        password=PASSWORD,
        role=UserRole.ADMIN,
    )
    return login(client, "admin@example.com")


def make_product(client, headers, **overrides):
    body = {
        "name": "Oyster mushrooms",
        "description": "Fresh from the farm",
        "price": "10.00",
        "type": "FRESH",
        "unit": "kg",
        "initial_stock": "20",
        "accept_deferred": False,
        "min_order_quantity": "0",
    }
    body.update(overrides)
    res = client.post("/products", json=body, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def make_slot(client, headers, product_id, days_ahead=3, max_capacity="10"):
    date = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=days_ahead)).replace(
        hour=10, minute=0, second=0, microsecond=0
    )
    res = client.post(
        "/delivery-slots",
        json={"product_id": product_id, "date": date.isoformat(), "max_capacity": max_capacity},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def product(client, producer_headers):
    return make_product(client, producer_headers)
