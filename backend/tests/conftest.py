import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# The backend modules import each other as top-level modules, wherever the
# repository is checked out.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

_DB_DIR = tempfile.mkdtemp(prefix="food-orders-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_DB_DIR) / 'test.db'}"
os.environ["REDIS_HOST"] = "127.0.0.1"
os.environ["REDIS_PORT"] = "1"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["OWNER_EMAIL"] = "owner@example.com"
os.environ["DELIVERY_EMAILS"] = "rider1@example.com,rider2@example.com"
os.environ["SEED_SAMPLE_MENU"] = "false"
os.environ["OPENROUTE_API_KEY"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
import main  # noqa: E402
import models  # noqa: E402
import order_service  # noqa: E402
import routing  # noqa: E402
from redis_client import redis_client  # noqa: E402
from schemas import CartLine, OrderCreate  # noqa: E402

PASSWORD = "secret123"
BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedRoute:
    """Route provider that always reports the same distance."""

    def __init__(self, distance_km: float):
        self.distance_km = distance_km
        self.calls = []

    def __call__(self, lat, lon):
        self.calls.append((lat, lon))
        return routing.Route(distance_km=self.distance_km, duration_min=5, source="stub")


@pytest.fixture(autouse=True)
def redis_down(monkeypatch):
    monkeypatch.setattr(redis_client, "client", None)


@pytest.fixture
def db():
    models.Base.metadata.drop_all(bind=database.engine)
    models.Base.metadata.create_all(bind=database.engine)
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_profile(db, email, full_name=None, is_online=True, created_minutes=0):
    user = models.User(email=email, password="not-a-real-hash")
    db.add(user)
    db.commit()
    profile = order_service.ensure_profile(db, user, full_name=full_name or email.split("@")[0])
    profile.is_online = is_online
    profile.created_at = BASE_TIME + timedelta(minutes=created_minutes)
    db.commit()
    db.refresh(profile)
    return profile


def make_item(db, name, price="10.00", prep=15, is_available=True):
    from decimal import Decimal
    item = models.MenuItem(
        name=name,
        price=Decimal(price),
        preparation_time_minutes=prep,
        is_available=is_available,
        category="Test",
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def cart(*lines, order_type="delivery", **fields):
    data = {
        "house_no": "12B",
        "customer_phone": "+91 98765 43210",
        "customer_lat": 18.47,
        "customer_lon": 73.82,
    } if order_type == "delivery" else {}
    data.update(fields)
    return OrderCreate(
        items=[CartLine(menu_item_id=item.id, quantity=qty) for item, qty in lines],
        order_type=order_type,
        **data,
    )


@pytest.fixture
def people(db):
    return {
        "owner": make_profile(db, "owner@example.com", "Owner"),
        "customer": make_profile(db, "alice@example.com", "Alice"),
        "other_customer": make_profile(db, "bob@example.com", "Bob"),
        "rider1": make_profile(db, "rider1@example.com", "Rider One", created_minutes=1),
        "rider2": make_profile(db, "rider2@example.com", "Rider Two", created_minutes=2),
    }


@pytest.fixture
def menu(db):
    return {
        "pizza": make_item(db, "Pizza", "10.00", prep=15),
        "lasagna": make_item(db, "Lasagna", "12.50", prep=20),
        "soup": make_item(db, "Soup", "5.00", prep=5),
    }


@pytest.fixture
def route_1200m():
    return FixedRoute(1.2)


@pytest.fixture
def client(db, route_1200m):
    main.app.dependency_overrides[main.get_route_provider] = lambda: route_1200m
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def signup(client, email, full_name=None):
    """Registers and logs in, returning the auth headers and the profile."""
    resp = client.post("/register", json={"email": email, "password": PASSWORD, "full_name": full_name})
    assert resp.status_code == 200, resp.text
    resp = client.post("/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    return {"Authorization": f"Bearer {body['access_token']}"}, body["user"]
