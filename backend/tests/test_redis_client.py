import asyncio
import json
from types import SimpleNamespace

import pytest
import redis
from fastapi import HTTPException

import redis_client as rc


class FakeRedis:
    """In-memory stand-in for the handful of commands the client uses."""

    def __init__(self):
        self.store = {}
        self.published = []
        self.expiries = {}

    def ping(self):
        return True

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.expiries[key] = ttl

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    def exists(self, key):
        return int(key in self.store)

    def keys(self, pattern):
        prefix = pattern.rstrip("*")
        return [k for k in self.store if k.startswith(prefix)]

    def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def expire(self, key, window):
        self.expiries[key] = window

    def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1


class BrokenRedis(FakeRedis):
    def publish(self, channel, message):
        raise redis.ConnectionError("gone")


@pytest.fixture
def fake(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(rc.redis_client, "client", fake)
    return fake


def order(**fields):
    data = dict(id=7, customer_id="c1", delivery_boy_id=None, status="pending", order_type="delivery")
    data.update(fields)
    return SimpleNamespace(**data)


def test_order_channels():
    assert rc.order_channels(order()) == ["orders:owner", "orders:customer:c1"]
    assert rc.order_channels(order(status="ready")) == ["orders:owner", "orders:customer:c1", "orders:pool"]
    assert rc.order_channels(order(status="picked_up", delivery_boy_id="d1")) == [
        "orders:owner", "orders:customer:c1", "orders:courier:d1",
    ]


def test_subscription_channels_per_role():
    assert rc.subscription_channels(SimpleNamespace(id="o1", role="owner")) == ["orders:owner", "menu"]
    assert rc.subscription_channels(SimpleNamespace(id="d1", role="delivery")) == ["orders:courier:d1", "orders:pool"]
    assert rc.subscription_channels(SimpleNamespace(id="c1", role="customer")) == ["orders:customer:c1", "menu"]


def test_publish_order_event_reaches_every_reader(fake):
    receivers = rc.redis_client.publish_order_event(order(status="ready"), "status_changed")

    assert receivers == 3
    channels = [channel for channel, _ in fake.published]
    assert channels == ["orders:owner", "orders:customer:c1", "orders:pool"]
    assert fake.published[0][1] == {
        "entity": "order",
        "event": "status_changed",
        "order_id": 7,
        "status": "ready",
        "delivery_boy_id": None,
    }


def test_publish_failures_are_swallowed(monkeypatch):
    monkeypatch.setattr(rc.redis_client, "client", BrokenRedis())
    assert rc.redis_client.publish_menu_event("updated", 3) == 0


def test_everything_is_a_no_op_without_redis():
    # the autouse fixture leaves the client unset
    assert rc.redis_client.is_available() is False
    assert rc.redis_client.publish_order_event(order(), "created") == 0
    assert rc.redis_client.get_cached_menu() is None
    assert rc.redis_client.check_rate_limit("k", 1, 60) == (True, 1)
    assert rc.redis_client.get_cache_info() == {"status": "unavailable"}


def test_menu_cache_roundtrip_and_invalidation(fake):
    items = [{"id": 1, "name": "Pizza", "price": 10.0}]
    assert rc.redis_client.cache_menu(items) is True
    assert fake.expiries[rc.MENU_CACHE_KEY] == 300
    assert rc.redis_client.get_cached_menu() == items

    rc.redis_client.invalidate_menu_cache()
    assert rc.redis_client.get_cached_menu() is None


def test_check_rate_limit_counts_within_the_window(fake):
    results = [rc.redis_client.check_rate_limit("rate_limit:test", max_requests=2, window=30) for _ in range(3)]

    assert results == [(True, 1), (True, 0), (False, 0)]
    assert fake.expiries["rate_limit:test"] == 30


def test_rate_limit_decorator_rejects_after_the_limit(fake):
    @rc.rate_limit(max_requests=1, window=60, key_prefix="rate_limit:test")
    async def endpoint(request):
        return "ok"

    request = SimpleNamespace(client=SimpleNamespace(host="10.0.0.1"))

    assert asyncio.run(endpoint(request=request)) == "ok"
    with pytest.raises(HTTPException) as exc:
        asyncio.run(endpoint(request=request))
    assert exc.value.status_code == 429
    assert fake.store["rate_limit:test:endpoint:10.0.0.1"] == 2


def test_detect_redis_port(monkeypatch):
    monkeypatch.delenv("REDIS_SERVICE_PORT", raising=False)
    monkeypatch.setenv("REDIS_PORT", "tcp://10.0.0.5:6380")
    assert rc.detect_redis_port() == 6380

    monkeypatch.setenv("REDIS_PORT", "garbage")
    assert rc.detect_redis_port() == 6379

    monkeypatch.setenv("REDIS_SERVICE_PORT", "6381")
    assert rc.detect_redis_port() == 6381
