import psycopg2
import redis
import requests

import health_monitor
import routing


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code
        self.ok = status_code < 400


def test_check_http_service_reports_status(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get", lambda url, timeout: FakeResponse(200))
    assert health_monitor.check_http_service("api", "http://api/health") == (True, "api: OK (200)")

    monkeypatch.setattr(health_monitor.requests, "get", lambda url, timeout: FakeResponse(503))
    assert health_monitor.check_http_service("api", "http://api/health") == (False, "api: FAIL (503)")


def test_check_http_service_handles_connection_errors(monkeypatch):
    def boom(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(health_monitor.requests, "get", boom)
    ok, message = health_monitor.check_http_service("api", "http://api/health")
    assert ok is False
    assert "refused" in message


def test_routing_target_is_a_route_from_the_shop_to_itself():
    url = health_monitor.http_targets()["routing"]

    shop = f"{routing.SHOP_LON},{routing.SHOP_LAT}"
    assert url == f"{routing.OSRM_URL}/{shop};{shop}?overview=false"


def test_monitor_all_services_collects_results(monkeypatch):
    urls = []

    def fake_get(url, timeout):
        urls.append(url)
        return FakeResponse(200)

    def no_db(dsn):
        raise psycopg2.OperationalError("no postgres")

    class DeadRedis:
        def __init__(self, **kwargs):
            pass

        def ping(self):
            raise redis.ConnectionError("no redis")

    monkeypatch.setattr(health_monitor.requests, "get", fake_get)
    monkeypatch.setattr(health_monitor.psycopg2, "connect", no_db)
    monkeypatch.setattr(health_monitor.redis, "Redis", DeadRedis)

    results = health_monitor.monitor_all_services()

    assert results == {
        "backend_api": True,
        "cache_via_api": True,
        "routing": True,
        "database": False,
        "redis": False,
    }
    assert urls == list(health_monitor.http_targets().values())
