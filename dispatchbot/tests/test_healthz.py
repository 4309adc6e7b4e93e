from fastapi.testclient import TestClient

import dispatchbot.api.health as health_api
from dispatchbot.core.metrics import executor_plan_mutations_total
from dispatchbot.main import app

client = TestClient(app)


class FakeConn:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def exec_driver_sql(self, query):
        return None


class FakeEngine:
    def connect(self):
        return FakeConn()


class FakeInspector:
    def __init__(self, tables):
        self.tables = set(tables)

    def has_table(self, name):
        return name in self.tables


class FakeRedisConn:
    def __init__(self, up=True):
        self.up = up
        self.closed = False

    def close(self):
        self.closed = True

    def ping(self):
        if not self.up:
            raise ConnectionError("redis down")
        return True


def test_healthz_always_ok():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_mocked_db(monkeypatch):
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector(["executor_plans", "executor_blocks"]))
    monkeypatch.setattr(health_api, "get_redis_conn", lambda cfg: None)

    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(monkeypatch):
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector(["executor_plans"]))

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "executor_blocks" in resp.json()["detail"]


def test_readyz_handles_db_down(monkeypatch):
    def boom():
        raise RuntimeError("db down")

    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json() == {"status": "error", "detail": "database unreachable"}


def test_readyz_fails_when_configured_redis_is_down(monkeypatch):
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector(["executor_plans", "executor_blocks"]))
    conn = FakeRedisConn(up=False)
    monkeypatch.setattr(health_api, "get_redis_conn", lambda cfg: conn)

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "redis unreachable"
    assert conn.closed is True


def test_health_summary_is_deterministic_with_now(monkeypatch, db):
    conn = FakeRedisConn()
    monkeypatch.setattr(health_api, "get_redis_conn", lambda cfg: conn)

    resp = client.get("/api/health?now=2025-12-22T10:00:00+00:00")
    data = resp.json()

    assert resp.status_code == 200
    assert data["ok"] is True
    assert data["db"] == {"connected": True, "latency_ms": None}
    assert data["redis"] == {"configured": True, "connected": True}
    assert data["reminders_enabled"] is True
    assert "2025-12-22T10:00:00" in data["computed_at"]
    assert conn.closed is True


def test_health_without_redis_reports_reminders_disabled(monkeypatch, db):
    monkeypatch.setattr(health_api, "get_redis_conn", lambda cfg: None)

    data = client.get("/api/health").json()
    assert data["ok"] is True
    assert data["reminders_enabled"] is False
    assert data["db"]["latency_ms"] is not None


def test_metrics_endpoint_exports_counters():
    executor_plan_mutations_total.inc({"type": "extend", "outcome": "applied"})

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert 'executor_plan_mutations_total{type="extend",outcome="applied"} 1.0' in resp.text
