"""Tests for normalized error responses."""

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from dispatchbot.core.errors import (
    AppError,
    MutationRejectedError,
    QueueUnavailableError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)


def _make_app():
    app = FastAPI()
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.post("/plans/{plan_id}/extend")
    async def extend(plan_id: int):
        raise QueueUnavailableError("Redis is not configured; cannot enqueue executor plan mutation")

    @app.post("/plans/{plan_id}/block")
    async def block(plan_id: int):
        raise MutationRejectedError("Executor plan mutation could not be applied or queued")

    @app.get("/plans/{plan_id}")
    async def get_plan(plan_id: int):
        raise HTTPException(status_code=404, detail="plan not found")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return app


def test_queue_unavailable_has_standard_shape():
    client = TestClient(_make_app())
    resp = client.post("/plans/1/extend", headers={"X-Request-Id": "rid-1"})

    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "queue_unavailable"
    assert body["error"]["request_id"] == "rid-1"
    assert resp.headers["x-request-id"] == "rid-1"


def test_mutation_rejected_code():
    client = TestClient(_make_app())
    resp = client.post("/plans/1/block")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "mutation_rejected"
    assert resp.headers.get("x-request-id")


def test_http_not_found_normalized():
    client = TestClient(_make_app())
    resp = client.get("/plans/9")

    assert resp.status_code == 404
    assert resp.json()["error"] == {
        "code": "not_found",
        "message": "plan not found",
        "request_id": resp.headers["x-request-id"],
    }


def test_unhandled_exception_is_internal_error():
    client = TestClient(_make_app(), raise_server_exceptions=False)
    resp = client.get("/boom")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
