from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.middleware.rate_limiting import RateLimitMiddleware


def _client(limit: int) -> TestClient:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, requests_per_minute=limit)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"ok": True}

    return TestClient(app)


def test_requests_over_limit_get_429():
    client = _client(2)
    assert client.get("/ping").status_code == 200
    assert client.get("/ping").status_code == 200
    blocked = client.get("/ping")
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) >= 1


def test_callers_are_keyed_by_forwarded_address():
    client = _client(1)
    assert client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
    assert client.get("/ping", headers={"X-Forwarded-For": "10.0.0.2, 172.16.0.1"}).status_code == 200
    assert client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429


def test_health_is_exempt():
    client = _client(1)
    for _ in range(3):
        assert client.get("/health").status_code == 200
