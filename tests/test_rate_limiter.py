"""Tests for the per-identity rate limiting middleware."""

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from copychief.api.auth import create_access_token
from copychief.middleware.rate_limiter import (
    DEFAULT_RPM,
    SEND_PATH,
    SEND_RPM,
    RateBucket,
    RateLimitMiddleware,
    _buckets,
)
from tests.conftest import auth_headers


def _app(enabled=True):
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, enabled=enabled)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.post(SEND_PATH)
    async def send():
        return {"ok": True}

    return app


class TestRateBucket:
    def test_allows_up_to_limit(self):
        bucket = RateBucket()
        assert all(bucket.allow(3) for _ in range(3))
        assert bucket.allow(3) is False

    def test_window_expiry(self):
        bucket = RateBucket()
        assert bucket.allow(1, window_seconds=-1.0)
        assert bucket.allow(1, window_seconds=-1.0)

    def test_stale_detection(self):
        bucket = RateBucket()
        assert bucket.is_stale()
        bucket.allow(10)
        assert not bucket.is_stale()
        assert bucket.is_stale(max_age_seconds=-1)


class TestMiddleware:
    async def test_send_path_has_stricter_limit(self):
        token = create_access_token(5)
        async with AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test") as client:
            for _ in range(SEND_RPM):
                resp = await client.post(SEND_PATH, headers=auth_headers(token))
                assert resp.status_code == 200
            resp = await client.post(SEND_PATH, headers=auth_headers(token))
            assert resp.status_code == 429
            assert str(SEND_RPM) in resp.json()["detail"]

            # Other endpoints use their own, larger budget
            resp = await client.get("/ping", headers=auth_headers(token))
            assert resp.status_code == 200
        assert "send:account:5" in _buckets
        assert "api:account:5" in _buckets

    async def test_limits_are_per_account(self):
        async with AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test") as client:
            _buckets["send:account:1"].timestamps = [float("inf")] * SEND_RPM
            blocked = await client.post(SEND_PATH, headers=auth_headers(create_access_token(1)))
            allowed = await client.post(SEND_PATH, headers=auth_headers(create_access_token(2)))
        assert blocked.status_code == 429
        assert allowed.status_code == 200

    async def test_invalid_token_falls_back_to_ip(self):
        async with AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test") as client:
            await client.get("/ping", headers=auth_headers("garbage"))
        assert any(key.startswith("api:ip:") for key in _buckets)
        assert DEFAULT_RPM > SEND_RPM

    async def test_disabled_middleware_never_limits(self):
        async with AsyncClient(transport=ASGITransport(app=_app(enabled=False)), base_url="http://test") as client:
            for _ in range(SEND_RPM + 5):
                resp = await client.post(SEND_PATH)
                assert resp.status_code == 200
        assert not _buckets
