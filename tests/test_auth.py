"""Tests for auth endpoints: signup, login, me, refresh.

Covers:
  - POST /auth/signup: success, starting allowance, duplicate, validation, rate limiting
  - POST /auth/login: success, wrong password, nonexistent, inactive, rate limiting
  - GET /auth/me: authenticated, unauthenticated, invalid/expired tokens
  - POST /auth/refresh: success, no auth
"""

import time

from httpx import AsyncClient

from copychief.api.auth import _rate_limit_store, create_access_token, decode_access_token
from tests.conftest import auth_headers, create_test_user, set_balance


async def test_signup_success(client: AsyncClient):
    data = await create_test_user(client, "new@example.com")
    assert "access_token" in data
    assert data["token_type"] == "bearer"
    assert data["expires_in"] > 0


async def test_signup_grants_monthly_allowance(client: AsyncClient):
    data = await create_test_user(client, "allowance@example.com")
    headers = auth_headers(data["access_token"])

    me = await client.get("/api/v1/auth/me", headers=headers)
    assert me.json()["monthly_allowance"] == 100_000
    assert me.json()["is_admin"] is False

    tokens = await client.get("/api/v1/tokens", headers=headers)
    assert tokens.json()["monthly_tokens"] == 100_000
    assert tokens.json()["extra_tokens"] == 0


async def test_signup_duplicate_email(client: AsyncClient):
    await create_test_user(client, "dup@example.com")
    resp = await client.post("/api/v1/auth/signup", json={
        "email": "dup@example.com",
        "password": "testpass123",
    })
    assert resp.status_code == 400


async def test_signup_short_password(client: AsyncClient):
    resp = await client.post("/api/v1/auth/signup", json={
        "email": "short@example.com",
        "password": "abc",
    })
    assert resp.status_code == 422


async def test_signup_invalid_email_format(client: AsyncClient):
    resp = await client.post("/api/v1/auth/signup", json={
        "email": "not-an-email",
        "password": "strongpassword123",
    })
    assert resp.status_code == 422


async def test_signup_password_too_long(client: AsyncClient):
    """Password over 72 chars returns 422 (bcrypt limit)."""
    resp = await client.post("/api/v1/auth/signup", json={
        "email": "toolong@example.com",
        "password": "a" * 73,
    })
    assert resp.status_code == 422


async def test_signup_rate_limit(client: AsyncClient):
    """6th signup from same IP in 5 minutes returns 429.

    ASGITransport doesn't set request.client, so the IP resolves to 'unknown'.
    """
    _rate_limit_store["signup:unknown"] = [time.monotonic()] * 5

    resp = await client.post("/api/v1/auth/signup", json={
        "email": "ratelimited@example.com",
        "password": "strongpassword123",
    })
    assert resp.status_code == 429
    assert "Too many attempts" in resp.json()["detail"]


async def test_login_success(client: AsyncClient):
    await create_test_user(client, "login@example.com", "mypassword1")
    resp = await client.post("/api/v1/auth/login", json={
        "email": "login@example.com",
        "password": "mypassword1",
    })
    assert resp.status_code == 200
    assert "access_token" in resp.json()


async def test_login_same_error_for_wrong_email_and_password(client: AsyncClient):
    """Wrong email and wrong password produce the same error (no account enumeration)."""
    await create_test_user(client, "exists@example.com", "correctpass")

    resp_wrong_pw = await client.post("/api/v1/auth/login", json={
        "email": "exists@example.com",
        "password": "wrongpass12",
    })
    resp_wrong_email = await client.post("/api/v1/auth/login", json={
        "email": "ghost@example.com",
        "password": "doesntmatter",
    })

    assert resp_wrong_pw.status_code == 401
    assert resp_wrong_email.status_code == 401
    assert resp_wrong_pw.json()["detail"] == resp_wrong_email.json()["detail"]


async def test_login_inactive_account(client: AsyncClient):
    data = await create_test_user(client, "inactive@example.com", "mypassword1")
    account_id = decode_access_token(data["access_token"])
    await set_balance(account_id, is_active=False)

    resp = await client.post("/api/v1/auth/login", json={
        "email": "inactive@example.com",
        "password": "mypassword1",
    })
    assert resp.status_code == 403

    me = await client.get("/api/v1/auth/me", headers=auth_headers(data["access_token"]))
    assert me.status_code == 403


async def test_login_rate_limit(client: AsyncClient):
    """11th login attempt from same IP in 1 minute returns 429."""
    _rate_limit_store["login:unknown"] = [time.monotonic()] * 10

    resp = await client.post("/api/v1/auth/login", json={
        "email": "test@example.com",
        "password": "whatever",
    })
    assert resp.status_code == 429


async def test_me_authenticated(client: AsyncClient):
    data = await create_test_user(client, "me@example.com", full_name="Jane Doe")
    resp = await client.get("/api/v1/auth/me", headers=auth_headers(data["access_token"]))
    assert resp.status_code == 200
    account = resp.json()
    assert account["email"] == "me@example.com"
    assert account["full_name"] == "Jane Doe"


async def test_me_unauthenticated(client: AsyncClient):
    resp = await client.get("/api/v1/auth/me")
    assert resp.status_code in (401, 403)


async def test_me_invalid_token(client: AsyncClient):
    resp = await client.get("/api/v1/auth/me", headers=auth_headers("invalid.token.here"))
    assert resp.status_code == 401


async def test_me_expired_token(client: AsyncClient):
    expired = create_access_token(account_id=1, expires_minutes=-1)
    resp = await client.get("/api/v1/auth/me", headers=auth_headers(expired))
    assert resp.status_code == 401


async def test_token_for_deleted_account(client: AsyncClient):
    resp = await client.get("/api/v1/auth/me", headers=auth_headers(create_access_token(9999)))
    assert resp.status_code == 401


async def test_refresh_token(client: AsyncClient):
    data = await create_test_user(client, "refresh@example.com")
    resp = await client.post("/api/v1/auth/refresh", headers=auth_headers(data["access_token"]))
    assert resp.status_code == 200
    new_data = resp.json()
    assert new_data["token_type"] == "bearer"
    # Verify the refreshed token works
    resp2 = await client.get("/api/v1/auth/me", headers=auth_headers(new_data["access_token"]))
    assert resp2.status_code == 200


async def test_refresh_no_auth(client: AsyncClient):
    resp = await client.post("/api/v1/auth/refresh")
    assert resp.status_code in (401, 403)


def test_decode_rejects_garbage():
    assert decode_access_token("not-a-jwt") is None
    assert decode_access_token(create_access_token(42)) == 42
