"""Tests for the client-side token balance cache."""

import httpx
import pytest

from copychief import config
from copychief.client.tokens import TokenBalanceClient
from copychief.exceptions import StreamConnectionError
from copychief.services.thresholds import AlertLevel


def _payload(available, used=0, reserved=0):
    return {
        "monthly_tokens": available,
        "extra_tokens": 0,
        "total_available": available,
        "total_used": used,
        "reserved_tokens": reserved,
        "usage_percentage": 0.0,
        "alert": "none",
    }


class FakeTokenApi:
    def __init__(self, balances, estimates=None):
        self.balances = list(balances)
        self.estimates = estimates
        self.balance_calls = 0
        self.estimate_calls = 0
        self.fail = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            raise httpx.ConnectError("offline")
        if request.url.path == "/api/v1/tokens":
            self.balance_calls += 1
            assert request.headers["Authorization"] == "Bearer jwt"
            payload = self.balances[0] if len(self.balances) == 1 else self.balances.pop(0)
            return httpx.Response(200, json=payload)
        if request.url.path == "/api/v1/tokens/estimates":
            self.estimate_calls += 1
            if self.estimates is None:
                return httpx.Response(500)
            return httpx.Response(200, json=self.estimates)
        return httpx.Response(404)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _client(api, clock):
    http = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://relay")
    return TokenBalanceClient(http, "jwt", account_id=7, ttl_seconds=30, clock=clock)


async def test_balance_is_cached_for_ttl():
    api = FakeTokenApi([_payload(5000)])
    clock = FakeClock()
    client = _client(api, clock)

    first = await client.get_balance()
    clock.now += 29
    second = await client.get_balance()

    assert first.total_available == second.total_available == 5000
    assert api.balance_calls == 1

    clock.now += 2
    await client.get_balance()
    assert api.balance_calls == 2

    await client.get_balance(force=True)
    assert api.balance_calls == 3

    client.invalidate()
    await client.get_balance()
    assert api.balance_calls == 4


async def test_stale_balance_served_when_refresh_fails():
    api = FakeTokenApi([_payload(5000)])
    clock = FakeClock()
    client = _client(api, clock)
    await client.get_balance()

    api.fail = True
    clock.now += 60
    balance = await client.get_balance()

    assert balance.total_available == 5000
    assert client.cached is balance


async def test_refresh_failure_without_cache_raises():
    api = FakeTokenApi([_payload(5000)])
    api.fail = True
    client = _client(api, FakeClock())
    with pytest.raises(StreamConnectionError):
        await client.get_balance()


async def test_threshold_signal_only_on_significant_change():
    api = FakeTokenApi([
        _payload(100_000),
        _payload(4000, used=96_000),
        _payload(3950, used=96_050),
        _payload(100_000),
    ])
    client = _client(api, FakeClock())
    signals = []
    client.on_threshold(signals.append)

    await client.get_balance(force=True)
    await client.get_balance(force=True)
    await client.get_balance(force=True)
    assert [s.level for s in signals] == [AlertLevel.CRITICAL]
    assert signals[0].suggests_upgrade

    await client.get_balance(force=True)
    assert [s.level for s in signals] == [AlertLevel.CRITICAL, AlertLevel.NONE]


async def test_estimates_fetched_once():
    api = FakeTokenApi([_payload(5000)], estimates={"estimates": {"chat_message": 900}, "default": 1500})
    client = _client(api, FakeClock())

    assert await client.estimate("chat_message") == 900
    assert await client.estimate("something_new") == 1500
    assert api.estimate_calls == 1


async def test_estimates_fall_back_to_builtin_table():
    api = FakeTokenApi([_payload(5000)])
    client = _client(api, FakeClock())
    assert await client.estimate("generate_copy_long") == 8000
    assert await client.estimate("unknown") == 2000


async def test_can_afford_accounts_for_reservations():
    api = FakeTokenApi([_payload(2500, reserved=1000)], estimates={"estimates": {"custom_agent": 2000}})
    client = _client(api, FakeClock())

    assert await client.can_afford("custom_agent") is False
    assert await client.can_afford("chat_message") is False

    api.balances = [_payload(5000)]
    client.invalidate()
    assert await client.can_afford("custom_agent") is True


async def test_default_ttl_comes_from_settings(monkeypatch):
    monkeypatch.setattr(config.settings, "token_cache_ttl_seconds", 5.0)
    api = FakeTokenApi([_payload(5000)])
    clock = FakeClock()
    http = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://relay")
    client = TokenBalanceClient(http, "jwt", account_id=7, clock=clock)

    await client.get_balance()
    clock.now += 6
    await client.get_balance()

    assert api.balance_calls == 2
