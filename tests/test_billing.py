"""Tests for the Stripe webhook that credits purchased token packages.

The Stripe SDK's signature check is monkeypatched, so tests cover:
  - configuration and signature validation (503 / 400)
  - checkout.session.completed credits extra_tokens once per session
  - unpaid, malformed and unknown-account sessions credit nothing
"""

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select

from copychief import config
from copychief.models import BalanceAuditEntry, BalanceChangeReason, TokenPurchase
from tests.conftest import TestSession, create_account, set_balance


def _checkout_event(session_id="cs_test_1", account_id=1, tokens=50_000, **extra):
    session = {
        "id": session_id,
        "payment_status": "paid",
        "metadata": {"account_id": str(account_id), "tokens": str(tokens)},
    }
    session.update(extra)
    return {"type": "checkout.session.completed", "data": {"object": session}}


@pytest.fixture
def webhook(monkeypatch):
    """Configure a webhook secret and make construct_event return the queued event."""
    monkeypatch.setattr(config.settings, "stripe_webhook_secret", "whsec_test")
    queued = {}

    def fake_construct_event(payload, sig_header, secret):
        if sig_header != "valid":
            raise stripe.SignatureVerificationError("bad signature", sig_header)
        assert secret == "whsec_test"
        return queued["event"]

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct_event)
    return queued


async def _post(client, signature="valid"):
    return await client.post(
        "/api/v1/billing/webhook",
        content=b"{}",
        headers={"stripe-signature": signature},
    )


async def _extra_tokens(runtime, account_id):
    return (await runtime.ledger.get_available(account_id)).extra


async def test_webhook_no_secret(client: AsyncClient):
    """Webhook with no webhook secret configured returns 503."""
    resp = await client.post(
        "/api/v1/billing/webhook",
        content=b'{"type": "test"}',
        headers={"stripe-signature": "t=123,v1=abc"},
    )
    assert resp.status_code == 503


async def test_webhook_missing_signature(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(config.settings, "stripe_webhook_secret", "whsec_test")

    resp = await client.post("/api/v1/billing/webhook", content=b'{"type": "test"}')

    assert resp.status_code == 400
    assert "Missing signature" in resp.json()["detail"]


async def test_webhook_invalid_signature(client: AsyncClient, webhook):
    webhook["event"] = _checkout_event()
    resp = await _post(client, signature="forged")
    assert resp.status_code == 400


async def test_checkout_completed_credits_extra_tokens(client, runtime, webhook):
    account_id = await create_account(monthly=1000, extra=200)
    webhook["event"] = _checkout_event(account_id=account_id, tokens=50_000)

    resp = await _post(client)

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "tokens_credited": 50_000}
    assert await _extra_tokens(runtime, account_id) == 50_200
    async with TestSession() as db:
        purchase = (await db.execute(select(TokenPurchase))).scalar_one()
        audit = (await db.execute(select(BalanceAuditEntry))).scalar_one()
    assert purchase.external_id == "cs_test_1"
    assert purchase.tokens == 50_000
    assert audit.reason == BalanceChangeReason.PURCHASE
    assert audit.actor_id == "stripe:cs_test_1"


async def test_replayed_checkout_credits_once(client, runtime, webhook):
    account_id = await create_account(monthly=1000)
    webhook["event"] = _checkout_event(account_id=account_id, tokens=10_000)

    first = await _post(client)
    second = await _post(client)

    assert first.json()["tokens_credited"] == 10_000
    assert second.json()["tokens_credited"] == 0
    assert await _extra_tokens(runtime, account_id) == 10_000


async def test_purchase_restores_exhausted_balance(client, runtime, webhook):
    account_id = await create_account(monthly=0, consumed=1000, allowance=1000)
    webhook["event"] = _checkout_event(account_id=account_id, tokens=5000)

    await _post(client)

    balance = await runtime.ledger.get_available(account_id)
    assert balance.available == 5000


async def test_unpaid_checkout_credits_nothing(client, runtime, webhook):
    account_id = await create_account(monthly=1000)
    webhook["event"] = _checkout_event(account_id=account_id, payment_status="unpaid")

    resp = await _post(client)

    assert resp.json()["tokens_credited"] == 0
    assert await _extra_tokens(runtime, account_id) == 0


async def test_checkout_without_metadata_credits_nothing(client, webhook):
    event = _checkout_event()
    event["data"]["object"]["metadata"] = {}
    webhook["event"] = event

    resp = await _post(client)

    assert resp.status_code == 200
    assert resp.json()["tokens_credited"] == 0


async def test_checkout_for_unknown_account(client, webhook):
    webhook["event"] = _checkout_event(account_id=4242)

    resp = await _post(client)

    assert resp.json()["tokens_credited"] == 0
    async with TestSession() as db:
        assert (await db.execute(select(TokenPurchase))).scalar_one_or_none() is None


async def test_unrelated_event_is_acknowledged(client, webhook):
    webhook["event"] = {"type": "invoice.created", "data": {"object": {"id": "in_1"}}}
    resp = await _post(client)
    assert resp.json() == {"received": True}


async def test_purchased_tokens_spent_after_monthly(client, runtime, webhook):
    account_id = await create_account(monthly=100)
    webhook["event"] = _checkout_event(account_id=account_id, tokens=1000)
    await _post(client)
    await set_balance(account_id, monthly_tokens=50)

    await runtime.ledger.commit_usage(account_id, 100, 50, "chat_message", exchange_id="ex-1")

    balance = await runtime.ledger.get_available(account_id)
    assert balance.monthly == 0
    assert balance.extra == 900


async def test_purchase_signals_recovery_to_watcher(client, runtime, webhook):
    account_id = await create_account(monthly=0, consumed=1000, allowance=1000)
    await set_balance(account_id, notified_level="critical")
    signals = []
    runtime.watcher.subscribe(signals.append)
    webhook["event"] = _checkout_event(account_id=account_id, tokens=5000)

    await _post(client)

    assert [(s.account_id, s.level.value) for s in signals] == [(account_id, "none")]
