"""Billing endpoints: Stripe token package purchases."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from copychief.config import settings
from copychief.database import get_db
from copychief.exceptions import AccountNotFound
from copychief.models import BalanceChangeReason, BalanceField, TokenPurchase
from copychief.runtime import ChatRuntime, get_runtime

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Handle Stripe webhook events."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=503, detail="Webhook not configured")

    body = await request.body()
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        stripe.api_key = settings.stripe_secret_key
        event = stripe.Webhook.construct_event(body, sig, settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    data = event["data"]["object"]

    if event_type == "checkout.session.completed":
        credited = await _handle_checkout_completed(db, runtime, data)
        return {"received": True, "tokens_credited": credited}
    if event_type == "checkout.session.async_payment_failed":
        logger.warning("Token purchase payment failed for session %s", data.get("id"))

    return {"received": True}


# --- Webhook handlers ---

async def _handle_checkout_completed(db: AsyncSession, runtime: ChatRuntime, data: dict) -> int:
    """Credit purchased tokens to ``extra_tokens``, once per checkout session."""
    metadata = data.get("metadata") or {}
    session_id = data.get("id")
    try:
        account_id = int(metadata["account_id"])
        tokens = int(metadata["tokens"])
    except (KeyError, TypeError, ValueError):
        logger.error("Checkout %s completed without account_id/tokens metadata", session_id)
        return 0
    if tokens <= 0 or not session_id:
        logger.error("Checkout %s has invalid token amount %d", session_id, tokens)
        return 0
    if data.get("payment_status") not in (None, "paid"):
        logger.info("Checkout %s not paid yet (%s)", session_id, data.get("payment_status"))
        return 0

    existing = await db.execute(select(TokenPurchase).where(TokenPurchase.external_id == session_id))
    if existing.scalar_one_or_none() is not None:
        logger.info("Checkout %s already processed", session_id)
        return 0

    try:
        await runtime.ledger.store.apply_delta(
            db,
            account_id,
            BalanceField.EXTRA,
            tokens,
            BalanceChangeReason.PURCHASE,
            actor_id=f"stripe:{session_id}",
        )
    except AccountNotFound:
        await db.rollback()
        logger.error("Checkout %s completed for unknown account %d", session_id, account_id)
        return 0

    db.add(TokenPurchase(account_id=account_id, external_id=session_id, tokens=tokens))
    await db.commit()
    logger.info("Account %d purchased %d tokens (checkout %s)", account_id, tokens, session_id)
    await runtime.ledger.observe(account_id)
    return tokens
