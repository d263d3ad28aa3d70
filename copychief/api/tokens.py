"""Token balance endpoints, scoped to the caller's own account."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from copychief.api.auth import get_current_account
from copychief.balance import TOKEN_ESTIMATES
from copychief.config import settings
from copychief.database import get_db
from copychief.models import Account, TokenUsageRecord
from copychief.runtime import ChatRuntime, get_runtime
from copychief.services.thresholds import classify, usage_percentage

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Schemas ---

class TokenBalanceResponse(BaseModel):
    monthly_tokens: int
    extra_tokens: int
    total_available: int
    total_used: int
    reserved_tokens: int
    usage_percentage: float
    alert: str


class UsageRecordResponse(BaseModel):
    exchange_id: str | None
    feature: str
    model: str | None
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated: bool
    created_at: datetime


# --- Endpoints ---

@router.get("", response_model=TokenBalanceResponse)
async def get_tokens(
    account: Account = Depends(get_current_account),
    runtime: ChatRuntime = Depends(get_runtime),
):
    balance = await runtime.ledger.get_available(account.id)
    return TokenBalanceResponse(
        monthly_tokens=balance.monthly,
        extra_tokens=balance.extra,
        total_available=balance.available,
        total_used=balance.consumed,
        reserved_tokens=balance.reserved,
        usage_percentage=round(usage_percentage(balance.consumed, balance.available), 2),
        alert=classify(balance).value,
    )


@router.get("/estimates")
async def get_estimates():
    """Pre-flight estimate per feature, plus the default for unknown features."""
    return {"estimates": TOKEN_ESTIMATES, "default": settings.default_feature_estimate}


@router.get("/usage", response_model=list[UsageRecordResponse])
async def get_usage(
    limit: int = Query(default=50, ge=1, le=500),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Most recent usage records, newest first."""
    result = await db.execute(
        select(TokenUsageRecord)
        .where(TokenUsageRecord.account_id == account.id)
        .order_by(TokenUsageRecord.created_at.desc(), TokenUsageRecord.id.desc())
        .limit(limit)
    )
    return [
        UsageRecordResponse(
            exchange_id=r.exchange_id,
            feature=r.feature,
            model=r.model,
            prompt_tokens=r.prompt_tokens,
            completion_tokens=r.completion_tokens,
            total_tokens=r.total_tokens,
            estimated=r.estimated,
            created_at=r.created_at,
        )
        for r in result.scalars().all()
    ]
