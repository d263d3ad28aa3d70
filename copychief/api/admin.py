"""Admin token management: grants, monthly resets, audit history."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from copychief.api.auth import get_admin_account
from copychief.database import get_db
from copychief.exceptions import AccountNotFound
from copychief.models import Account, BalanceAuditEntry, BalanceChangeReason, BalanceField
from copychief.runtime import ChatRuntime, get_runtime

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Schemas ---

class GrantRequest(BaseModel):
    field: BalanceField
    delta: int = Field(description="Tokens to add; negative values revoke")

    @field_validator("field")
    @classmethod
    def _not_consumed(cls, v: BalanceField) -> BalanceField:
        if v is BalanceField.CONSUMED:
            raise ValueError("Consumption is recorded by the ledger, not granted")
        return v

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v


class BalanceResponse(BaseModel):
    account_id: int
    monthly_tokens: int
    extra_tokens: int
    total_available: int
    total_used: int
    reserved_tokens: int


class AuditEntryResponse(BaseModel):
    id: int
    field: str
    delta: int
    reason: str
    actor_id: str
    created_at: datetime


# --- Endpoints ---

@router.post("/accounts/{account_id}/tokens", response_model=BalanceResponse)
async def grant_tokens(
    account_id: int,
    request: GrantRequest,
    admin: Account = Depends(get_admin_account),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Grant or revoke monthly or extra tokens, with an audit entry."""
    store = runtime.ledger.store
    try:
        await store.apply_delta(
            db,
            account_id,
            request.field,
            request.delta,
            BalanceChangeReason.ADMIN_GRANT,
            actor_id=f"admin:{admin.id}",
        )
    except AccountNotFound:
        raise HTTPException(status_code=404, detail="Account not found")
    await db.commit()
    await runtime.ledger.observe(account_id)
    balance = await store.read_balance(db, account_id)
    return BalanceResponse(
        account_id=account_id,
        monthly_tokens=balance.monthly,
        extra_tokens=balance.extra,
        total_available=balance.available,
        total_used=balance.consumed,
        reserved_tokens=balance.reserved,
    )


@router.post("/accounts/{account_id}/reset")
async def reset_account(
    account_id: int,
    admin: Account = Depends(get_admin_account),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Restore one account's monthly allowance now, regardless of the cycle."""
    try:
        await runtime.ledger.store.reset_monthly(db, account_id, actor_id=f"admin:{admin.id}")
    except AccountNotFound:
        raise HTTPException(status_code=404, detail="Account not found")
    await db.commit()
    await runtime.ledger.observe(account_id)
    return {"account_id": account_id, "reset": True}


@router.post("/tokens/monthly-reset")
async def monthly_reset(
    admin: Account = Depends(get_admin_account),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Reset every account still on last month's cycle."""
    count = await runtime.ledger.reset_due_accounts(actor_id=f"admin:{admin.id}")
    return {"accounts_reset": count}


@router.get("/accounts/{account_id}/audit", response_model=list[AuditEntryResponse])
async def audit_history(
    account_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    admin: Account = Depends(get_admin_account),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(BalanceAuditEntry)
        .where(BalanceAuditEntry.account_id == account_id)
        .order_by(BalanceAuditEntry.created_at.desc(), BalanceAuditEntry.id.desc())
        .limit(limit)
    )
    return [
        AuditEntryResponse(
            id=e.id,
            field=e.field.value,
            delta=e.delta,
            reason=e.reason.value,
            actor_id=e.actor_id,
            created_at=e.created_at,
        )
        for e in result.scalars().all()
    ]
