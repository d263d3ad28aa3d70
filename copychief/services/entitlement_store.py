"""Entitlement store: the only code that writes account balance columns.

Every mutation is a single UPDATE whose new values are SQL expressions of the
old ones, so concurrent requests for the same account (two browser tabs) never
lose updates. Every balance mutation appends a BalanceAuditEntry in the same
transaction.

Methods take the caller's AsyncSession and never commit; the ledger composes
several store calls into one transaction.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from copychief.balance import AccountBalance
from copychief.exceptions import AccountNotFound
from copychief.models import Account, BalanceAuditEntry, BalanceChangeReason, BalanceField

logger = logging.getLogger(__name__)


def _floor_zero(expr):
    return case((expr > 0, expr), else_=0)


def _consumption_values(amount: int) -> dict:
    """Monthly allowance first, extra tokens only for the remainder."""
    monthly = Account.monthly_tokens
    extra = Account.extra_tokens
    remainder = amount - monthly
    return {
        Account.monthly_tokens: case((monthly >= amount, monthly - amount), else_=0),
        Account.extra_tokens: case(
            (monthly >= amount, extra),
            (extra > remainder, extra - remainder),
            else_=0,
        ),
        Account.total_tokens_used: Account.total_tokens_used + amount,
    }


class EntitlementStore:
    """Read and atomically mutate account balances."""

    async def read_balance(self, db: AsyncSession, account_id: int) -> AccountBalance:
        result = await db.execute(
            select(
                Account.monthly_tokens,
                Account.extra_tokens,
                Account.total_tokens_used,
                Account.reserved_tokens,
                Account.monthly_allowance,
            ).where(Account.id == account_id)
        )
        row = result.one_or_none()
        if row is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return AccountBalance(
            account_id=account_id,
            monthly=row.monthly_tokens,
            extra=row.extra_tokens,
            consumed=row.total_tokens_used,
            reserved=row.reserved_tokens,
            monthly_allowance=row.monthly_allowance,
        )

    async def apply_delta(
        self,
        db: AsyncSession,
        account_id: int,
        field: BalanceField,
        delta: int,
        reason: BalanceChangeReason,
        actor_id: str,
    ) -> int:
        """Apply one audited balance change and return the change actually made.

        MONTHLY and EXTRA add ``delta`` (which may be negative) to the
        remaining balance, flooring at zero; the audit entry records the
        floored amount. CONSUMED draws ``delta`` tokens down, monthly first.
        """
        column = None
        if field is BalanceField.CONSUMED:
            if delta < 0:
                raise ValueError("Consumption cannot be negative")
            values = _consumption_values(delta)
        elif field is BalanceField.MONTHLY:
            column = Account.monthly_tokens
            values = {column: _floor_zero(column + delta)}
        elif field is BalanceField.EXTRA:
            column = Account.extra_tokens
            values = {column: _floor_zero(column + delta)}
        else:
            raise ValueError(f"Unsupported balance field: {field}")

        before = None
        if column is not None:
            before = await db.scalar(
                select(column).where(Account.id == account_id).with_for_update()
            )
            if before is None:
                raise AccountNotFound(f"Account {account_id} not found")

        result = await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise AccountNotFound(f"Account {account_id} not found")

        applied = delta
        if column is not None:
            applied = await db.scalar(select(column).where(Account.id == account_id)) - before

        db.add(
            BalanceAuditEntry(
                account_id=account_id,
                field=field,
                delta=applied,
                reason=reason,
                actor_id=actor_id,
            )
        )
        logger.info(
            "Balance delta: account=%d field=%s requested=%d applied=%d reason=%s actor=%s",
            account_id, field.value, delta, applied, reason.value, actor_id,
        )
        return applied

    async def reset_monthly(
        self,
        db: AsyncSession,
        account_id: int,
        actor_id: str = "system",
        only_before: datetime | None = None,
    ) -> bool:
        """Restore the monthly allowance and zero the cycle's consumption.

        With ``only_before`` the reset only happens if the last reset is older,
        which keeps concurrent lazy resets from running twice. Returns whether
        a reset happened.
        """
        before = await self.read_balance(db, account_id)
        now = datetime.now(timezone.utc)
        stmt = update(Account).where(Account.id == account_id)
        if only_before is not None:
            stmt = stmt.where(
                or_(Account.tokens_reset_at.is_(None), Account.tokens_reset_at < only_before)
            )
        result = await db.execute(
            stmt.values(
                monthly_tokens=Account.monthly_allowance,
                total_tokens_used=0,
                tokens_reset_at=now,
                notified_level="none",
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        db.add(
            BalanceAuditEntry(
                account_id=account_id,
                field=BalanceField.MONTHLY,
                delta=before.monthly_allowance - before.monthly,
                reason=BalanceChangeReason.MONTHLY_RESET,
                actor_id=actor_id,
            )
        )
        logger.info("Monthly tokens reset: account=%d actor=%s", account_id, actor_id)
        return True

    async def hold(self, db: AsyncSession, account_id: int, amount: int) -> bool:
        """Atomically reserve ``amount`` tokens if the spendable balance covers it."""
        result = await db.execute(
            update(Account)
            .where(
                and_(
                    Account.id == account_id,
                    Account.monthly_tokens + Account.extra_tokens - Account.reserved_tokens
                    >= amount,
                )
            )
            .values(reserved_tokens=Account.reserved_tokens + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_hold(self, db: AsyncSession, account_id: int, amount: int) -> None:
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(reserved_tokens=_floor_zero(Account.reserved_tokens - amount))
            .execution_options(synchronize_session=False)
        )
