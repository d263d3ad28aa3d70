"""Token ledger: pre-flight reservations and post-hoc usage commits.

Flow for every metered operation:
1. estimate_cost(feature) gives a static pre-flight estimate
2. reserve_and_check() atomically holds that many tokens or raises
   InsufficientTokens (the LLM must not be called in that case)
3. the operation runs
4. commit_usage() records the actual counts, converts the hold, and appends
   a TokenUsageRecord, all in one transaction
5. on failure, release() drops the hold; sweep_expired() catches holds whose
   owner died

Estimates, holds and commits are all in tokens.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copychief.balance import DEFAULT_ESTIMATE, TOKEN_ESTIMATES, AccountBalance
from copychief.exceptions import InsufficientTokens, LedgerCommitError, ReservationNotFound
from copychief.models import (
    Account,
    BalanceChangeReason,
    BalanceField,
    ReservationStatus,
    TokenReservation,
    TokenUsageRecord,
)
from copychief.services.entitlement_store import EntitlementStore
from copychief.services.thresholds import AlertLevel, ThresholdSignal, ThresholdWatcher, classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    id: str
    account_id: int
    feature: str
    amount: int
    expires_at: datetime


def estimate_tokens_from_text(text: str, factor: float) -> int:
    """Fallback estimator for providers that do not report usage."""
    return math.ceil(len(text) * factor)


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class TokenLedger:
    """Computes budgets, holds reservations and commits actual usage."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EntitlementStore | None = None,
        watcher: ThresholdWatcher | None = None,
        default_estimate: int = DEFAULT_ESTIMATE,
        reservation_ttl_seconds: int = 300,
    ):
        self._session_factory = session_factory
        self._store = store or EntitlementStore()
        self._watcher = watcher
        self._default_estimate = default_estimate
        self._reservation_ttl = timedelta(seconds=reservation_ttl_seconds)

    @property
    def store(self) -> EntitlementStore:
        return self._store

    def estimate_cost(self, feature: str) -> int:
        return TOKEN_ESTIMATES.get(feature, self._default_estimate)

    async def get_available(self, account_id: int) -> AccountBalance:
        async with self._session_factory() as db:
            await self._maybe_reset_monthly(db, account_id)
            return await self._store.read_balance(db, account_id)

    async def reserve_and_check(
        self, account_id: int, estimated_cost: int, feature: str = "chat_message"
    ) -> Reservation:
        """Hold ``estimated_cost`` tokens or raise InsufficientTokens.

        The hold is a conditional increment of the account's reserved
        counter, so two concurrent requests cannot both spend the last tokens.
        """
        async with self._session_factory() as db:
            await self._maybe_reset_monthly(db, account_id)
            if not await self._store.hold(db, account_id, estimated_cost):
                await db.rollback()
                balance = await self._store.read_balance(db, account_id)
                logger.warning(
                    "Reservation denied: account=%d feature=%s required=%d available=%d",
                    account_id, feature, estimated_cost, balance.spendable,
                )
                raise InsufficientTokens(required=estimated_cost, available=balance.spendable)

            now = datetime.now(timezone.utc)
            row = TokenReservation(
                id=str(uuid.uuid4()),
                account_id=account_id,
                feature=feature,
                amount=estimated_cost,
                status=ReservationStatus.ACTIVE,
                created_at=now,
                expires_at=now + self._reservation_ttl,
            )
            db.add(row)
            await db.commit()

        logger.debug("Reserved %d tokens for account=%d (%s)", estimated_cost, account_id, row.id)
        return Reservation(
            id=row.id,
            account_id=account_id,
            feature=feature,
            amount=estimated_cost,
            expires_at=row.expires_at,
        )

    async def commit_usage(
        self,
        account_id: int,
        prompt_tokens: int,
        completion_tokens: int,
        feature: str,
        *,
        exchange_id: str | None = None,
        reservation_id: str | None = None,
        estimated: bool = False,
        model: str | None = None,
    ) -> TokenUsageRecord:
        """Record actual usage once per exchange.

        Idempotent on ``exchange_id``: a retried commit for an exchange that
        already landed returns the existing record without billing twice.
        Raises LedgerCommitError on storage failure.
        """
        total = prompt_tokens + completion_tokens
        try:
            async with self._session_factory() as db:
                if exchange_id is not None:
                    existing = await db.execute(
                        select(TokenUsageRecord).where(TokenUsageRecord.exchange_id == exchange_id)
                    )
                    record = existing.scalar_one_or_none()
                    if record is not None:
                        logger.info("Usage for exchange %s already committed", exchange_id)
                        return record

                await self._store.apply_delta(
                    db,
                    account_id,
                    BalanceField.CONSUMED,
                    total,
                    BalanceChangeReason.CONSUMPTION,
                    actor_id=str(account_id),
                )
                if reservation_id is not None:
                    await self._settle(db, reservation_id, ReservationStatus.CONVERTED)

                record = TokenUsageRecord(
                    account_id=account_id,
                    exchange_id=exchange_id,
                    feature=feature,
                    model=model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=total,
                    estimated=estimated,
                )
                db.add(record)
                await db.commit()
        except SQLAlchemyError as e:
            raise LedgerCommitError(f"Usage commit failed for account {account_id}: {e}") from e

        logger.info(
            "Usage committed: account=%d feature=%s tokens=%d/%d estimated=%s exchange=%s",
            account_id, feature, prompt_tokens, completion_tokens, estimated, exchange_id,
        )
        await self.observe(account_id)
        return record

    async def release(self, reservation_id: str) -> bool:
        """Drop a hold without billing. Returns False if it was already settled."""
        async with self._session_factory() as db:
            released = await self._settle(db, reservation_id, ReservationStatus.RELEASED)
            await db.commit()
        return released

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Expire holds whose owner never committed or released them."""
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                select(TokenReservation.id).where(
                    TokenReservation.status == ReservationStatus.ACTIVE,
                    TokenReservation.expires_at < now,
                )
            )
            expired = 0
            for reservation_id in result.scalars().all():
                if await self._settle(db, reservation_id, ReservationStatus.EXPIRED):
                    expired += 1
            await db.commit()
        if expired:
            logger.warning("Expired %d stale token reservations", expired)
        return expired

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Background loop around sweep_expired. Cancel to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_expired()
            except SQLAlchemyError as e:
                logger.error("Reservation sweep failed: %s", e)

    async def reset_due_accounts(self, actor_id: str = "system") -> int:
        """Reset every account whose last reset predates the current month."""
        cutoff = _month_start(datetime.now(timezone.utc))
        async with self._session_factory() as db:
            result = await db.execute(select(Account.id))
            reset = 0
            for account_id in result.scalars().all():
                if await self._store.reset_monthly(db, account_id, actor_id, only_before=cutoff):
                    reset += 1
            await db.commit()
        logger.info("Monthly reset complete: %d accounts", reset)
        return reset

    async def _maybe_reset_monthly(self, db: AsyncSession, account_id: int) -> None:
        """Lazy monthly reset, applied on first access in a new month."""
        cutoff = _month_start(datetime.now(timezone.utc))
        if await self._store.reset_monthly(db, account_id, only_before=cutoff):
            await db.commit()

    async def _settle(
        self, db: AsyncSession, reservation_id: str, status: ReservationStatus
    ) -> bool:
        """Move an active reservation to ``status`` and drop its hold, once."""
        result = await db.execute(
            select(TokenReservation.account_id, TokenReservation.amount).where(
                TokenReservation.id == reservation_id
            )
        )
        row = result.one_or_none()
        if row is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")

        claimed = await db.execute(
            update(TokenReservation)
            .where(
                TokenReservation.id == reservation_id,
                TokenReservation.status == ReservationStatus.ACTIVE,
            )
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return False
        await self._store.release_hold(db, row.account_id, row.amount)
        return True

    async def observe(self, account_id: int) -> ThresholdSignal | None:
        """Re-check an account's threshold level after its balance changed.

        The last level signalled lives on the account row. The row is claimed
        with a compare-and-set, so a restart or a second relay instance never
        repeats a signal, and the monthly reset clears it.
        """
        if self._watcher is None:
            return None
        try:
            async with self._session_factory() as db:
                await self._maybe_reset_monthly(db, account_id)
                balance = await self._store.read_balance(db, account_id)
                stored = await db.scalar(
                    select(Account.notified_level).where(Account.id == account_id)
                )
                previous = AlertLevel(stored)
                level = classify(balance)
                if level is previous:
                    return None
                claimed = await db.execute(
                    update(Account)
                    .where(Account.id == account_id, Account.notified_level == previous.value)
                    .values(notified_level=level.value)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning("Balance refresh for threshold check failed: %s", e)
            return None
        if claimed.rowcount != 1:
            return None
        return self._watcher.observe(balance, previous=previous)
