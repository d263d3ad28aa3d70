"""Background usage commits.

After a normal stream the relay submits the exchange's usage here and
returns without waiting on the ledger. A single worker task drains the queue
and retries failed commits with bounded backoff. A commit that exhausts its
retries is logged at ERROR with the full payload so it can be reconciled by
hand; it is never silently dropped. Aborted exchanges settle inline through
settle_now so their hold is gone before the next reservation on the account.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from copychief.exceptions import LedgerCommitError, ReservationNotFound
from copychief.retry import RetryPolicy
from copychief.services.ledger import TokenLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageCommit:
    account_id: int
    prompt_tokens: int
    completion_tokens: int
    feature: str
    exchange_id: str
    reservation_id: str | None = None
    estimated: bool = False
    model: str | None = None


@dataclass(frozen=True)
class ReleaseJob:
    reservation_id: str


class UsageCommitter:
    """Queue plus one worker task that commits usage to the ledger."""

    def __init__(
        self,
        ledger: TokenLedger,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._ledger = ledger
        self._policy = policy or RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=60.0)
        self._sleep = sleep
        self._queue: asyncio.Queue[UsageCommit | ReleaseJob] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.abandoned: list[UsageCommit] = []

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="usage-committer")
        logger.info("Usage committer started")

    def submit(self, job: UsageCommit | ReleaseJob) -> None:
        self._queue.put_nowait(job)

    async def settle_now(self, job: UsageCommit | ReleaseJob) -> None:
        """Settle one job inline, handing it to the worker only if storage fails.

        Used when the next reservation must see the hold gone, e.g. when a
        newer message supersedes an exchange on a tight balance.
        """
        try:
            if isinstance(job, ReleaseJob):
                await self._release(job)
            else:
                await self._commit(job)
        except (LedgerCommitError, SQLAlchemyError) as e:
            logger.warning("Inline settlement failed, queueing for retry: %s", e)
            self._queue.put_nowait(job)

    async def drain(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Drain outstanding jobs, then stop the worker."""
        if self._worker is None:
            return
        if self.running:
            await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Usage committer stopped")

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if isinstance(job, ReleaseJob):
                    await self._release(job)
                else:
                    await self.commit_with_retry(job)
            except Exception:
                logger.exception("Usage committer job crashed: %r", job)
            finally:
                self._queue.task_done()

    async def commit_with_retry(self, job: UsageCommit) -> bool:
        """Commit one job, retrying LedgerCommitError. Returns False if abandoned."""
        attempt = 0
        while True:
            try:
                await self._commit(job)
                return True
            except LedgerCommitError as e:
                delay = self._policy.delay_for(attempt)
                if delay is None:
                    self.abandoned.append(job)
                    logger.error(
                        "Usage commit abandoned after %d attempts: %s payload=%s",
                        attempt + 1, e, json.dumps(asdict(job)),
                    )
                    return False
                logger.warning(
                    "Usage commit failed (attempt %d), retrying in %.1fs: %s",
                    attempt + 1, delay, e,
                )
                attempt += 1
                await self._sleep(delay)

    async def _release(self, job: ReleaseJob) -> None:
        try:
            released = await self._ledger.release(job.reservation_id)
        except ReservationNotFound:
            logger.warning("Release for unknown reservation %s", job.reservation_id)
            return
        if not released:
            logger.debug("Reservation %s was already settled", job.reservation_id)

    async def _commit(self, job: UsageCommit) -> None:
        await self._ledger.commit_usage(
            job.account_id,
            job.prompt_tokens,
            job.completion_tokens,
            job.feature,
            exchange_id=job.exchange_id,
            reservation_id=job.reservation_id,
            estimated=job.estimated,
            model=job.model,
        )
