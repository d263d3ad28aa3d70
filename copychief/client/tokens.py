"""Client-side token balance with a short TTL cache.

The relay is authoritative; this cache only keeps UIs from hitting the token
endpoint on every render. Threshold signals are re-evaluated when the
available balance moves by more than SIGNIFICANT_CHANGE tokens.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from copychief.balance import DEFAULT_ESTIMATE, TOKEN_ESTIMATES, AccountBalance
from copychief.config import settings
from copychief.exceptions import StreamConnectionError, error_from_response
from copychief.services.thresholds import ThresholdSignal, ThresholdWatcher

logger = logging.getLogger(__name__)

SIGNIFICANT_CHANGE = 100


@dataclass(frozen=True)
class TokenBalance:
    monthly_tokens: int
    extra_tokens: int
    total_available: int
    total_used: int
    reserved_tokens: int = 0
    usage_percentage: float = 0.0
    alert: str = "none"

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenBalance":
        return cls(
            monthly_tokens=int(payload["monthly_tokens"]),
            extra_tokens=int(payload["extra_tokens"]),
            total_available=int(payload["total_available"]),
            total_used=int(payload["total_used"]),
            reserved_tokens=int(payload.get("reserved_tokens", 0)),
            usage_percentage=float(payload.get("usage_percentage", 0.0)),
            alert=payload.get("alert", "none"),
        )


class TokenBalanceClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        account_id: int,
        ttl_seconds: float | None = None,
        watcher: ThresholdWatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._http = http
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self.account_id = account_id
        self._ttl = settings.token_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.watcher = watcher or ThresholdWatcher()
        self._clock = clock
        self._cached: TokenBalance | None = None
        self._expires_at = 0.0
        self._estimates: dict[str, int] | None = None
        self._default_estimate = DEFAULT_ESTIMATE

    @property
    def cached(self) -> TokenBalance | None:
        return self._cached

    def invalidate(self) -> None:
        self._expires_at = 0.0

    def on_threshold(self, listener: Callable[[ThresholdSignal], None]) -> Callable[[], None]:
        return self.watcher.subscribe(listener)

    async def get_balance(self, force: bool = False) -> TokenBalance:
        """Cached balance, refreshed after the TTL or when ``force`` is set.

        If the refresh fails and a stale balance exists, the stale one is
        returned instead of raising.
        """
        if not force and self._cached is not None and self._clock() < self._expires_at:
            return self._cached

        try:
            response = await self._http.get("/api/v1/tokens", headers=self._headers)
        except httpx.HTTPError as e:
            if self._cached is not None:
                logger.warning("Token refresh failed, serving cached balance: %s", e)
                return self._cached
            raise StreamConnectionError(f"Token balance unavailable: {e}") from e
        if not response.is_success:
            if self._cached is not None:
                logger.warning("Token refresh returned %d, serving cached balance", response.status_code)
                return self._cached
            raise error_from_response(response.status_code, _json_or_empty(response))

        balance = TokenBalance.from_payload(response.json())
        previous = self._cached
        self._cached = balance
        self._expires_at = self._clock() + self._ttl
        if previous is None or abs(previous.total_available - balance.total_available) > SIGNIFICANT_CHANGE:
            self.watcher.observe(
                AccountBalance(
                    account_id=self.account_id,
                    monthly=balance.monthly_tokens,
                    extra=balance.extra_tokens,
                    consumed=balance.total_used,
                    reserved=balance.reserved_tokens,
                )
            )
        return balance

    async def estimate(self, feature: str) -> int:
        if self._estimates is None:
            try:
                response = await self._http.get("/api/v1/tokens/estimates", headers=self._headers)
            except httpx.HTTPError as e:
                logger.warning("Estimate table unavailable, using built-in estimates: %s", e)
                return TOKEN_ESTIMATES.get(feature, self._default_estimate)
            if response.is_success:
                payload = response.json()
                self._estimates = payload.get("estimates", {})
                self._default_estimate = payload.get("default", self._default_estimate)
            else:
                self._estimates = dict(TOKEN_ESTIMATES)
        return self._estimates.get(feature, self._default_estimate)

    async def can_afford(self, feature: str) -> bool:
        """Advisory pre-check; the relay's reservation is the real gate."""
        required = await self.estimate(feature)
        balance = await self.get_balance()
        return balance.total_available - balance.reserved_tokens >= required


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        return response.json()
    except ValueError:
        return {}
