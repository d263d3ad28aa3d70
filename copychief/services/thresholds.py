"""Balance threshold watcher: advisory low-balance signals.

Levels are computed from the share of the cycle's tokens already consumed.
A signal fires only when an account's level changes, so a user at 92% sees
one critical notice rather than one per message.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable

from copychief.balance import AccountBalance

logger = logging.getLogger(__name__)

CRITICAL_PERCENT = 90.0
INFORMATIONAL_PERCENT = 50.0


class AlertLevel(str, enum.Enum):
    NONE = "none"
    INFORMATIONAL = "informational"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ThresholdSignal:
    account_id: int
    level: AlertLevel
    usage_percentage: float
    available: int

    @property
    def suggests_upgrade(self) -> bool:
        return self.level is AlertLevel.CRITICAL


def usage_percentage(consumed: int, available: int) -> float:
    """Consumed share of consumed plus remaining, 0-100."""
    total = consumed + available
    if total <= 0:
        return 100.0 if available <= 0 else 0.0
    return consumed / total * 100


def classify(balance: AccountBalance) -> AlertLevel:
    if balance.available == 0:
        return AlertLevel.CRITICAL
    percent = usage_percentage(balance.consumed, balance.available)
    if percent >= CRITICAL_PERCENT:
        return AlertLevel.CRITICAL
    if percent >= INFORMATIONAL_PERCENT:
        return AlertLevel.INFORMATIONAL
    return AlertLevel.NONE


Listener = Callable[[ThresholdSignal], None]


class ThresholdWatcher:
    """Notifies listeners when an account's threshold level changes."""

    def __init__(self):
        self._levels: dict[int, AlertLevel] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def level_for(self, account_id: int) -> AlertLevel:
        return self._levels.get(account_id, AlertLevel.NONE)

    def observe(
        self, balance: AccountBalance, previous: AlertLevel | None = None
    ) -> ThresholdSignal | None:
        """Return and dispatch a signal if the balance's level moved.

        ``previous`` is the last level signalled when the caller stores it
        (the ledger keeps it on the account row); without it the watcher
        remembers levels itself.
        """
        level = classify(balance)
        if previous is None:
            previous = self._levels.get(balance.account_id, AlertLevel.NONE)
            self._levels[balance.account_id] = level
        if level is previous:
            return None

        signal = ThresholdSignal(
            account_id=balance.account_id,
            level=level,
            usage_percentage=round(usage_percentage(balance.consumed, balance.available), 2),
            available=balance.available,
        )
        if level is not AlertLevel.NONE:
            logger.info(
                "Token threshold %s: account=%d usage=%.1f%% available=%d",
                level.value, signal.account_id, signal.usage_percentage, signal.available,
            )
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception:
                logger.exception("Threshold listener failed for account %d", balance.account_id)
        return signal

    def forget(self, account_id: int) -> None:
        self._levels.pop(account_id, None)
