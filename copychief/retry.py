"""Bounded exponential backoff shared by client reconnects and usage commits."""

import random
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with an explicit give-up point.

    ``delay_for(attempt)`` returns the wait before retry number ``attempt``
    (0-based), or None once ``max_attempts`` retries have been spent. With the
    defaults the delays are 1s, 2s, 4s.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0  # extra random fraction of the delay, e.g. 0.2 = up to +20%

    def delay_for(self, attempt: int) -> float | None:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        if attempt >= self.max_attempts:
            return None
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay *= 1 + random.uniform(0, self.jitter)
        return delay

    def delays(self) -> Iterator[float]:
        attempt = 0
        while (delay := self.delay_for(attempt)) is not None:
            yield delay
            attempt += 1
