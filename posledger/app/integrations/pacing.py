from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from posledger.app.config import SyncSettings


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 0.75
    max_delay: float = 8.0
    jitter: float = 0.25
    min_interval: float = 0.2

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "BackoffPolicy":
        return cls(
            max_attempts=max(1, settings.retry_attempts),
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
            min_interval=settings.page_interval,
        )

    def delay_for(
        self,
        attempt: int,
        *,
        retry_after: Optional[float] = None,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        if retry_after is not None:
            return min(self.max_delay, max(0.0, retry_after))
        base = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        return base + base * self.jitter * rng()


class Pacer:
    """Spaces outbound calls at least `min_interval` seconds apart."""

    def __init__(
        self,
        min_interval: float = 0.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._last_call: Optional[float] = None

    def wait(self) -> None:
        if self._last_call is not None and self.min_interval > 0:
            remaining = self.min_interval - (self._clock() - self._last_call)
            if remaining > 0:
                self._sleep(remaining)
        self._last_call = self._clock()

    def pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
