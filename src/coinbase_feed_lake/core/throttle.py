from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable

CONNECT_MIN_INTERVAL_SECONDS = 0.5

logger = logging.getLogger(__name__)


class RateLimiter:
    """Enforce a minimum spacing between consecutive events (connect attempts)."""

    def __init__(
        self,
        min_interval_seconds: float = CONNECT_MIN_INTERVAL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self._min_interval_seconds = float(min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._last_event: float | None = None

    @property
    def min_interval_seconds(self) -> float:
        return self._min_interval_seconds

    @property
    def last_event(self) -> float | None:
        return self._last_event

    def delay_until_ready(self) -> float:
        if self._last_event is None:
            return 0.0
        return max(0.0, self._min_interval_seconds - (self._clock() - self._last_event))

    async def acquire(self) -> float:
        """Wait until the spacing has elapsed, record the event, and return the time waited."""
        waited = 0.0
        # the clock may run slightly behind the sleep, so re-check until the spacing is honored
        while (delay := self.delay_until_ready()) > 0:
            logger.debug("Throttling connect attempt", extra={"sleep_seconds": round(delay, 3)})
            await self._sleep(delay)
            waited += delay
        self._last_event = self._clock()
        return waited


class DeadlineTimer:
    """Track elapsed time since a lifecycle milestone and fire once if a deadline passes."""

    def __init__(
        self,
        name: str,
        deadline_seconds: float,
        on_expire: Callable[[DeadlineTimer], None] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.deadline_seconds = float(deadline_seconds)
        self._on_expire = on_expire
        self._clock = clock
        self._started_at: float | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False

    @property
    def armed(self) -> bool:
        return self._started_at is not None

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def expired(self) -> bool:
        return self.armed and self.remaining() <= 0

    def arm(self) -> DeadlineTimer:
        self.disarm()
        self._started_at = self._clock()
        self._fired = False
        if self._on_expire is not None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.deadline_seconds, self._fire)
        return self

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._started_at = None

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def remaining(self) -> float:
        if self._started_at is None:
            return self.deadline_seconds
        return max(0.0, self.deadline_seconds - self.elapsed())

    def _fire(self) -> None:
        self._handle = None
        if self._fired or self._on_expire is None:
            return
        self._fired = True
        self._on_expire(self)


class BackoffPolicy:
    """Capped exponential backoff with additive jitter and a hard floor.

    The base delay ``initial * multiplier ** attempt`` never decreases between resets;
    jitter only adds ``uniform(0, jitter * base)`` on top of it.
    """

    def __init__(
        self,
        *,
        initial_seconds: float = 0.5,
        maximum_seconds: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.2,
        floor_seconds: float = CONNECT_MIN_INTERVAL_SECONDS,
        rng: random.Random | None = None,
    ) -> None:
        if maximum_seconds < floor_seconds:
            raise ValueError("maximum_seconds must be >= floor_seconds")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        self._initial_seconds = initial_seconds
        self._maximum_seconds = maximum_seconds
        self._multiplier = multiplier
        self._jitter = max(0.0, jitter)
        self._floor_seconds = floor_seconds
        self._rng = rng or random.Random()  # noqa: S311
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def base_delay(self, attempt: int) -> float:
        return min(self._maximum_seconds, self._initial_seconds * (self._multiplier ** max(attempt, 0)))

    def next_delay(self) -> float:
        base = self.base_delay(self._attempt)
        self._attempt += 1
        delay = base + self._rng.uniform(0.0, self._jitter * base)
        return min(self._maximum_seconds, max(self._floor_seconds, delay))

    def reset(self) -> None:
        self._attempt = 0
