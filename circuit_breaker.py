"""
circuit_breaker.py — Time-boxed availability guard for external dependencies.

States:
  - CLOSED:    calls pass through
  - OPEN:      calls rejected until the cooldown elapses
  - HALF_OPEN: one trial call allowed; success closes, failure re-opens

The breakers are process-wide (shared by every request) and injected into
the services that call the text-generation and embedding backends.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from functools import lru_cache
from typing import AsyncIterator, Callable, Optional

from config import get_settings
from errors import CircuitOpenError

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Counts consecutive failures of one dependency and short-circuits calls
    once `failure_threshold` is reached, for `cooldown_s` seconds.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 1,
        cooldown_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown_s < 0:
            raise ValueError("cooldown_s must be >= 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.last_error: Optional[str] = None
        self._trial_in_flight = False

    # ----------------------------------------------------------
    # State
    # ----------------------------------------------------------

    @property
    def state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._cooldown_elapsed():
            return BreakerState.HALF_OPEN
        return self._state

    @property
    def is_available(self) -> bool:
        """True if a call made right now would be let through."""
        state = self.state
        if state == BreakerState.CLOSED:
            return True
        if state == BreakerState.HALF_OPEN:
            return not self._trial_in_flight
        return False

    def _cooldown_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.cooldown_s

    def _retry_in(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return max(0.0, self.cooldown_s - (self._clock() - self.last_failure_time))

    # ----------------------------------------------------------
    # Transitions
    # ----------------------------------------------------------

    def check(self) -> None:
        """Admit one call or raise CircuitOpenError."""
        if self._state == BreakerState.OPEN:
            if not self._cooldown_elapsed():
                raise CircuitOpenError(self.name, self._retry_in())
            logger.info("[breaker:%s] open -> half_open (cooldown elapsed)", self.name)
            self._state = BreakerState.HALF_OPEN

        if self._state == BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def allow_request(self) -> bool:
        """Non-raising form of check(); admits the call when True."""
        try:
            self.check()
        except CircuitOpenError:
            return False
        return True

    def record_success(self) -> None:
        if self._state == BreakerState.HALF_OPEN:
            logger.info("[breaker:%s] half_open -> closed (trial call succeeded)", self.name)
        self._state = BreakerState.CLOSED
        self._trial_in_flight = False
        self.failure_count = 0

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self.last_error = str(error) if error is not None else None
        self._trial_in_flight = False

        if self._state == BreakerState.HALF_OPEN:
            logger.warning("[breaker:%s] half_open -> open (trial call failed: %s)",
                           self.name, error)
            self._state = BreakerState.OPEN
            return

        if self.failure_count >= self.failure_threshold:
            if self._state != BreakerState.OPEN:
                logger.warning(
                    "[breaker:%s] closed -> open after %d failure(s), cooldown %.0fs: %s",
                    self.name, self.failure_count, self.cooldown_s, error)
            self._state = BreakerState.OPEN
        else:
            logger.warning("[breaker:%s] failure %d/%d: %s", self.name,
                           self.failure_count, self.failure_threshold, error)

    def release(self) -> None:
        """Drop an admitted call without judging the dependency (e.g. cancellation)."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.last_error = None
        self._trial_in_flight = False

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """
        Wrap one call to the protected dependency:

            async with breaker.guard():
                await client.generate(...)

        Raises CircuitOpenError before the body runs if the circuit is open.
        Cancellation is neither a success nor a failure.
        """
        self.check()
        try:
            yield
        except asyncio.CancelledError:
            self.release()
            raise
        except Exception as e:
            self.record_failure(e)
            raise
        else:
            self.record_success()

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "retry_in_s": round(self._retry_in(), 1) if self._state == BreakerState.OPEN else 0.0,
            "last_error": self.last_error,
        }


class BreakerRegistry:
    """The process-wide breakers, one per external dependency path."""

    def __init__(
        self,
        failure_threshold: int = 1,
        cooldown_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        def make(name: str) -> CircuitBreaker:
            return CircuitBreaker(name, failure_threshold, cooldown_s, clock)

        self.ai_normalization = make("ai_normalization")
        self.embedding_service = make("embedding_service")
        self.ai_disambiguation = make("ai_disambiguation")
        self.intent_parsing = make("intent_parsing")

    def all(self) -> list[CircuitBreaker]:
        return [
            self.ai_normalization,
            self.embedding_service,
            self.ai_disambiguation,
            self.intent_parsing,
        ]

    def snapshot(self) -> dict[str, dict]:
        return {b.name: b.snapshot() for b in self.all()}

    def reset(self) -> None:
        for b in self.all():
            b.reset()


@lru_cache
def get_breakers() -> BreakerRegistry:
    settings = get_settings()
    return BreakerRegistry(
        failure_threshold=settings.breaker_failure_threshold,
        cooldown_s=settings.breaker_cooldown_s,
    )
