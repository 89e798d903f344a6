"""
circuit_breaker.py — Per-service failure gate for outbound calls.

One breaker exists per logical external service (``azure`` for the cloud
data APIs, ``completion`` for the text-generation endpoint).  Breakers are
created once at startup and shared by every request, so failures seen by
one request shed load for the ones that follow.

    CLOSED     calls pass; consecutive failures counted
    OPEN       calls rejected with CircuitOpenError until reset_timeout
               has elapsed since the last failure
    HALF_OPEN  probe calls pass; success_threshold successes close the
               breaker, any failure reopens it
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from errors import CircuitOpenError

logger = logging.getLogger("azops.breaker")

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Thread-safe circuit breaker; state only changes under ``_lock``."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_time: Optional[float] = None

    # -- gate -------------------------------------------------------------

    def before_call(self) -> None:
        """Admit or reject a call; may move OPEN → HALF_OPEN."""
        with self._lock:
            if self.state is not BreakerState.OPEN:
                return
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed >= self.reset_timeout:
                self.state = BreakerState.HALF_OPEN
                self.successes = 0
                logger.info("Breaker %s half-open after %.1fs", self.name, elapsed)
                return
            retry_in = self.reset_timeout - elapsed
        raise CircuitOpenError(self.name, retry_in=retry_in)

    def record_success(self) -> None:
        with self._lock:
            if self.state is BreakerState.HALF_OPEN:
                self.successes += 1
                if self.successes >= self.success_threshold:
                    self._reset()
                    logger.info("Breaker %s closed", self.name)
            else:
                self.failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self.last_failure_time = self._clock()
            if self.state is BreakerState.HALF_OPEN:
                self.state = BreakerState.OPEN
                self.failures = 0
                self.successes = 0
                logger.warning("Breaker %s reopened by failed probe", self.name)
                return
            self.failures += 1
            if self.state is BreakerState.CLOSED and self.failures >= self.failure_threshold:
                self.state = BreakerState.OPEN
                logger.warning(
                    "Breaker %s opened after %d consecutive failures",
                    self.name, self.failures,
                )

    def _reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_time = None

    # -- execution --------------------------------------------------------

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``fn()`` through the breaker.
        Cancellation is not counted as a failure; callers that abandon a
        call on timeout record the failure themselves.
        """
        self.before_call()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self.failures,
                "successes": self.successes,
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
            }


def build_breakers(settings) -> Dict[str, CircuitBreaker]:
    """Create the process-wide breakers from configuration."""
    return {
        "azure": CircuitBreaker(
            "azure",
            failure_threshold=settings.azure_breaker_failures,
            reset_timeout=settings.azure_breaker_reset,
            success_threshold=settings.breaker_success_threshold,
        ),
        "completion": CircuitBreaker(
            "completion",
            failure_threshold=settings.completion_breaker_failures,
            reset_timeout=settings.completion_breaker_reset,
            success_threshold=settings.breaker_success_threshold,
        ),
    }
