"""
Circuit breaker guarding calls into the remote results source.

States:
  CLOSED    calls pass through; consecutive tripping failures are counted
  OPEN      calls are rejected until the recovery window has elapsed
  HALF_OPEN one probe call is let through; its outcome closes or reopens

Every state change is logged and counted in ``mr_circuit_transitions_total``.
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.utils.logging import get_logger
from shared.utils.metrics import CIRCUIT_TRANSITIONS

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """The breaker rejected a call without attempting it."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN. Retry after {retry_after:.0f}s.")


class CircuitBreaker:
    """
    Async circuit breaker.

    Only exceptions in ``trips_on`` count as failures. Anything else (a
    malformed payload, a cancellation) passes through and leaves the count
    alone, since it says nothing about whether the source is reachable.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        trips_on: tuple[type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout_s = recovery_timeout_s
        self.trips_on = trips_on
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probing = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _remaining(self) -> float:
        return self.recovery_timeout_s - (self._clock() - self._opened_at)

    def _transition(self, new: CircuitState, **fields: Any) -> None:
        old = self._state
        if old == new:
            return
        self._state = new
        CIRCUIT_TRANSITIONS.labels(name=self.name, state=new.value).inc()
        log = logger.info if new == CircuitState.CLOSED else logger.warning
        log("circuit_breaker_transition", name=self.name, previous=old.value, current=new.value, **fields)

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                remaining = self._remaining()
                if remaining > 0:
                    raise CircuitBreakerOpen(self.name, max(remaining, 1.0))
                self._transition(CircuitState.HALF_OPEN)
            if self._state == CircuitState.HALF_OPEN:
                if self._probing:
                    raise CircuitBreakerOpen(self.name, 1.0)
                self._probing = True

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.trips_on as exc:
            await self._record_failure(exc)
            raise
        except BaseException:
            async with self._lock:
                self._probing = False
            raise
        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures = 0
            self._probing = False
            self._transition(CircuitState.CLOSED)

    async def _record_failure(self, exc: Optional[BaseException]) -> None:
        async with self._lock:
            self._failures += 1
            self._probing = False
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                # a failed probe restarts the recovery window
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN, failures=self._failures, error=str(exc))
