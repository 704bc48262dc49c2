"""
Token bucket pacing for outbound source requests.
One bucket per adapter instance; the source is queried by a single worker stream.
"""
from __future__ import annotations

import asyncio
import time
from typing import Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """
    In-process token bucket.
    Refills at rpm / 60 tokens per second; max burst = burst.
    """

    def __init__(
        self,
        rpm: int,
        burst: int,
    ) -> None:
        self._rpm = max(1, rpm)
        self._burst = max(1, burst)
        self._tokens = float(self._burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()
        self._backoff_until = 0.0

    async def acquire(self) -> bool:
        """Consume one token if available. Returns True if allowed, False if rate limited."""
        async with self._lock:
            now = time.monotonic()
            if now < self._backoff_until:
                return False
            refill = (now - self._last_refill) * (self._rpm / 60.0)
            self._tokens = min(self._burst, self._tokens + refill)
            self._last_refill = now
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    async def wait_until_available(self, timeout_s: Optional[float] = None) -> bool:
        """Wait until a token is available or timeout. Returns True if token acquired."""
        deadline = (time.monotonic() + timeout_s) if timeout_s else None
        while True:
            if await self.acquire():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            wait = max(60.0 / self._rpm, self._backoff_until - time.monotonic())
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            await asyncio.sleep(wait)

    def back_off(self, seconds: float) -> None:
        """Refuse tokens for ``seconds`` (after a 429)."""
        self._backoff_until = max(self._backoff_until, time.monotonic() + seconds)
        logger.warning("rate_limit_backoff", backoff_s=seconds)
