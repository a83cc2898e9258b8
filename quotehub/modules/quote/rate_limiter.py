"""Per-provider token bucket."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable

from quotehub.modules.quote.errors import ProviderRateLimited


class RateLimiter:
    """Token bucket shared by every in-flight request for one provider.

    Capacity is ``burst_limit`` and tokens refill at ``requests_per_second``.
    ``acquire`` reserves a token under a lock (the balance may go negative,
    which queues later callers behind earlier ones) and then sleeps outside
    the lock until the reservation matures. Reservations that would mature
    after the caller's deadline are refused without sleeping.
    """

    def __init__(
        self,
        provider_id: str,
        requests_per_second: float,
        burst_limit: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if requests_per_second <= 0 or burst_limit <= 0:
            raise ValueError("requests_per_second and burst_limit must be positive")
        self.provider_id = provider_id
        self._rate = float(requests_per_second)
        self._capacity = float(burst_limit)
        self._tokens = float(burst_limit)
        self._clock = clock
        self._last_refill = clock()
        self._lock = threading.Lock()

    @property
    def requests_per_second(self) -> float:
        return self._rate

    @property
    def burst_limit(self) -> int:
        return int(self._capacity)

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def reconfigure(self, requests_per_second: float, burst_limit: int) -> None:
        """Apply new limits without losing the current balance."""
        if requests_per_second <= 0 or burst_limit <= 0:
            raise ValueError("requests_per_second and burst_limit must be positive")
        with self._lock:
            self._refill(self._clock())
            self._rate = float(requests_per_second)
            self._capacity = float(burst_limit)
            self._tokens = min(self._tokens, self._capacity)

    def _reserve(self, deadline: float | None) -> float:
        """Take one token and return how long to wait before using it."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            self._tokens -= 1.0
            wait = 0.0 if self._tokens >= 0 else -self._tokens / self._rate
            if deadline is not None and now + wait > deadline:
                self._tokens += 1.0
                raise ProviderRateLimited(
                    self.provider_id,
                    f"Rate limit token for {self.provider_id} not available before deadline",
                    {"wait_seconds": round(wait, 3)},
                )
            return wait

    def _refund(self) -> None:
        with self._lock:
            self._refill(self._clock())
            self._tokens = min(self._capacity, self._tokens + 1.0)

    async def acquire(self, deadline: float | None = None) -> float:
        """Wait for a token.

        Args:
            deadline: absolute time on this limiter's clock, None for no limit

        Returns:
            The clock time at which the token was granted.

        Raises:
            ProviderRateLimited: no token can be granted before the deadline
        """
        wait = self._reserve(deadline)
        if wait > 0:
            try:
                await asyncio.sleep(wait)
            except asyncio.CancelledError:
                self._refund()
                raise
        return self._clock()
