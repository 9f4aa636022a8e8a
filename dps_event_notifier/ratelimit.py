"""Token bucket rate limiter.

One bucket guards every request to the portal; each notification channel
gets its own bucket so a slow channel cannot starve the others.

    limiter = TokenBucket(rate=0.5, capacity=2)
    limiter.acquire()   # blocks until a token is free
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .errors import RateLimitExceeded


class TokenBucket:
    """Thread-safe token bucket.

    Attributes:
        rate: Tokens added per second.
        capacity: Maximum tokens held (burst size).
        max_wait: Longest ``acquire()`` may block, in seconds. ``None``
            waits as long as it takes.
    """

    def __init__(
        self,
        rate: float,
        capacity: int = 1,
        max_wait: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = float(rate)
        self.capacity = int(capacity)
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_update = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_update)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_update = now

    def acquire(self) -> float:
        """Take one token, blocking until one is available.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitExceeded: The wait would exceed ``max_wait``. No token
                is consumed in that case.
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return waited
                wait = (1 - self._tokens) / self.rate
                if self.max_wait is not None and waited + wait > self.max_wait:
                    raise RateLimitExceeded(waited + wait, self.max_wait)
            # sleep outside the lock so other threads can refill/check
            self._sleep(wait)
            waited += wait

    def reset(self) -> None:
        """Refill to full capacity."""
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_update = self._clock()

    @property
    def available(self) -> float:
        """Current available tokens (approximate)."""
        with self._lock:
            self._refill()
            return self._tokens


__all__ = ["TokenBucket"]
