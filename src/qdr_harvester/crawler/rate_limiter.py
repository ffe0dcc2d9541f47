"""Process-wide token bucket shared by every worker of a crawl run."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class RateLimiterClosed(RuntimeError):
    pass


class TokenBucket:
    """Allow at most ``capacity`` acquisitions per ``interval`` seconds.

    Each permit returns to the bucket exactly ``interval`` after it was
    taken, so the bound holds over any sliding window rather than only on
    fixed interval boundaries. Blocked callers wake in roughly FIFO order.
    """

    def __init__(
        self,
        capacity: int,
        interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.capacity = capacity
        self.interval = interval
        self._clock = clock
        self._issued: deque[float] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.acquired = 0

    def _prune(self, now: float) -> None:
        horizon = now - self.interval
        while self._issued and self._issued[0] <= horizon:
            self._issued.popleft()

    def available(self) -> int:
        with self._cond:
            self._prune(self._clock())
            return self.capacity - len(self._issued)

    def try_acquire(self) -> bool:
        with self._cond:
            if self._closed:
                raise RateLimiterClosed("rate limiter is closed")
            now = self._clock()
            self._prune(now)
            if len(self._issued) < self.capacity:
                self._issued.append(now)
                self.acquired += 1
                return True
            return False

    def acquire(self) -> None:
        with self._cond:
            while True:
                if self._closed:
                    raise RateLimiterClosed("rate limiter is closed")
                now = self._clock()
                self._prune(now)
                if len(self._issued) < self.capacity:
                    self._issued.append(now)
                    self.acquired += 1
                    self._cond.notify()
                    return
                wait_for = self._issued[0] + self.interval - now
                self._cond.wait(timeout=max(wait_for, 0.001))

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> TokenBucket:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


__all__ = ["RateLimiterClosed", "TokenBucket"]
