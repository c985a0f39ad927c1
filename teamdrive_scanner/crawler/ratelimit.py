"""Token-bucket rate limiting for per-credential API budgets."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from teamdrive_scanner.crawler.errors import CrawlCancelled

Clock = Callable[[], float]


class TokenBucket:
    """Thread-safe token bucket with reservation semantics.

    ``rate`` tokens are added per second up to ``burst``. A caller that finds
    the bucket empty reserves the next token (the balance may go negative) and
    sleeps outside the lock until its reservation matures, so concurrent
    waiters queue up fairly and the sustained throughput never exceeds
    ``rate``. Waiting is done on the caller's cancel event, which makes the
    wait abort as soon as the crawl is cancelled.
    """

    def __init__(self, rate: float, burst: int | None = None, *, clock: Clock = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.burst = burst if burst is not None else max(1, int(rate * 2))
        if self.burst < 1:
            raise ValueError("burst must be at least 1")
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(self.burst)
        self._updated = clock()

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def reserve(self) -> float:
        """Take one token and return how many seconds the caller must wait for it."""

        with self._lock:
            self._refill(self._clock())
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def cancel_reservation(self) -> None:
        with self._lock:
            self._refill(self._clock())
            self._tokens = min(float(self.burst), self._tokens + 1.0)

    def acquire(self, cancel: threading.Event | None = None) -> None:
        """Block until a token is available, raising CrawlCancelled if ``cancel`` fires."""

        if cancel is not None and cancel.is_set():
            raise CrawlCancelled("crawl cancelled while waiting for a rate token")
        delay = self.reserve()
        if delay <= 0:
            return
        waiter = cancel if cancel is not None else threading.Event()
        if waiter.wait(delay):
            self.cancel_reservation()
            raise CrawlCancelled("crawl cancelled while waiting for a rate token")

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now


__all__ = ["Clock", "TokenBucket"]
