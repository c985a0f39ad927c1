"""Bounded exponential backoff around a single rate-limited remote call."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from teamdrive_scanner.crawler.errors import CrawlCancelled, MaxRetriesExceeded, TransientAPIError
from teamdrive_scanner.crawler.ratelimit import TokenBucket
from teamdrive_scanner.crawler.stats import CrawlStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 64.0


class RetryExecutor:
    """Runs a call up to ``max_attempts`` times.

    Every attempt takes one token from the credential's limiter and counts as
    one API call. Failed attempts wait ``base_delay * 2**n`` (capped at
    ``max_delay``) before the next one; no wait follows the last attempt.
    Cancellation is never retried.
    """

    def __init__(
        self,
        stats: CrawlStats,
        *,
        cancel: threading.Event | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._stats = stats
        self._cancel = cancel if cancel is not None else threading.Event()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max(max_delay, base_delay)
        self._sleep = sleep or self._wait_or_cancel

    def execute(self, call: Callable[[], T], limiter: TokenBucket, *, label: str = "") -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(CrawlCancelled),
            before_sleep=lambda state: self._log_backoff(state, label),
            sleep=self._sleep,
        )
        try:
            return retrying(self._attempt, call, limiter)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            raise MaxRetriesExceeded(self.max_attempts, last_error) from last_error

    def _attempt(self, call: Callable[[], T], limiter: TokenBucket) -> T:
        limiter.acquire(self._cancel)
        self._stats.api_calls_total.add()
        result = call()
        self._stats.api_calls_success.add()
        return result

    def _log_backoff(self, state: RetryCallState, label: str) -> None:
        error = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        if isinstance(error, TransientAPIError) and error.rate_limited:
            logger.info(
                "Rate limited, backing off",
                extra={"call": label, "attempt": state.attempt_number, "delay": delay},
            )
            return
        logger.warning(
            "Remote call failed, retrying",
            extra={
                "call": label,
                "attempt": state.attempt_number,
                "delay": delay,
                "error": str(error),
            },
        )

    def _wait_or_cancel(self, delay: float) -> None:
        if self._cancel.wait(delay):
            raise CrawlCancelled("crawl cancelled during retry backoff")


__all__ = [
    "DEFAULT_BASE_DELAY",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_DELAY",
    "RetryExecutor",
]
