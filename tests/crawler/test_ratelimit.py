from __future__ import annotations

import threading
import time

import pytest
from teamdrive_scanner.crawler import CrawlCancelled, TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_burst_is_available_immediately_then_reservations_wait() -> None:
    clock = FakeClock()
    bucket = TokenBucket(5, burst=10, clock=clock)

    waits = [bucket.reserve() for _ in range(10)]
    assert waits == [0.0] * 10

    assert bucket.reserve() == pytest.approx(0.2)
    assert bucket.reserve() == pytest.approx(0.4)


def test_tokens_refill_at_the_configured_rate_up_to_burst() -> None:
    clock = FakeClock()
    bucket = TokenBucket(4, burst=8, clock=clock)
    for _ in range(8):
        bucket.reserve()

    clock.now += 0.5
    assert bucket.tokens == pytest.approx(2.0)

    clock.now += 60
    assert bucket.tokens == pytest.approx(8.0)


def test_default_burst_is_twice_the_rate() -> None:
    assert TokenBucket(10).burst == 20


def test_rejects_non_positive_rate() -> None:
    with pytest.raises(ValueError):
        TokenBucket(0)


def test_acquire_raises_when_already_cancelled() -> None:
    cancel = threading.Event()
    cancel.set()
    bucket = TokenBucket(1)

    with pytest.raises(CrawlCancelled):
        bucket.acquire(cancel)


def test_cancel_aborts_a_blocked_acquire_and_returns_the_reservation() -> None:
    bucket = TokenBucket(0.5, burst=1)
    cancel = threading.Event()
    bucket.acquire(cancel)

    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    started = time.monotonic()
    with pytest.raises(CrawlCancelled):
        bucket.acquire(cancel)
    elapsed = time.monotonic() - started
    timer.join()

    assert elapsed < 1.0
    assert bucket.tokens > -0.5


def test_many_threads_share_one_bucket_without_exceeding_the_rate() -> None:
    rate = 200
    bucket = TokenBucket(rate, burst=rate * 2)
    cancel = threading.Event()
    per_thread = 75
    threads = [
        threading.Thread(target=lambda: [bucket.acquire(cancel) for _ in range(per_thread)])
        for _ in range(8)
    ]

    started = time.monotonic()
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    elapsed = time.monotonic() - started

    # 600 tokens, 400 from the initial burst, 200 more at 200/s.
    assert elapsed >= 0.9
