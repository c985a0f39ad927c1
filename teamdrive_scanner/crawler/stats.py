"""Per-crawl progress counters and the periodic reporter thread."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_REPORT_INTERVAL = 10.0


class Counter:
    """Monotonic integer counter safe to bump from many threads."""

    __slots__ = ("_lock", "_value")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def add(self, amount: int = 1) -> int:
        if amount < 0:
            raise ValueError("counters only move forward")
        with self._lock:
            self._value += amount
            return self._value

    @property
    def value(self) -> int:
        return self._value


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    drive_name: str
    elapsed: float
    files_processed: int
    folders_queued: int
    api_calls_total: int
    api_calls_success: int
    api_calls_failed: int
    db_writes: int

    @property
    def files_per_second(self) -> float:
        return self.files_processed / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def calls_per_second(self) -> float:
        return self.api_calls_total / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def success_rate(self) -> float:
        if self.api_calls_total == 0:
            return 0.0
        return self.api_calls_success / self.api_calls_total * 100

    def render(self) -> str:
        return (
            f"[{self.drive_name}] elapsed={self.elapsed:.0f}s "
            f"files={self.files_processed} ({self.files_per_second:.0f}/sec) "
            f"folders={self.folders_queued} "
            f"api_calls={self.api_calls_total} ({self.calls_per_second:.1f}/sec) "
            f"success={self.api_calls_success} ({self.success_rate:.1f}%) "
            f"failed={self.api_calls_failed} "
            f"db_writes={self.db_writes}"
        )

    def as_dict(self) -> dict[str, float | int | str]:
        return {
            "drive": self.drive_name,
            "elapsed_seconds": round(self.elapsed, 3),
            "files_processed": self.files_processed,
            "folders_queued": self.folders_queued,
            "api_calls_total": self.api_calls_total,
            "api_calls_success": self.api_calls_success,
            "api_calls_failed": self.api_calls_failed,
            "db_writes": self.db_writes,
            "files_per_second": round(self.files_per_second, 2),
            "calls_per_second": round(self.calls_per_second, 2),
            "success_rate": round(self.success_rate, 2),
        }


@dataclass(slots=True)
class CrawlStats:
    drive_name: str
    files_processed: Counter = field(default_factory=Counter)
    folders_queued: Counter = field(default_factory=Counter)
    api_calls_total: Counter = field(default_factory=Counter)
    api_calls_success: Counter = field(default_factory=Counter)
    api_calls_failed: Counter = field(default_factory=Counter)
    db_writes: Counter = field(default_factory=Counter)
    started_at: float = field(default_factory=time.monotonic)

    def restart_clock(self) -> None:
        self.started_at = time.monotonic()

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            drive_name=self.drive_name,
            elapsed=time.monotonic() - self.started_at,
            files_processed=self.files_processed.value,
            folders_queued=self.folders_queued.value,
            api_calls_total=self.api_calls_total.value,
            api_calls_success=self.api_calls_success.value,
            api_calls_failed=self.api_calls_failed.value,
            db_writes=self.db_writes.value,
        )


class ProgressReporter:
    """Logs a stats snapshot every ``interval`` seconds until stopped."""

    def __init__(self, stats: CrawlStats, *, interval: float = DEFAULT_REPORT_INTERVAL) -> None:
        self._stats = stats
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"{stats.drive_name}-reporter", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> StatsSnapshot:
        """Stop the loop and log the final summary."""

        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()
        final = self._stats.snapshot()
        logger.info("Crawl finished: %s", final.render(), extra={"stats": final.as_dict()})
        return final

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            snapshot = self._stats.snapshot()
            logger.info("Crawl progress: %s", snapshot.render(), extra={"stats": snapshot.as_dict()})


__all__ = [
    "DEFAULT_REPORT_INTERVAL",
    "Counter",
    "CrawlStats",
    "ProgressReporter",
    "StatsSnapshot",
]
