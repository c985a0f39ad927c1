"""Batching consumer that writes crawled records to storage."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Sequence
from typing import Protocol

from teamdrive_scanner.crawler.errors import StorageWriteError
from teamdrive_scanner.crawler.models import FileRecord
from teamdrive_scanner.crawler.stats import CrawlStats

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 2.0
DEFAULT_CHANNEL_CAPACITY = 100_000


class RecordWriter(Protocol):
    def batch_write(self, records: Sequence[FileRecord]) -> int: ...


class ResultSink:
    """Single consumer thread draining a bounded record channel.

    The pending batch is only touched by the consumer thread. Producers block
    in :meth:`submit` when the channel is full, which throttles the crawl to
    the speed of storage.
    """

    def __init__(
        self,
        writer: RecordWriter,
        stats: CrawlStats,
        *,
        batch_size: int,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        capacity: int = DEFAULT_CHANNEL_CAPACITY,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._writer = writer
        self._stats = stats
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._channel: queue.Queue[FileRecord | None] = queue.Queue(maxsize=capacity)
        self._batch: list[FileRecord] = []
        self._closed = False
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"{stats.drive_name}-sink", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def submit(self, record: FileRecord) -> None:
        if self._closed:
            raise RuntimeError("cannot submit to a closed sink")
        self._channel.put(record)

    def close(self) -> None:
        """Stop accepting records; the consumer flushes what is left and exits."""

        if self._closed:
            return
        self._closed = True
        self._channel.put(None)

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def _run(self) -> None:
        last_flush = time.monotonic()
        try:
            while True:
                remaining = self._flush_interval - (time.monotonic() - last_flush)
                try:
                    item = self._channel.get(timeout=max(remaining, 0.0))
                except queue.Empty:
                    self._flush()
                    last_flush = time.monotonic()
                    continue

                if item is None:
                    self._flush()
                    return

                self._batch.append(item)
                if (
                    len(self._batch) >= self._batch_size
                    or time.monotonic() - last_flush >= self._flush_interval
                ):
                    self._flush()
                    last_flush = time.monotonic()
        finally:
            self._done.set()

    def _flush(self) -> None:
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        try:
            self._writer.batch_write(batch)
        except StorageWriteError as exc:
            logger.error(
                "Dropping batch after storage failure",
                extra={"drive": self._stats.drive_name, "records": len(batch), "error": str(exc)},
            )
            return
        except Exception:
            logger.exception(
                "Dropping batch after unexpected writer error",
                extra={"drive": self._stats.drive_name, "records": len(batch)},
            )
            return
        self._stats.db_writes.add(len(batch))
        logger.debug(
            "Flushed batch", extra={"drive": self._stats.drive_name, "records": len(batch)}
        )


__all__ = [
    "DEFAULT_CHANNEL_CAPACITY",
    "DEFAULT_FLUSH_INTERVAL",
    "RecordWriter",
    "ResultSink",
]
