"""Worker-pool crawl of one shared-drive tree."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Sequence
from functools import partial

from teamdrive_scanner.crawler.credentials import CredentialPool
from teamdrive_scanner.crawler.errors import CrawlCancelled, MaxRetriesExceeded
from teamdrive_scanner.crawler.models import (
    DriveItem,
    FailedFolderPolicy,
    FolderJob,
    ScanRequest,
)
from teamdrive_scanner.crawler.retry import RetryExecutor
from teamdrive_scanner.crawler.sink import DEFAULT_FLUSH_INTERVAL, RecordWriter, ResultSink
from teamdrive_scanner.crawler.stats import (
    DEFAULT_REPORT_INTERVAL,
    CrawlStats,
    ProgressReporter,
    StatsSnapshot,
)

logger = logging.getLogger(__name__)

JOBS_PER_WORKER = 10
DEFAULT_MAX_FOLDER_ATTEMPTS = 3


class WorkTracker:
    """Counts jobs that were enqueued but have not finished listing.

    ``add`` is called once per enqueued job, ``finish`` once per completed
    job. The transition to zero sets :attr:`drained`; since only a running job
    can enqueue more work, zero is reached exactly once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outstanding = 0
        self.drained = threading.Event()

    @property
    def outstanding(self) -> int:
        return self._outstanding

    def add(self) -> None:
        with self._lock:
            if self.drained.is_set():
                raise RuntimeError("cannot add work to a drained crawl")
            self._outstanding += 1

    def finish(self) -> bool:
        with self._lock:
            if self._outstanding <= 0:
                raise RuntimeError("finish() called more often than add()")
            self._outstanding -= 1
            if self._outstanding == 0:
                self.drained.set()
                return True
            return False


class CrawlOrchestrator:
    """Crawls a single root with ``pool.size() * workers_per_credential`` threads.

    The thread calling :meth:`run` is the coordinator: it seeds the root job,
    waits for the work tracker to drain, then stops the overflow dispatcher,
    closes the job queue, joins the workers, closes the sink and waits for its
    final flush. Jobs that do not fit the bounded queue go to an unbounded
    overflow that one dispatcher thread feeds back into it.
    """

    def __init__(
        self,
        request: ScanRequest,
        pool: CredentialPool,
        writer: RecordWriter,
        *,
        cancel: threading.Event | None = None,
        failed_folder_policy: FailedFolderPolicy | str = FailedFolderPolicy.ABANDON,
        max_folder_attempts: int = DEFAULT_MAX_FOLDER_ATTEMPTS,
        retry: RetryExecutor | None = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        report_interval: float = DEFAULT_REPORT_INTERVAL,
        stats: CrawlStats | None = None,
    ) -> None:
        self.request = request
        self._pool = pool
        self._cancel = cancel if cancel is not None else threading.Event()
        self._policy = FailedFolderPolicy.coerce(failed_folder_policy)
        self._max_folder_attempts = max(1, max_folder_attempts)
        self.stats = stats or CrawlStats(drive_name=request.root_name)
        self._retry = retry or RetryExecutor(self.stats, cancel=self._cancel)
        self.worker_count = pool.size() * request.workers_per_credential
        self._jobs: queue.Queue[FolderJob | None] = queue.Queue(
            maxsize=max(self.worker_count * JOBS_PER_WORKER, self.worker_count)
        )
        self._overflow: queue.SimpleQueue[FolderJob | None] = queue.SimpleQueue()
        self._tracker = WorkTracker()
        self._sink = ResultSink(
            writer, self.stats, batch_size=request.batch_size, flush_interval=flush_interval
        )
        self._reporter = ProgressReporter(self.stats, interval=report_interval)
        self._abandoned: list[str] = []
        self._abandoned_lock = threading.Lock()

    @property
    def abandoned_folders(self) -> Sequence[str]:
        with self._abandoned_lock:
            return tuple(self._abandoned)

    def run(self) -> StatsSnapshot:
        name = self.request.root_name
        logger.info(
            "Starting crawl of %s with %d workers (%d credentials x %d workers/credential)",
            name,
            self.worker_count,
            self._pool.size(),
            self.request.workers_per_credential,
            extra={"drive": name, "root_id": self.request.root_id},
        )
        self.stats.restart_clock()
        self._sink.start()
        self._reporter.start()

        dispatcher = threading.Thread(
            target=self._drain_overflow, name=f"{name}-dispatch", daemon=True
        )
        dispatcher.start()
        workers = [
            threading.Thread(target=self._work, args=(index,), name=f"{name}-worker-{index}")
            for index in range(self.worker_count)
        ]
        for worker in workers:
            worker.start()

        self._dispatch(FolderJob(self.request.root_id))
        self._tracker.drained.wait()

        # Drained means every overflowed job has been listed, so the overflow is empty.
        self._overflow.put(None)
        dispatcher.join()
        for _ in workers:
            self._jobs.put(None)
        for worker in workers:
            worker.join()

        self._sink.close()
        self._sink.wait()
        return self._reporter.stop()

    def _dispatch(self, job: FolderJob) -> None:
        """Register and enqueue a job without blocking the calling worker."""

        self._tracker.add()
        try:
            self._jobs.put_nowait(job)
        except queue.Full:
            self._overflow.put(job)

    def _drain_overflow(self) -> None:
        while True:
            job = self._overflow.get()
            if job is None:
                return
            self._jobs.put(job)

    def _work(self, worker_id: int) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                return
            try:
                self._list_folder(worker_id, job)
            except CrawlCancelled:
                logger.debug(
                    "Listing cancelled",
                    extra={"drive": self.request.root_name, "folder_id": job.folder_id},
                )
            except Exception:
                logger.exception(
                    "Worker failed while handling folder",
                    extra={
                        "drive": self.request.root_name,
                        "worker": worker_id,
                        "folder_id": job.folder_id,
                    },
                )
            finally:
                self._tracker.finish()

    def _list_folder(self, worker_id: int, job: FolderJob) -> None:
        page_token = job.page_token
        try:
            client, limiter = self._pool.lend()
            while True:
                call = partial(
                    client.list_children,
                    folder_id=job.folder_id,
                    drive_id=self.request.root_id,
                    page_size=self.request.page_size,
                    page_token=page_token,
                )
                page = self._retry.execute(call, limiter, label=f"list:{job.folder_id}")
                self._emit(job.folder_id, page.items)
                page_token = page.next_page_token
                if not page_token:
                    return
        except CrawlCancelled:
            raise
        except Exception as exc:
            self.stats.api_calls_failed.add()
            self._handle_failed_listing(worker_id, job, page_token, exc)

    def _emit(self, parent_id: str, items: Sequence[DriveItem]) -> None:
        for item in items:
            record = item.to_record(
                parent_id=parent_id,
                root_id=self.request.root_id,
                root_name=self.request.root_name,
            )
            self._sink.submit(record)
            if item.is_folder:
                self.stats.folders_queued.add()
                self._dispatch(FolderJob(item.id))
            else:
                self.stats.files_processed.add()

    def _handle_failed_listing(
        self,
        worker_id: int,
        job: FolderJob,
        page_token: str | None,
        exc: Exception,
    ) -> None:
        attempt = job.attempt + 1
        requeue = (
            self._policy is FailedFolderPolicy.REQUEUE
            and attempt < self._max_folder_attempts
            and not self._cancel.is_set()
        )
        logger.error(
            "Error listing folder",
            extra={
                "drive": self.request.root_name,
                "worker": worker_id,
                "folder_id": job.folder_id,
                "attempt": attempt,
                "requeued": requeue,
                "error": str(exc),
            },
            exc_info=not isinstance(exc, MaxRetriesExceeded),
        )
        if requeue:
            # Resume at the failed page so earlier pages are not emitted twice.
            self._dispatch(FolderJob(job.folder_id, page_token=page_token, attempt=attempt))
            return
        with self._abandoned_lock:
            self._abandoned.append(job.folder_id)


__all__ = [
    "DEFAULT_MAX_FOLDER_ATTEMPTS",
    "JOBS_PER_WORKER",
    "CrawlOrchestrator",
    "WorkTracker",
]
