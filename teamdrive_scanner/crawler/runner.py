"""Run crawls for several roots concurrently, sharing credentials and storage."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from teamdrive_scanner.crawler.credentials import CredentialPool
from teamdrive_scanner.crawler.models import FailedFolderPolicy, ScanRequest
from teamdrive_scanner.crawler.orchestrator import DEFAULT_MAX_FOLDER_ATTEMPTS, CrawlOrchestrator
from teamdrive_scanner.crawler.sink import RecordWriter
from teamdrive_scanner.crawler.stats import StatsSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DriveScanResult:
    request: ScanRequest
    snapshot: StatsSnapshot | None
    error: str | None = None
    cancelled: bool = False
    abandoned_folders: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.error is not None:
            return f"failed:{self.error}"
        return "success"


ResultCallback = Callable[[DriveScanResult], None]


def scan_drives(
    requests: Sequence[ScanRequest],
    pool: CredentialPool,
    writer: RecordWriter,
    *,
    max_concurrent: int = 1,
    cancel: threading.Event | None = None,
    failed_folder_policy: FailedFolderPolicy | str = FailedFolderPolicy.ABANDON,
    max_folder_attempts: int = DEFAULT_MAX_FOLDER_ATTEMPTS,
    on_result: ResultCallback | None = None,
) -> list[DriveScanResult]:
    """Crawl every root, at most ``max_concurrent`` at a time.

    A root that fails is logged and reported in its result; the others keep
    running. Results come back in the order of ``requests``.
    """

    cancel = cancel if cancel is not None else threading.Event()
    logger.info(
        "Starting multi-drive scan",
        extra={"drives": len(requests), "max_concurrent": max_concurrent, "credentials": pool.size()},
    )

    def scan_one(request: ScanRequest) -> DriveScanResult:
        orchestrator = CrawlOrchestrator(
            request,
            pool,
            writer,
            cancel=cancel,
            failed_folder_policy=failed_folder_policy,
            max_folder_attempts=max_folder_attempts,
        )
        try:
            snapshot = orchestrator.run()
        except Exception as exc:
            logger.exception("Scan failed", extra={"drive": request.root_name})
            result = DriveScanResult(request=request, snapshot=None, error=str(exc))
        else:
            result = DriveScanResult(
                request=request,
                snapshot=snapshot,
                cancelled=cancel.is_set(),
                abandoned_folders=tuple(orchestrator.abandoned_folders),
            )
            logger.info(
                "Completed scan",
                extra={"drive": request.root_name, "status": result.status},
            )
        if on_result is not None:
            on_result(result)
        return result

    with ThreadPoolExecutor(
        max_workers=max(1, max_concurrent), thread_name_prefix="drive-scan"
    ) as executor:
        futures = [executor.submit(scan_one, request) for request in requests]
        results = [future.result() for future in futures]

    logger.info("All scans complete", extra={"drives": len(results)})
    return results


__all__ = ["DriveScanResult", "ResultCallback", "scan_drives"]
