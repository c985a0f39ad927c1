"""`teamdrive-scan` CLI entrypoint."""

from __future__ import annotations

import argparse
import logging
import threading
from collections.abc import Sequence
from datetime import UTC, datetime

from teamdrive_scanner.cli import _common
from teamdrive_scanner.config import AppConfig, DriveConfig
from teamdrive_scanner.crawler import (
    DriveScanResult,
    FailedFolderPolicy,
    NoValidCredentialsError,
    ScanRequest,
    load_credential_pool,
    scan_drives,
)
from teamdrive_scanner.db.client import reset_pools
from teamdrive_scanner.db.repositories import (
    CrawlRun,
    CrawlRunRepository,
    FileIndexRepository,
    RepositoryError,
)

PROG_NAME = "teamdrive-scan"
DESCRIPTION = "Crawl Google shared drives and store their file metadata."

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = _common.build_parser(prog=PROG_NAME, description=DESCRIPTION)
    parser.add_argument(
        "--drive",
        action="append",
        default=[],
        metavar="DRIVE_ID",
        help="Only scan the configured drive with this id (repeatable).",
    )
    parser.add_argument(
        "--failed-folder-policy",
        choices=[policy.value for policy in FailedFolderPolicy],
        default=None,
        help="Override what happens to folders whose listing exhausts its retries.",
    )
    return parser


def run(args: argparse.Namespace) -> int:
    config: AppConfig = args.app_config
    scanner = config.scanner
    try:
        drives = select_drives(config.drives, args.drive)
    except ValueError as exc:
        logger.error("Unknown drive requested", extra={"error": str(exc)})
        return _common.EXIT_CONFIG_ERROR

    try:
        pool = load_credential_pool(
            config.google.service_accounts_dir,
            rate_per_credential=scanner.rate_per_account,
        )
    except NoValidCredentialsError as exc:
        logger.error("No usable service accounts", extra={"error": str(exc)})
        return _common.EXIT_NO_CREDENTIALS

    files = FileIndexRepository(config=config)
    runs = CrawlRunRepository(config=config)
    requests = [
        ScanRequest(
            root_id=drive.id,
            root_name=drive.name,
            workers_per_credential=scanner.workers_per_account,
            page_size=scanner.page_size,
            batch_size=scanner.batch_size,
        )
        for drive in drives
    ]
    cancel = threading.Event()

    def record_result(result: DriveScanResult) -> None:
        _record_run(runs, files, result)

    try:
        results = _common.run_cancellable(
            lambda: scan_drives(
                requests,
                pool,
                files,
                max_concurrent=scanner.concurrent_drives,
                cancel=cancel,
                failed_folder_policy=args.failed_folder_policy or scanner.failed_folder_policy,
                max_folder_attempts=scanner.max_folder_attempts,
                on_result=record_result,
            ),
            cancel,
        )
    finally:
        reset_pools()

    failed = [result for result in results if not result.ok]
    if failed:
        logger.warning(
            "Some drives did not complete",
            extra={"drives": [result.request.root_name for result in failed]},
        )
        return _common.EXIT_FAILED
    return _common.EXIT_OK


def select_drives(configured: Sequence[DriveConfig], wanted: Sequence[str]) -> list[DriveConfig]:
    if not wanted:
        return list(configured)
    by_id = {drive.id: drive for drive in configured}
    unknown = [drive_id for drive_id in wanted if drive_id not in by_id]
    if unknown:
        raise ValueError("not configured: " + ", ".join(unknown))
    return [by_id[drive_id] for drive_id in dict.fromkeys(wanted)]


def _record_run(
    runs: CrawlRunRepository, files: FileIndexRepository, result: DriveScanResult
) -> None:
    snapshot = result.snapshot
    run = CrawlRun(
        drive_id=result.request.root_id,
        drive_name=result.request.root_name,
        last_run_at=datetime.now(tz=UTC),
        last_status=result.status,
        files_processed=snapshot.files_processed if snapshot else 0,
        folders_queued=snapshot.folders_queued if snapshot else 0,
        api_calls_failed=snapshot.api_calls_failed if snapshot else 0,
        db_writes=snapshot.db_writes if snapshot else 0,
    )
    try:
        runs.record_run(run)
        if result.ok:
            summary = files.drive_summary(result.request.root_id)
            logger.info(
                "Drive totals: %d files, %d folders, %s",
                summary.total_files,
                summary.total_folders,
                summary.total_size_human,
                extra={"drive": result.request.root_name},
            )
    except RepositoryError as exc:
        logger.error(
            "Failed to record crawl run",
            extra={"drive": result.request.root_name, "error": str(exc)},
        )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    return _common.run_cli(parser, argv, cli_name="scan", display_name="Scan", runner=run)


if __name__ == "__main__":  # pragma: no cover - manual execution guard
    raise SystemExit(main())


__all__ = ["build_parser", "main", "run", "select_drives"]
