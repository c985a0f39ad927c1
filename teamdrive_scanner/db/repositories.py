"""Repository abstractions for the scanner's PostgreSQL tables."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NoReturn

from psycopg import sql
from psycopg.errors import Error as PsycopgError

from teamdrive_scanner.config import AppConfig
from teamdrive_scanner.crawler.errors import ScannerError, StorageWriteError
from teamdrive_scanner.crawler.models import FileRecord
from teamdrive_scanner.db.client import get_connection

logger = logging.getLogger(__name__)

__all__ = [
    "CrawlRun",
    "CrawlRunRepository",
    "DriveSummary",
    "FileIndexRepository",
    "FileRecord",
    "RepositoryError",
    "format_bytes",
]


_FILE_COLUMNS = (
    "id",
    "name",
    "parent_id",
    "teamdrive_id",
    "teamdrive_name",
    "size",
    "modified_time",
    "mime_type",
    "is_folder",
    "path",
)
_FILE_VALUES_TEMPLATE = "(" + ", ".join(["%s"] * len(_FILE_COLUMNS)) + ")"
_FILE_COLUMNS_SQL = sql.SQL(", ").join(sql.Identifier(col) for col in _FILE_COLUMNS)
_FILE_UPDATE_SQL = sql.SQL(", ").join(
    sql.SQL("{col} = excluded.{col}").format(col=sql.Identifier(col))
    for col in _FILE_COLUMNS
    if col != "id"
)
_SIZE_UNITS = "KMGTPE"


class RepositoryError(ScannerError):
    """Raised when a read or ledger operation fails."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


@dataclass(slots=True, frozen=True)
class DriveSummary:
    drive_id: str
    total_files: int
    total_folders: int
    total_size: int

    @property
    def total_size_human(self) -> str:
        return format_bytes(self.total_size)


@dataclass(slots=True, frozen=True)
class CrawlRun:
    drive_id: str
    drive_name: str
    last_run_at: datetime | None
    last_status: str | None
    files_processed: int = 0
    folders_queued: int = 0
    api_calls_failed: int = 0
    db_writes: int = 0
    updated_at: datetime | None = None


class _RepositoryBase:
    def __init__(self, *, config: AppConfig | None = None) -> None:
        self._config = config

    def _connection(self):  # noqa: ANN202
        return get_connection(config=self._config)

    def _raise_db_error(
        self,
        operation: str,
        exc: PsycopgError,
        error_cls: type[ScannerError] = RepositoryError,
    ) -> NoReturn:
        logger.error(
            "Repository operation failed",
            extra={"operation": operation, "error": str(exc)},
        )
        raise error_cls(operation, str(exc)) from exc


class FileIndexRepository(_RepositoryBase):
    """Storage collaborator for the crawl sink: idempotent upserts keyed by file id."""

    def batch_write(self, records: Sequence[FileRecord]) -> int:
        if not records:
            return 0

        # A single statement cannot touch the same row twice, keep the last copy.
        unique = list({record.id: record for record in records}.values())
        value_blocks = [sql.SQL(_FILE_VALUES_TEMPLATE) for _ in unique]
        query = sql.SQL(
            """
            insert into files ({columns})
            values {values}
            on conflict (id) do update set {updates}
            """
        ).format(
            columns=_FILE_COLUMNS_SQL,
            values=sql.SQL(", ").join(value_blocks),
            updates=_FILE_UPDATE_SQL,
        )

        params: list[Any] = []
        for record in unique:
            params.extend(
                (
                    record.id,
                    record.name,
                    record.parent_id,
                    record.root_id,
                    record.root_name,
                    record.size,
                    record.modified_time,
                    record.mime_type,
                    record.is_folder,
                    record.path,
                )
            )

        try:
            with self._connection() as connection:
                with connection.transaction():
                    cursor = connection.execute(query, params)
                    return cursor.rowcount
        except PsycopgError as exc:
            self._raise_db_error("files.upsert", exc, StorageWriteError)

    def drive_summary(self, drive_id: str) -> DriveSummary:
        query = """
            select
                count(*) filter (where not is_folder),
                count(*) filter (where is_folder),
                coalesce(sum(size) filter (where not is_folder), 0)
            from files
            where teamdrive_id = %(drive_id)s
        """
        try:
            with self._connection() as connection:
                cursor = connection.execute(query, {"drive_id": drive_id})
                row = cursor.fetchone()
        except PsycopgError as exc:
            self._raise_db_error("files.summary", exc)
        total_files, total_folders, total_size = row or (0, 0, 0)
        return DriveSummary(
            drive_id=drive_id,
            total_files=int(total_files),
            total_folders=int(total_folders),
            total_size=int(total_size),
        )


class CrawlRunRepository(_RepositoryBase):
    """Ledger of the last crawl of each drive."""

    def record_run(self, run: CrawlRun) -> CrawlRun:
        query = """
            insert into crawl_runs (
                drive_id, drive_name, last_run_at, last_status,
                files_processed, folders_queued, api_calls_failed, db_writes
            )
            values (
                %(drive_id)s, %(drive_name)s, %(last_run_at)s, %(last_status)s,
                %(files_processed)s, %(folders_queued)s, %(api_calls_failed)s, %(db_writes)s
            )
            on conflict (drive_id) do update set
                drive_name = excluded.drive_name,
                last_run_at = excluded.last_run_at,
                last_status = excluded.last_status,
                files_processed = excluded.files_processed,
                folders_queued = excluded.folders_queued,
                api_calls_failed = excluded.api_calls_failed,
                db_writes = excluded.db_writes,
                updated_at = timezone('utc', now())
            returning drive_id, drive_name, last_run_at, last_status,
                files_processed, folders_queued, api_calls_failed, db_writes, updated_at
        """
        params = {
            "drive_id": run.drive_id,
            "drive_name": run.drive_name,
            "last_run_at": run.last_run_at,
            "last_status": run.last_status,
            "files_processed": run.files_processed,
            "folders_queued": run.folders_queued,
            "api_calls_failed": run.api_calls_failed,
            "db_writes": run.db_writes,
        }
        try:
            with self._connection() as connection:
                with connection.transaction():
                    cursor = connection.execute(query, params)
                    row = cursor.fetchone()
        except PsycopgError as exc:
            self._raise_db_error("crawl_runs.upsert", exc)
        if row is None:  # pragma: no cover - the upsert always returns a row
            raise RepositoryError("crawl_runs.upsert", "no row returned")
        return self._row_to_run(row)

    def get_run(self, drive_id: str) -> CrawlRun | None:
        query = """
            select drive_id, drive_name, last_run_at, last_status,
                files_processed, folders_queued, api_calls_failed, db_writes, updated_at
            from crawl_runs
            where drive_id = %(drive_id)s
        """
        try:
            with self._connection() as connection:
                cursor = connection.execute(query, {"drive_id": drive_id})
                row = cursor.fetchone()
        except PsycopgError as exc:
            self._raise_db_error("crawl_runs.get", exc)
        if row is None:
            return None
        return self._row_to_run(row)

    def list_runs(self) -> list[CrawlRun]:
        query = """
            select drive_id, drive_name, last_run_at, last_status,
                files_processed, folders_queued, api_calls_failed, db_writes, updated_at
            from crawl_runs
            order by drive_id
        """
        try:
            with self._connection() as connection:
                cursor = connection.execute(query)
                rows = cursor.fetchall()
        except PsycopgError as exc:
            self._raise_db_error("crawl_runs.list", exc)
        return [self._row_to_run(row) for row in rows]

    def delete_run(self, drive_id: str) -> int:
        query = "delete from crawl_runs where drive_id = %(drive_id)s"
        try:
            with self._connection() as connection:
                with connection.transaction():
                    cursor = connection.execute(query, {"drive_id": drive_id})
                    return cursor.rowcount
        except PsycopgError as exc:
            self._raise_db_error("crawl_runs.delete", exc)

    @staticmethod
    def _row_to_run(row: Sequence[Any]) -> CrawlRun:
        (
            drive_id,
            drive_name,
            last_run_at,
            last_status,
            files_processed,
            folders_queued,
            api_calls_failed,
            db_writes,
            updated_at,
        ) = row
        return CrawlRun(
            drive_id=drive_id,
            drive_name=drive_name,
            last_run_at=last_run_at,
            last_status=last_status,
            files_processed=files_processed,
            folders_queued=folders_queued,
            api_calls_failed=api_calls_failed,
            db_writes=db_writes,
            updated_at=updated_at,
        )


def format_bytes(size: int) -> str:
    """Render a byte count with binary units, e.g. ``1536 -> '1.50 KB'``."""

    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    remaining = size // unit
    while remaining >= unit:
        div *= unit
        exp += 1
        remaining //= unit
    return f"{size / div:.2f} {_SIZE_UNITS[exp]}B"
