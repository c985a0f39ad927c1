from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

import pytest
import teamdrive_scanner.config as scanner_config
from teamdrive_scanner.crawler.models import FileRecord
from teamdrive_scanner.db import repositories
from teamdrive_scanner.db.client import get_connection, reset_pools


@dataclass(slots=True)
class DbRepositoryTestContext:
    config: scanner_config.AppConfig
    file_repo: repositories.FileIndexRepository
    run_repo: repositories.CrawlRunRepository
    _file_ids: set[str] = field(default_factory=set)
    _run_drive_ids: set[str] = field(default_factory=set)

    def register_file_records(self, records: Iterable[FileRecord]) -> None:
        for record in records:
            self._file_ids.add(record.id)

    def register_run(self, drive_id: str) -> None:
        self._run_drive_ids.add(drive_id)

    def cleanup(self) -> None:
        if not self._file_ids and not self._run_drive_ids:
            return
        with get_connection(config=self.config) as connection:
            with connection.transaction():
                for file_id in sorted(self._file_ids):
                    connection.execute("delete from files where id = %(id)s", {"id": file_id})
                for drive_id in sorted(self._run_drive_ids):
                    connection.execute(
                        "delete from crawl_runs where drive_id = %(drive_id)s",
                        {"drive_id": drive_id},
                    )


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield
    finally:
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
        root.setLevel(level)


@pytest.fixture(scope="session")
def _database_environment() -> Iterator[scanner_config.AppConfig]:
    try:
        config = scanner_config.load_config()
    except scanner_config.ConfigError as exc:  # pragma: no cover - depends on local secrets
        pytest.skip(f"Database tests skipped: {exc}")
    scanner_config._CONFIG_CACHE = config

    from scripts import migrate

    try:
        exit_code = migrate.main(["up"], config=config)
    except Exception as exc:  # pragma: no cover - depends on environment
        pytest.skip(f"Database tests skipped: failed to connect to PostgreSQL ({exc}).")
    if exit_code != 0:  # pragma: no cover - would require broken database
        pytest.skip("Failed to apply migrations for database tests.")

    reset_pools()
    try:
        yield config
    finally:
        reset_pools()


@pytest.fixture()
def db_test_context(
    _database_environment: scanner_config.AppConfig,
) -> Iterator[DbRepositoryTestContext]:
    config = _database_environment
    context = DbRepositoryTestContext(
        config=config,
        file_repo=repositories.FileIndexRepository(config=config),
        run_repo=repositories.CrawlRunRepository(config=config),
    )
    try:
        yield context
    finally:
        context.cleanup()
