from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any

from teamdrive_scanner.config import AppConfig, ConfigError, get_config, load_config

try:  # pragma: no cover - exercised in tests via monkeypatching
    from psycopg import Connection, conninfo, sql
    from psycopg.errors import Error as PsycopgError
    from psycopg_pool import ConnectionPool
except ImportError as exc:  # pragma: no cover - dependency missing at runtime
    raise RuntimeError(
        "psycopg and psycopg-pool are required. Install them with `pip install psycopg[binary] psycopg-pool`."
    ) from exc

logger = logging.getLogger(__name__)

APPLICATION_NAME = "teamdrive-scanner"


@dataclass(frozen=True, slots=True)
class PoolSettings:
    conninfo: str
    schema: str
    application_name: str
    min_size: int = 1
    max_size: int = 8
    statement_timeout_ms: int = 60_000
    idle_in_transaction_timeout_ms: int = 10_000


_POOLS: dict[str, ConnectionPool] = {}
_POOL_LOCK = Lock()


@contextmanager
def get_connection(*, config: AppConfig | None = None) -> Iterator[Connection[Any]]:
    """Yield a pooled psycopg connection for the configured database.

    Pools are created lazily and shared by every thread that asks for the same
    database, so concurrent drive sinks reuse one pool.
    """

    settings = build_pool_settings(config or get_config())
    pool = _get_pool(settings)
    try:
        with pool.connection() as connection:
            yield connection
    except PsycopgError:
        logger.exception("Database connection failed", extra={"schema": settings.schema})
        raise


def reset_pools() -> None:
    """Close all connection pools (used by tests and at CLI shutdown)."""

    with _POOL_LOCK:
        for pool in _POOLS.values():
            try:
                pool.close()
            except Exception:  # pragma: no cover - defensive
                logger.exception("Failed to close connection pool cleanly")
        _POOLS.clear()


def doctor(*, config: AppConfig | None = None) -> bool:
    """Run a `select 1` to verify the database connection."""

    try:
        with get_connection(config=config) as connection:
            connection.execute("select 1")
    except Exception as exc:
        print(f"Database connection failed: {exc}", file=sys.stderr)
        return False

    print("Database connection OK.", file=sys.stdout)
    return True


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Database connection utilities.")
    subparsers = parser.add_subparsers(dest="command")

    doctor_parser = subparsers.add_parser("doctor", help="Validate the database connection.")
    doctor_parser.add_argument("--env-file", type=Path, help="Path to the .env file to read.")
    doctor_parser.add_argument("--config-file", type=Path, help="Path to config.toml.")

    args = parser.parse_args(argv)
    if args.command == "doctor":
        try:
            config = load_config(env_file=args.env_file, config_file=args.config_file)
        except ConfigError as exc:
            print(f"Configuration invalid: {exc}", file=sys.stderr)
            return 1
        try:
            return 0 if doctor(config=config) else 1
        finally:
            reset_pools()

    parser.print_help()
    return 1


def build_pool_settings(config: AppConfig, *, max_size: int | None = None) -> PoolSettings:
    database = config.database
    conninfo_str = conninfo.make_conninfo(
        database.url,
        dbname=database.name,
        application_name=APPLICATION_NAME,
    )
    # Each concurrently crawled drive owns one sink that writes through the pool.
    pool_size = max_size or max(2, config.scanner.concurrent_drives + 1)
    return PoolSettings(
        conninfo=conninfo_str,
        schema=database.schema,
        application_name=APPLICATION_NAME,
        max_size=pool_size,
    )


def _get_pool(settings: PoolSettings) -> ConnectionPool:
    key = f"{settings.conninfo}|{settings.schema}"
    with _POOL_LOCK:
        pool = _POOLS.get(key)
        if pool is None:
            pool = _create_pool(settings)
            _POOLS[key] = pool
        return pool


def _create_pool(settings: PoolSettings) -> ConnectionPool:
    pool = ConnectionPool(
        settings.conninfo,
        min_size=settings.min_size,
        max_size=settings.max_size,
        timeout=30,
        configure=_build_configure_callback(settings),
    )
    logger.info(
        "Initialized database connection pool",
        extra={
            "schema": settings.schema,
            "application": settings.application_name,
            "max_size": settings.max_size,
            "conninfo": _mask_conninfo(settings.conninfo),
        },
    )
    return pool


def _build_configure_callback(settings: PoolSettings) -> Callable[[Connection[Any]], None]:
    def _configure(connection: Connection[Any]) -> None:
        connection.execute(sql.SQL("set search_path to {}").format(sql.Identifier(settings.schema)))
        connection.execute(
            "set statement_timeout to %s",
            (str(settings.statement_timeout_ms),),
        )
        connection.execute(
            "set idle_in_transaction_session_timeout to %s",
            (str(settings.idle_in_transaction_timeout_ms),),
        )
        # psycopg_pool requires connections to be returned idle.
        connection.commit()

    return _configure


def _mask_conninfo(value: str) -> str:
    parts = []
    for part in value.split():
        if part.startswith("password="):
            parts.append("password=***")
        else:
            parts.append(part)
    return " ".join(parts)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
