"""Utilities shared by CLI entrypoints."""

from __future__ import annotations

import argparse
import logging
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar, cast

from teamdrive_scanner.config import ConfigError, load_config
from teamdrive_scanner.logging import configure_logging

if TYPE_CHECKING:
    from teamdrive_scanner.config import AppConfig


_LOG_LEVEL_CHOICES = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")
_LOG_FORMAT_CHOICES = ("text", "json")
_LOG_DESTINATION_CHOICES = ("auto", "stdout", "stderr")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_NO_CREDENTIALS = 3

INTERRUPT_POLL_SECONDS = 0.5

T = TypeVar("T")


CliRunner = Callable[[argparse.Namespace], int]


class CLIArgs(argparse.Namespace):
    log_level: str
    log_format: str
    log_destination: str
    config: Path | None
    env_file: Path | None
    app_config: AppConfig


def build_parser(*, prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description=description,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a TOML configuration file overriding defaults.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Optional .env file containing settings.",
    )
    parser.add_argument(
        "--log-level",
        type=_choice_type("log level", _LOG_LEVEL_CHOICES, str.upper),
        choices=_LOG_LEVEL_CHOICES,
        default="INFO",
        help="Logging verbosity (case-insensitive).",
    )
    parser.add_argument(
        "--log-format",
        type=_choice_type("log format", _LOG_FORMAT_CHOICES, str.lower),
        choices=_LOG_FORMAT_CHOICES,
        default="text",
        help="Structured JSON or human-readable text logs.",
    )
    parser.add_argument(
        "--log-destination",
        type=_choice_type("log destination", _LOG_DESTINATION_CHOICES, str.lower),
        choices=_LOG_DESTINATION_CHOICES,
        default="auto",
        help="Write logs to stdout, stderr, or split automatically by level.",
    )
    return parser


def run_cli(
    parser: argparse.ArgumentParser,
    argv: Sequence[str] | None,
    *,
    cli_name: str,
    display_name: str,
    runner: CliRunner,
) -> int:
    args = cast(CLIArgs, parser.parse_args(argv))
    configure_logging(
        level=args.log_level,
        fmt=args.log_format,
        destination=args.log_destination,
    )
    logger = logging.getLogger(f"teamdrive_scanner.cli.{cli_name}")
    try:
        config = load_config(env_file=args.env_file, config_file=args.config)
    except ConfigError as exc:
        logger.error(
            "Configuration invalid",
            extra={"cli": cli_name, "error": str(exc)},
        )
        return EXIT_CONFIG_ERROR

    args.app_config = config
    logger.info(
        "%s CLI ready",
        display_name,
        extra={
            "cli": cli_name,
            "schema": config.database.schema,
            "drives": len(config.drives),
        },
    )
    return runner(args)


def run_cancellable(work: Callable[[], T], cancel: threading.Event) -> T:
    """Run ``work`` on a helper thread so Ctrl-C on the main thread fires ``cancel``.

    The work is expected to notice the event and wind down; its result (or
    exception) is handed back to the caller once it does.
    """

    logger = logging.getLogger("teamdrive_scanner.cli")
    outcome: dict[str, object] = {}

    def target() -> None:
        try:
            outcome["result"] = work()
        except BaseException as exc:  # noqa: BLE001 - re-raised on the calling thread
            outcome["error"] = exc

    thread = threading.Thread(target=target, name="cli-work")
    thread.start()
    while thread.is_alive():
        try:
            thread.join(INTERRUPT_POLL_SECONDS)
        except KeyboardInterrupt:
            if not cancel.is_set():
                logger.warning("Interrupt received, cancelling")
                cancel.set()
    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["result"]  # type: ignore[return-value]


def _choice_type(label: str, choices: Sequence[str], normalize: Callable[[str], str]):
    def _convert(value: str) -> str:
        normalized = normalize(value)
        if normalized not in choices:
            raise argparse.ArgumentTypeError(
                f"Invalid {label} '{value}'. Expected one of: {', '.join(choices)}"
            )
        return normalized

    return _convert


__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_FAILED",
    "EXIT_NO_CREDENTIALS",
    "EXIT_OK",
    "CLIArgs",
    "CliRunner",
    "build_parser",
    "run_cancellable",
    "run_cli",
]
