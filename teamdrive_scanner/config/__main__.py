from __future__ import annotations

import argparse
import sys
from pathlib import Path

from . import ConfigError, doctor, load_config


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Configuration utilities for teamdrive-scanner.")
    subparsers = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("doctor", "Validate configuration sources."),
        ("drives", "List the team drives that a scan would crawl."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--env-file", type=Path, help="Path to the .env file to read.")
        sub.add_argument(
            "--config-file", type=Path, help="Path to the user config file (config.toml)."
        )

    args = parser.parse_args(argv)
    if args.command == "doctor":
        success = doctor(env_file=args.env_file, config_file=args.config_file)
        return 0 if success else 1
    if args.command == "drives":
        return _list_drives(args.env_file, args.config_file)

    parser.print_help()
    return 1


def _list_drives(env_file: Path | None, config_file: Path | None) -> int:
    try:
        config = load_config(env_file=env_file, config_file=config_file)
    except ConfigError as exc:
        print(f"Configuration invalid: {exc}", file=sys.stderr)
        return 1
    for drive in config.drives:
        print(f"{drive.id}\t{drive.name}", file=sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
