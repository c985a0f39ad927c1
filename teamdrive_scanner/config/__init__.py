from __future__ import annotations

import os
import sys
import tomllib
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"
DEFAULT_CONFIG_FILE = Path.home() / ".config" / "teamdrive_scanner" / "config.toml"
ENV_FILE_ENV_VAR = "TEAMDRIVE_SCANNER_ENV_FILE"
CONFIG_FILE_ENV_VAR = "TEAMDRIVE_SCANNER_CONFIG_FILE"
DRIVES_ENV_VAR = "TEAMDRIVE_SCANNER_DRIVES"

_PATH_TO_ENV_KEY: dict[tuple[str, str], str] = {
    ("google", "service_accounts_dir"): "GOOGLE_SERVICE_ACCOUNTS_DIR",
    ("database", "url"): "DATABASE_URL",
    ("database", "name"): "DATABASE_NAME",
    ("database", "schema"): "DATABASE_SCHEMA",
    ("scanner", "workers_per_account"): "SCANNER_WORKERS_PER_ACCOUNT",
    ("scanner", "rate_per_account"): "SCANNER_RATE_PER_ACCOUNT",
    ("scanner", "page_size"): "SCANNER_PAGE_SIZE",
    ("scanner", "batch_size"): "SCANNER_BATCH_SIZE",
    ("scanner", "concurrent_drives"): "SCANNER_CONCURRENT_DRIVES",
    ("scanner", "failed_folder_policy"): "SCANNER_FAILED_FOLDER_POLICY",
    ("scanner", "max_folder_attempts"): "SCANNER_MAX_FOLDER_ATTEMPTS",
}
_ENV_KEY_TO_PATH = {env_name: path for path, env_name in _PATH_TO_ENV_KEY.items()}

_REQUIRED_PATHS = (
    ("google", "service_accounts_dir"),
    ("database", "url"),
    ("database", "name"),
    ("database", "schema"),
)

_SCANNER_DEFAULTS: dict[str, int | str] = {
    "workers_per_account": 3,
    "rate_per_account": 10,
    "page_size": 1000,
    "batch_size": 1000,
    "concurrent_drives": 2,
    "failed_folder_policy": "abandon",
    "max_folder_attempts": 3,
}
_FAILED_FOLDER_POLICIES = ("abandon", "requeue")

_SECTION_FIELDS: dict[str, set[str]] = {}
for section, field in _PATH_TO_ENV_KEY:
    _SECTION_FIELDS.setdefault(section, set()).add(field)


class ConfigError(RuntimeError):
    """Raised when the configuration cannot be loaded."""


@dataclass(frozen=True)
class GoogleConfig:
    service_accounts_dir: Path


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    name: str
    schema: str


@dataclass(frozen=True)
class ScannerConfig:
    workers_per_account: int = 3
    rate_per_account: int = 10
    page_size: int = 1000
    batch_size: int = 1000
    concurrent_drives: int = 2
    failed_folder_policy: str = "abandon"
    max_folder_attempts: int = 3


@dataclass(frozen=True)
class DriveConfig:
    id: str
    name: str


@dataclass(frozen=True)
class AppConfig:
    google: GoogleConfig
    database: DatabaseConfig
    scanner: ScannerConfig
    drives: tuple[DriveConfig, ...]


_CONFIG_CACHE: AppConfig | None = None


def get_config() -> AppConfig:
    """Return a cached configuration using the default sources."""
    global _CONFIG_CACHE
    if _CONFIG_CACHE is None:
        _CONFIG_CACHE = load_config()
    return _CONFIG_CACHE


def load_config(
    *,
    env_file: Path | str | None = None,
    config_file: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load a configuration from `.env`, the personal config file, and environment variables."""
    env_path = _resolve_env_file(env_file)
    config_path = _resolve_config_file(config_file)
    env_values = _parse_env_file(env_path)
    file_values = _read_config_file(config_path)
    runtime_values = environ if environ is not None else os.environ

    merged: dict[str, Any] = {}
    _deep_merge(merged, _env_mapping_to_nested(env_values))
    _deep_merge(merged, _filter_known_sections(file_values))
    _deep_merge(merged, _env_mapping_to_nested(runtime_values))

    drives: list[DriveConfig] = []
    for source in (
        _drives_from_env(env_values),
        _drives_from_file(file_values),
        _drives_from_env(runtime_values),
    ):
        if source is not None:
            drives = source
    return _build_app_config(merged, drives)


def doctor(*, env_file: Path | str | None = None, config_file: Path | str | None = None) -> bool:
    """Validate configuration sources and print a diagnostic summary."""
    try:
        config = load_config(env_file=env_file, config_file=config_file)
    except ConfigError as exc:
        print("Configuration invalid:", file=sys.stderr)
        print(f"  {exc}", file=sys.stderr)
        return False

    scanner = config.scanner
    print("Configuration looks good.", file=sys.stdout)
    print(f"  Service accounts dir: {config.google.service_accounts_dir}", file=sys.stdout)
    print(f"  Database name: {config.database.name}", file=sys.stdout)
    print(f"  Database schema: {config.database.schema}", file=sys.stdout)
    print(
        f"  Scanner: {scanner.workers_per_account} workers/account, "
        f"{scanner.rate_per_account} req/s/account, page size {scanner.page_size}, "
        f"batch size {scanner.batch_size}",
        file=sys.stdout,
    )
    print(
        f"  Failed folders: {scanner.failed_folder_policy} "
        f"(max {scanner.max_folder_attempts} attempts)",
        file=sys.stdout,
    )
    print(
        f"  Team drives: {len(config.drives)} (max {scanner.concurrent_drives} concurrently)",
        file=sys.stdout,
    )
    for drive in config.drives:
        print(f"    - {drive.name} ({drive.id})", file=sys.stdout)
    return True


def _build_app_config(data: Mapping[str, Any], drives: list[DriveConfig]) -> AppConfig:
    values: dict[tuple[str, str], str] = {}
    missing: list[str] = []
    for path in _REQUIRED_PATHS:
        section_name, key = path
        section = data.get(section_name)
        raw_value = section.get(key) if isinstance(section, Mapping) else None
        if raw_value is None or str(raw_value).strip() == "":
            missing.append(_PATH_TO_ENV_KEY[path])
            continue
        values[path] = str(raw_value)
    if not drives:
        missing.append(DRIVES_ENV_VAR)

    if missing:
        missing.sort()
        raise ConfigError("Missing required values for " + ", ".join(missing))

    return AppConfig(
        google=GoogleConfig(
            service_accounts_dir=Path(values[("google", "service_accounts_dir")]).expanduser(),
        ),
        database=DatabaseConfig(
            url=values[("database", "url")],
            name=values[("database", "name")],
            schema=values[("database", "schema")],
        ),
        scanner=_build_scanner_config(data.get("scanner")),
        drives=tuple(drives),
    )


def _build_scanner_config(raw: Any) -> ScannerConfig:
    section = raw if isinstance(raw, Mapping) else {}
    settings: dict[str, Any] = {}
    for key, default in _SCANNER_DEFAULTS.items():
        value = section.get(key)
        if value is None or str(value).strip() == "":
            settings[key] = default
        elif isinstance(default, int):
            settings[key] = _positive_int(key, value)
        else:
            settings[key] = str(value).strip().lower()

    policy = settings["failed_folder_policy"]
    if policy not in _FAILED_FOLDER_POLICIES:
        raise ConfigError(
            f"Invalid {_PATH_TO_ENV_KEY[('scanner', 'failed_folder_policy')]} '{policy}'. "
            f"Expected one of: {', '.join(_FAILED_FOLDER_POLICIES)}"
        )
    return ScannerConfig(**settings)


def _positive_int(key: str, value: Any) -> int:
    env_name = _PATH_TO_ENV_KEY[("scanner", key)]
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{env_name} must be an integer, got {value!r}") from None
    if number < 1:
        raise ConfigError(f"{env_name} must be positive, got {number}")
    return number


def _drives_from_env(mapping: Mapping[str, str]) -> list[DriveConfig] | None:
    raw = mapping.get(DRIVES_ENV_VAR)
    if raw is None or raw.strip() == "":
        return None
    drives: list[DriveConfig] = []
    for chunk in raw.split(","):
        entry = chunk.strip()
        if not entry:
            continue
        drive_id, _, name = entry.partition("=")
        drive_id = drive_id.strip()
        if not drive_id:
            raise ConfigError(f"Invalid {DRIVES_ENV_VAR} entry {entry!r}")
        drives.append(DriveConfig(id=drive_id, name=name.strip() or drive_id))
    return drives


def _drives_from_file(raw: Mapping[str, Any]) -> list[DriveConfig] | None:
    entries = raw.get("drives")
    if entries is None:
        return None
    if not isinstance(entries, list):
        raise ConfigError("'drives' must be an array of tables with 'id' and 'name'")
    drives: list[DriveConfig] = []
    for entry in entries:
        if not isinstance(entry, Mapping) or not str(entry.get("id", "")).strip():
            raise ConfigError(f"Invalid drive entry {entry!r}: 'id' is required")
        drive_id = str(entry["id"]).strip()
        name = str(entry.get("name", "")).strip() or drive_id
        drives.append(DriveConfig(id=drive_id, name=name))
    return drives


def _resolve_env_file(explicit: Path | str | None) -> Path:
    if explicit is not None:
        return Path(explicit)
    override = os.environ.get(ENV_FILE_ENV_VAR)
    if override:
        return Path(override)
    return DEFAULT_ENV_FILE


def _resolve_config_file(explicit: Path | str | None) -> Path:
    if explicit is not None:
        return Path(explicit)
    override = os.environ.get(CONFIG_FILE_ENV_VAR)
    if override:
        return Path(override)
    return DEFAULT_CONFIG_FILE


def _parse_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Failed to read env file {path}: {exc}") from exc

    values: dict[str, str] = {}
    for raw_line in contents.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :]
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        values[key.strip()] = _strip_quotes(raw_value.strip())
    return values


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and ((value[0] == value[-1]) and value.startswith(("'", '"'))):
        return value[1:-1]
    return value


def _read_config_file(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc


def _filter_known_sections(raw: Mapping[str, Any]) -> dict[str, Any]:
    filtered: dict[str, Any] = {}
    for section, allowed_fields in _SECTION_FIELDS.items():
        raw_section = raw.get(section)
        if isinstance(raw_section, Mapping):
            filtered_section: dict[str, Any] = {}
            for field in allowed_fields:
                if field in raw_section:
                    filtered_section[field] = str(raw_section[field])
            if filtered_section:
                filtered[section] = filtered_section
    return filtered


def _env_mapping_to_nested(mapping: Mapping[str, Any]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key, value in mapping.items():
        path = _ENV_KEY_TO_PATH.get(key)
        if not path:
            continue
        _assign_path(nested, path, value)
    return nested


def _assign_path(target: MutableMapping[str, Any], path: tuple[str, ...], value: Any) -> None:
    current: MutableMapping[str, Any] = target
    for component in path[:-1]:
        next_value = current.get(component)
        if not isinstance(next_value, MutableMapping):
            next_value = {}
            current[component] = next_value
        current = next_value
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, Any], data: Mapping[str, Any]) -> None:
    for key, value in data.items():
        if isinstance(value, Mapping):
            child = target.get(key)
            if not isinstance(child, MutableMapping):
                child = {}
                target[key] = child
            _deep_merge(child, value)
        elif value is not None:
            target[key] = value


__all__ = [
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "DriveConfig",
    "GoogleConfig",
    "ScannerConfig",
    "doctor",
    "get_config",
    "load_config",
]
