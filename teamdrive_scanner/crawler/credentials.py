"""Round-robin pool of API credentials, each with its own rate limiter."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from teamdrive_scanner.crawler.errors import CredentialLoadError, NoValidCredentialsError
from teamdrive_scanner.crawler.models import FolderLister
from teamdrive_scanner.crawler.ratelimit import TokenBucket

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Path], FolderLister]


@dataclass(frozen=True, slots=True)
class CredentialEntry:
    client: FolderLister
    limiter: TokenBucket


class CredentialPool:
    """Lends (client, limiter) pairs in round-robin order.

    Entries are shared: several workers may hold the same client at once and
    are only coordinated by that entry's limiter. The cursor is the only
    mutable state.
    """

    def __init__(self, entries: Sequence[CredentialEntry]) -> None:
        if not entries:
            raise NoValidCredentialsError("pool", "at least one credential is required")
        self._entries = tuple(entries)
        self._cursor = 0
        self._cursor_lock = threading.Lock()

    @classmethod
    def from_clients(
        cls, clients: Sequence[FolderLister], *, rate_per_credential: float
    ) -> CredentialPool:
        return cls(
            [
                CredentialEntry(client=client, limiter=_build_limiter(rate_per_credential))
                for client in clients
            ]
        )

    def lend(self) -> tuple[FolderLister, TokenBucket]:
        with self._cursor_lock:
            self._cursor += 1
            index = self._cursor % len(self._entries)
        entry = self._entries[index]
        return entry.client, entry.limiter

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[CredentialEntry, ...]:
        return self._entries


def load_credential_pool(
    directory: Path | str,
    *,
    rate_per_credential: float,
    client_factory: ClientFactory | None = None,
) -> CredentialPool:
    """Build a pool from every ``*.json`` key file in ``directory``.

    Files that cannot be turned into a client are logged and skipped; only an
    empty result is fatal.
    """

    if client_factory is None:
        from teamdrive_scanner.crawler.drive import load_drive_client

        client_factory = load_drive_client

    source = Path(directory)
    try:
        candidates = sorted(path for path in source.iterdir() if path.suffix == ".json")
    except OSError as exc:
        raise NoValidCredentialsError(
            str(source), f"cannot read credentials directory: {exc}"
        ) from exc

    clients: list[FolderLister] = []
    for path in candidates:
        if not path.is_file():
            continue
        try:
            clients.append(client_factory(path))
        except CredentialLoadError as exc:
            logger.warning("Skipping credential file", extra={"file": path.name, "error": str(exc)})

    if not clients:
        raise NoValidCredentialsError(str(source), "no valid service accounts found")

    logger.info(
        "Loaded credential pool",
        extra={"credentials": len(clients), "skipped": len(candidates) - len(clients)},
    )
    return CredentialPool.from_clients(clients, rate_per_credential=rate_per_credential)


def _build_limiter(rate: float) -> TokenBucket:
    return TokenBucket(rate, burst=max(1, int(rate * 2)))


__all__ = [
    "ClientFactory",
    "CredentialEntry",
    "CredentialPool",
    "load_credential_pool",
]
