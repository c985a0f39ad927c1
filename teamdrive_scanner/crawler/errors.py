"""Exception hierarchy shared by the crawl engine and its collaborators."""

from __future__ import annotations

RATE_LIMIT_STATUS_CODES = frozenset({403, 429})


class ScannerError(RuntimeError):
    """Base class for crawl failures."""


class CredentialLoadError(ScannerError):
    """Raised when a single credential file cannot be turned into a client."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class NoValidCredentialsError(CredentialLoadError):
    """Raised when a credential directory yields no usable client at all."""


class TransientAPIError(ScannerError):
    """A remote listing call failed in a way that is worth retrying."""

    def __init__(self, status: int | None, message: str) -> None:
        super().__init__(message if status is None else f"HTTP {status}: {message}")
        self.status = status

    @property
    def rate_limited(self) -> bool:
        return self.status in RATE_LIMIT_STATUS_CODES


class MaxRetriesExceeded(ScannerError):
    """Raised once every attempt of a remote call has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StorageWriteError(ScannerError):
    """Raised when the storage collaborator rejects a batch."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class CrawlCancelled(ScannerError):
    """Raised from any wait point once the crawl's cancel signal has fired."""


__all__ = [
    "RATE_LIMIT_STATUS_CODES",
    "CrawlCancelled",
    "CredentialLoadError",
    "MaxRetriesExceeded",
    "NoValidCredentialsError",
    "ScannerError",
    "StorageWriteError",
    "TransientAPIError",
]
