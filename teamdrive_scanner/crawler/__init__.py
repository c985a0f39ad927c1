"""Concurrent crawl engine for Google shared drives."""

from __future__ import annotations

from teamdrive_scanner.crawler.credentials import (
    CredentialEntry,
    CredentialPool,
    load_credential_pool,
)
from teamdrive_scanner.crawler.errors import (
    CrawlCancelled,
    CredentialLoadError,
    MaxRetriesExceeded,
    NoValidCredentialsError,
    ScannerError,
    StorageWriteError,
    TransientAPIError,
)
from teamdrive_scanner.crawler.models import (
    ChildPage,
    DriveItem,
    FailedFolderPolicy,
    FileRecord,
    FolderJob,
    FolderLister,
    ScanRequest,
)
from teamdrive_scanner.crawler.orchestrator import CrawlOrchestrator
from teamdrive_scanner.crawler.ratelimit import TokenBucket
from teamdrive_scanner.crawler.retry import RetryExecutor
from teamdrive_scanner.crawler.runner import DriveScanResult, scan_drives
from teamdrive_scanner.crawler.sink import ResultSink
from teamdrive_scanner.crawler.stats import CrawlStats, ProgressReporter, StatsSnapshot

__all__ = [
    "ChildPage",
    "CrawlCancelled",
    "CrawlOrchestrator",
    "CrawlStats",
    "CredentialEntry",
    "CredentialLoadError",
    "CredentialPool",
    "DriveItem",
    "DriveScanResult",
    "FailedFolderPolicy",
    "FileRecord",
    "FolderJob",
    "FolderLister",
    "MaxRetriesExceeded",
    "NoValidCredentialsError",
    "ProgressReporter",
    "ResultSink",
    "RetryExecutor",
    "ScanRequest",
    "ScannerError",
    "StatsSnapshot",
    "StorageWriteError",
    "TokenBucket",
    "TransientAPIError",
    "load_credential_pool",
    "scan_drives",
]
