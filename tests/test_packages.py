from __future__ import annotations

from typing import get_type_hints

import teamdrive_scanner.crawler as crawler
from teamdrive_scanner.db import repositories


def test_crawler_exports_resolve() -> None:
    for name in crawler.__all__:
        assert getattr(crawler, name) is not None


def test_sink_writes_through_the_file_repository() -> None:
    assert callable(repositories.FileIndexRepository.batch_write)
    assert repositories.FileRecord is crawler.FileRecord


def test_credential_pool_lends_folder_listers() -> None:
    hints = get_type_hints(crawler.CredentialPool.lend)
    assert hints["return"] == tuple[crawler.FolderLister, crawler.TokenBucket]
