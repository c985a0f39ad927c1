"""Value types passed between the crawl engine, the Drive adapter and storage."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class FailedFolderPolicy(str, Enum):
    """What to do with a folder whose listing ran out of retries."""

    ABANDON = "abandon"
    REQUEUE = "requeue"

    @classmethod
    def coerce(cls, value: FailedFolderPolicy | str | None) -> FailedFolderPolicy:
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.ABANDON
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown failed-folder policy: {value!r}")


@dataclass(frozen=True, slots=True)
class ScanRequest:
    """Configuration for crawling a single root."""

    root_id: str
    root_name: str
    workers_per_credential: int = 3
    page_size: int = 1000
    batch_size: int = 1000

    def __post_init__(self) -> None:
        for name in ("workers_per_credential", "page_size", "batch_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive integer")


@dataclass(frozen=True, slots=True)
class FileRecord:
    id: str
    name: str
    parent_id: str
    root_id: str
    root_name: str
    size: int
    modified_time: str
    mime_type: str
    is_folder: bool
    path: str


@dataclass(frozen=True, slots=True)
class FolderJob:
    folder_id: str
    page_token: str | None = None
    attempt: int = 0


@dataclass(frozen=True, slots=True)
class DriveItem:
    id: str
    name: str
    size: int
    modified_time: str
    mime_type: str

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> DriveItem:
        # Drive reports size as a string and omits it for folders and native docs.
        raw_size = payload.get("size")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            size=int(raw_size) if raw_size not in (None, "") else 0,
            modified_time=str(payload.get("modifiedTime", "")),
            mime_type=str(payload.get("mimeType", "")),
        )

    def to_record(self, *, parent_id: str, root_id: str, root_name: str) -> FileRecord:
        return FileRecord(
            id=self.id,
            name=self.name,
            parent_id=parent_id,
            root_id=root_id,
            root_name=root_name,
            size=self.size,
            modified_time=self.modified_time,
            mime_type=self.mime_type,
            is_folder=self.is_folder,
            path=self.name,
        )


@dataclass(frozen=True, slots=True)
class ChildPage:
    items: Sequence[DriveItem]
    next_page_token: str | None = None


class FolderLister(Protocol):
    """Anything that can list one page of a folder's children."""

    label: str

    def list_children(
        self,
        *,
        folder_id: str,
        drive_id: str,
        page_size: int,
        page_token: str | None = None,
    ) -> ChildPage: ...


__all__ = [
    "FOLDER_MIME_TYPE",
    "ChildPage",
    "DriveItem",
    "FailedFolderPolicy",
    "FileRecord",
    "FolderJob",
    "FolderLister",
    "ScanRequest",
]
