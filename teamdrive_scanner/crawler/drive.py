"""Google Drive v3 listing adapter backed by service-account credentials."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from teamdrive_scanner.crawler.errors import CredentialLoadError, TransientAPIError
from teamdrive_scanner.crawler.models import ChildPage, DriveItem

logger = logging.getLogger(__name__)

DRIVE_READONLY_SCOPE = "https://www.googleapis.com/auth/drive.readonly"
LIST_FIELDS = "nextPageToken, files(id, name, size, modifiedTime, mimeType)"
HTTP_TIMEOUT_SECONDS = 60


def build_children_query(folder_id: str) -> str:
    escaped = folder_id.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}' in parents and trashed=false"


class DriveClient:
    """One authenticated Drive service.

    ``httplib2.Http`` is not thread-safe, so every thread that lists through
    this client gets its own authorized transport while sharing the
    credentials (and therefore the token refresh) and the discovery document.
    """

    def __init__(self, credentials: service_account.Credentials, *, label: str) -> None:
        self.label = label
        self._credentials = credentials
        self._service = build("drive", "v3", credentials=credentials, cache_discovery=False)
        self._local = threading.local()

    def list_children(
        self,
        *,
        folder_id: str,
        drive_id: str,
        page_size: int,
        page_token: str | None = None,
    ) -> ChildPage:
        request = self._service.files().list(
            q=build_children_query(folder_id),
            pageSize=page_size,
            supportsAllDrives=True,
            includeItemsFromAllDrives=True,
            corpora="drive",
            driveId=drive_id,
            fields=LIST_FIELDS,
            pageToken=page_token or None,
        )
        try:
            response: dict[str, Any] = request.execute(http=self._http())
        except HttpError as exc:
            raise TransientAPIError(exc.resp.status, _describe_http_error(exc)) from exc
        except (OSError, httplib2.HttpLib2Error) as exc:
            raise TransientAPIError(None, str(exc)) from exc
        items = [DriveItem.from_api(payload) for payload in response.get("files", [])]
        return ChildPage(items=items, next_page_token=response.get("nextPageToken") or None)

    def _http(self) -> AuthorizedHttp:
        http = getattr(self._local, "http", None)
        if http is None:
            http = AuthorizedHttp(
                self._credentials, http=httplib2.Http(timeout=HTTP_TIMEOUT_SECONDS)
            )
            self._local.http = http
        return http

    def __repr__(self) -> str:
        return f"DriveClient(label={self.label!r})"


def load_drive_client(path: Path) -> DriveClient:
    """Build a client from a service-account JSON key file."""

    try:
        info = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CredentialLoadError(path.name, f"unreadable: {exc}") from exc
    except ValueError as exc:
        raise CredentialLoadError(path.name, f"invalid JSON: {exc}") from exc
    if not isinstance(info, dict):
        raise CredentialLoadError(path.name, "expected a JSON object")

    try:
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=[DRIVE_READONLY_SCOPE]
        )
    except (GoogleAuthError, ValueError, KeyError) as exc:
        raise CredentialLoadError(path.name, f"invalid service account: {exc}") from exc

    label = str(info.get("client_email") or path.stem)
    logger.debug("Loaded service account", extra={"account": label, "file": path.name})
    return DriveClient(credentials, label=label)


def _describe_http_error(exc: HttpError) -> str:
    return str(getattr(exc, "reason", None) or exc)


__all__ = [
    "DRIVE_READONLY_SCOPE",
    "LIST_FIELDS",
    "DriveClient",
    "build_children_query",
    "load_drive_client",
]
