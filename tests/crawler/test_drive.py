from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import httplib2
import pytest
from googleapiclient.errors import HttpError
from teamdrive_scanner.crawler import CredentialLoadError, DriveItem, TransientAPIError
from teamdrive_scanner.crawler import drive
from teamdrive_scanner.crawler.models import FOLDER_MIME_TYPE


class FakeRequest:
    def __init__(self, outcome: Any) -> None:
        self._outcome = outcome
        self.http: object | None = None

    def execute(self, *, http: object) -> dict[str, Any]:
        self.http = http
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


class FakeFiles:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        self.list_kwargs: list[dict[str, Any]] = []
        self.requests: list[FakeRequest] = []

    def list(self, **kwargs: Any) -> FakeRequest:
        self.list_kwargs.append(kwargs)
        request = FakeRequest(self.outcome)
        self.requests.append(request)
        return request


class FakeService:
    def __init__(self, outcome: Any) -> None:
        self._files = FakeFiles(outcome)

    def files(self) -> FakeFiles:
        return self._files


def build_client(monkeypatch: pytest.MonkeyPatch, outcome: Any) -> tuple[drive.DriveClient, FakeFiles]:
    service = FakeService(outcome)
    monkeypatch.setattr(drive, "build", lambda *args, **kwargs: service)
    monkeypatch.setattr(drive, "AuthorizedHttp", lambda credentials, http: object())
    return drive.DriveClient(object(), label="sa@example.iam"), service.files()  # type: ignore[arg-type]


def test_drive_item_from_api_parses_size_and_folder_type() -> None:
    document = DriveItem.from_api(
        {
            "id": "f1",
            "name": "Budget.xlsx",
            "size": "4096",
            "modifiedTime": "2024-03-01T10:00:00.000Z",
            "mimeType": "application/vnd.ms-excel",
        }
    )
    folder = DriveItem.from_api({"id": "d1", "name": "Reports", "mimeType": FOLDER_MIME_TYPE})

    assert document.size == 4096
    assert not document.is_folder
    assert folder.size == 0
    assert folder.is_folder
    record = folder.to_record(parent_id="root", root_id="root", root_name="Finance")
    assert record.is_folder
    assert record.path == "Reports"


def test_children_query_escapes_quotes() -> None:
    assert drive.build_children_query("abc") == "'abc' in parents and trashed=false"
    assert drive.build_children_query("a'b") == "'a\\'b' in parents and trashed=false"


def test_list_children_requests_shared_drive_listing(monkeypatch: pytest.MonkeyPatch) -> None:
    response = {
        "files": [
            {"id": "f1", "name": "a.txt", "size": "12", "mimeType": "text/plain"},
            {"id": "d1", "name": "sub", "mimeType": FOLDER_MIME_TYPE},
        ],
        "nextPageToken": "next-1",
    }
    client, files = build_client(monkeypatch, response)

    page = client.list_children(folder_id="folder-1", drive_id="0AAA", page_size=500)

    (kwargs,) = files.list_kwargs
    assert kwargs["q"] == "'folder-1' in parents and trashed=false"
    assert kwargs["driveId"] == "0AAA"
    assert kwargs["corpora"] == "drive"
    assert kwargs["supportsAllDrives"] is True
    assert kwargs["includeItemsFromAllDrives"] is True
    assert kwargs["pageSize"] == 500
    assert kwargs["pageToken"] is None
    assert kwargs["fields"] == drive.LIST_FIELDS
    assert [item.id for item in page.items] == ["f1", "d1"]
    assert page.next_page_token == "next-1"


def test_last_page_has_no_continuation(monkeypatch: pytest.MonkeyPatch) -> None:
    client, files = build_client(monkeypatch, {"files": []})

    page = client.list_children(
        folder_id="folder-1", drive_id="0AAA", page_size=10, page_token="next-1"
    )

    assert files.list_kwargs[0]["pageToken"] == "next-1"
    assert page.items == []
    assert page.next_page_token is None


def test_each_thread_gets_its_own_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    client, files = build_client(monkeypatch, {"files": []})

    client.list_children(folder_id="a", drive_id="0AAA", page_size=10)
    client.list_children(folder_id="b", drive_id="0AAA", page_size=10)
    worker = threading.Thread(
        target=lambda: client.list_children(folder_id="c", drive_id="0AAA", page_size=10)
    )
    worker.start()
    worker.join()

    transports = [request.http for request in files.requests]
    assert transports[0] is transports[1]
    assert transports[2] is not transports[0]


def test_http_errors_become_transient_api_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    content = json.dumps({"error": {"code": 429, "message": "Rate Limit Exceeded"}}).encode()
    error = HttpError(httplib2.Response({"status": "429"}), content)
    client, _ = build_client(monkeypatch, error)

    with pytest.raises(TransientAPIError) as excinfo:
        client.list_children(folder_id="a", drive_id="0AAA", page_size=10)

    assert excinfo.value.status == 429
    assert excinfo.value.rate_limited


def test_transport_errors_have_no_status(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = build_client(monkeypatch, ConnectionResetError("reset by peer"))

    with pytest.raises(TransientAPIError) as excinfo:
        client.list_children(folder_id="a", drive_id="0AAA", page_size=10)

    assert excinfo.value.status is None
    assert not excinfo.value.rate_limited


@pytest.mark.parametrize(
    "contents",
    ["not json at all", "[1, 2, 3]", json.dumps({"type": "service_account"})],
)
def test_load_drive_client_rejects_invalid_key_files(tmp_path: Path, contents: str) -> None:
    key_file = tmp_path / "account.json"
    key_file.write_text(contents, encoding="utf-8")

    with pytest.raises(CredentialLoadError) as excinfo:
        drive.load_drive_client(key_file)

    assert "account.json" in str(excinfo.value)
