from __future__ import annotations

import http.client
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from fakes import EXPENSE_HEADERS, FakeAuth, FakeDrive, FakeSheets, connector
from receiptsync.capture import CaptureService
from receiptsync.columns import METADATA_LABELS
from receiptsync.drive_client import DriveApiResponseError
from receiptsync.models import ExpenseRecord, QueueKind
from receiptsync.offline_queue import OfflineQueue, QueueStorageError
from receiptsync.sheets_client import SheetsApiResponseError

SHEET = "Transactions (1065)"
FULL_HEADERS = EXPENSE_HEADERS + list(METADATA_LABELS.values())
PDF = b"%PDF-1.4 receipt"


def _record(**overrides) -> ExpenseRecord:
    values = dict(date="2024-05-06", vendor="Lowe's", amount="40", member="Sam")
    values.update(overrides)
    return ExpenseRecord(**values)


def _service(queue, sheets, drive, *, online=True, token="token", enrich_lists=False):
    return CaptureService(
        queue,
        connector(sheets, drive),
        auth=FakeAuth(token=token),
        worksheet_title=SHEET,
        is_online=lambda: online,
        enrich_lists=enrich_lists,
    )


def test_online_capture_writes_directly_and_leaves_queue_empty(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")
    sheets = FakeSheets({SHEET: [list(FULL_HEADERS)]})
    drive = FakeDrive()

    result = _service(queue, sheets, drive).capture(_record(), PDF)

    assert result.queued is False
    assert result.row == 2
    assert result.file_id == "file-1"
    assert queue.count() == 0
    assert sheets.grid(SHEET)[1][FULL_HEADERS.index("ExpenseId")] == result.expense_id


def test_offline_capture_is_queued(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")
    sheets = FakeSheets({SHEET: [list(FULL_HEADERS)]})
    drive = FakeDrive()
    service = _service(queue, sheets, drive, online=False)

    result = service.capture(_record(), PDF)

    assert result.queued is True
    assert drive.uploads == []
    assert service.pending_count() == 1
    stored = queue.get(result.expense_id)
    assert stored.kind is QueueKind.UPLOAD_AND_APPEND
    assert stored.blob == PDF
    assert stored.expense().member == "Sam"


def test_signed_out_capture_is_queued(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")

    result = _service(queue, FakeSheets(), FakeDrive(), token=None).capture(_record(), PDF)

    assert result.queued is True


def test_failed_upload_falls_back_to_queue(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")
    drive = FakeDrive()
    drive.errors.append(DriveApiResponseError("timeout"))

    result = _service(queue, FakeSheets({SHEET: [list(FULL_HEADERS)]}), drive).capture(_record(), PDF)

    assert result.queued is True
    assert queue.get(result.expense_id).remote_file_id == ""


def test_row_failure_after_upload_queues_with_remote_file(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")
    sheets = FakeSheets({SHEET: [list(FULL_HEADERS)]})
    sheets.write_errors.append(SheetsApiResponseError("HTTP 500"))

    result = _service(queue, sheets, FakeDrive()).capture(_record(), PDF)

    stored = queue.get(result.expense_id)
    assert result.queued is True
    assert stored.remote_file_id == "file-1"
    assert stored.remote_link == "https://drive.example/file-1/view"


def test_unexpected_error_after_upload_still_queues_the_expense(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")
    sheets = FakeSheets({SHEET: [list(FULL_HEADERS)]})
    sheets.write_errors.append(http.client.IncompleteRead(b""))
    drive = FakeDrive()

    result = _service(queue, sheets, drive).capture(_record(), PDF)

    assert result.queued is True
    assert len(drive.uploads) == 1
    assert queue.get(result.expense_id).remote_file_id == "file-1"


def test_connection_failure_queues_the_expense(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")

    def broken_connect():
        raise http.client.BadStatusLine("")

    service = CaptureService(queue, broken_connect, auth=FakeAuth(), worksheet_title=SHEET, enrich_lists=False)
    result = service.capture(_record(), PDF)

    assert result.queued is True
    assert queue.count() == 1


def test_queue_failure_propagates_when_offline(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    queue = OfflineQueue(blocker / "queue.db")

    with pytest.raises(QueueStorageError):
        _service(queue, FakeSheets(), FakeDrive(), online=False).capture(_record(), PDF)


def test_online_capture_adds_new_vendor_and_property(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")
    sheets = FakeSheets({SHEET: [list(FULL_HEADERS)], "Lists": [["Vendors", "Properties"], ["Acme", ""]]})

    _service(queue, sheets, FakeDrive(), enrich_lists=True).capture(_record(property="12 Oak St"), PDF)

    assert sheets.cell("Lists", 3, 0) == "Lowe's"
    assert sheets.cell("Lists", 2, 1) == "12 Oak St"
    assert queue.count() == 0


def test_offline_capture_queues_list_updates(tmp_path):
    queue = OfflineQueue(tmp_path / "queue.db")

    _service(queue, FakeSheets(), FakeDrive(), online=False, enrich_lists=True).capture(_record(), PDF)

    kinds = sorted(item.kind.value for item in queue.list_all())
    assert kinds == ["ADD_LIST_ITEM", "UPLOAD_AND_APPEND"]
