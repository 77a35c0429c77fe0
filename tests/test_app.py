from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

import app
from fakes import FakeDrive, FakeSheets, connector
from receiptsync import auth as auth_module
from receiptsync.auth import AuthSession
from receiptsync.models import QueueKind
from receiptsync.offline_queue import OfflineQueue
from settings import ReceiptSyncSettings


class _Offline:
    def is_online(self) -> bool:
        return False


def _no_network(*args, **kwargs):
    raise AssertionError("the Google profile endpoint must not be called")


@pytest.fixture
def runtime(tmp_path, monkeypatch):
    token_path = tmp_path / "token.json"
    token_path.write_text(
        json.dumps(
            {
                "token": "access-123",
                "refresh_token": "refresh-456",
                "client_id": "client.apps.googleusercontent.com",
                "client_secret": "secret",
                "expiry": "2999-01-01T00:00:00Z",
            }
        ),
        encoding="utf-8",
    )
    settings = ReceiptSyncSettings(
        spreadsheet_id="sheet-1",
        client_secret_path=str(tmp_path / "client.json"),
        token_path=str(token_path),
        allowed_members={"alex@example.com": "Alex"},
    )
    current = app.Runtime(
        settings=settings,
        queue=OfflineQueue(tmp_path / "queue.db"),
        auth=AuthSession(settings.client_secret_path, settings.token_path, allowed_members=settings.allowed_members),
        monitor=_Offline(),
    )
    monkeypatch.setattr(app, "build_runtime", lambda settings=None: current)
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: tmp_path / "receiptsync.log")
    monkeypatch.setattr(auth_module, "build", _no_network)
    return current


def _capture_args(document: Path, *extra: str):
    return ["capture", str(document), "--date", "2026-03-01", "--vendor", "Acme", "--amount", "12.00", *extra]


def test_capture_offline_uses_remembered_member(runtime, tmp_path, capsys):
    runtime.auth.identity_path.write_text(json.dumps({"email": "alex@example.com", "name": "Alex"}), encoding="utf-8")
    document = tmp_path / "r.pdf"
    document.write_bytes(b"%PDF-1.4 receipt")

    exit_code = app.main(_capture_args(document))

    assert exit_code == 0
    assert "Saved to queue" in capsys.readouterr().out
    expenses = [item for item in runtime.queue.list_pending() if item.kind is QueueKind.UPLOAD_AND_APPEND]
    assert len(expenses) == 1
    assert expenses[0].expense().member == "Alex"


def test_capture_with_explicit_member_needs_no_identity(runtime, tmp_path):
    document = tmp_path / "r.pdf"
    document.write_bytes(b"%PDF-1.4 receipt")

    assert app.main(_capture_args(document, "--member", "Sam")) == 0

    expenses = [item for item in runtime.queue.list_pending() if item.kind is QueueKind.UPLOAD_AND_APPEND]
    assert expenses[0].expense().member == "Sam"


def test_lists_command_prints_dropdown_values(runtime, monkeypatch, capsys):
    sheets = FakeSheets(
        {
            "Chart of Accounts": [["Account"], ["Repairs"], ["Supplies"], ["Annual Total"]],
            "Lists": [["Vendors", "Properties"], ["Acme", "12 Oak"]],
        }
    )
    monkeypatch.setattr(runtime, "connector", lambda: connector(sheets, FakeDrive()))

    assert app.main(["lists"]) == 0

    out = capsys.readouterr().out
    assert "Categories (2):" in out
    assert "  Supplies" in out
    assert "Vendors (1):" in out
    assert "  12 Oak" in out


def test_check_command_lists_worksheets(runtime, monkeypatch, capsys):
    sheets = FakeSheets({"Transactions (1065)": [["Date"]], "Lists": []})
    monkeypatch.setattr(runtime, "connector", lambda: connector(sheets, FakeDrive()))

    assert app.main(["check"]) == 0

    out = capsys.readouterr().out
    assert "Worksheets in Books:" in out
    assert " * Transactions (1065)" in out
