"""In-memory stand-ins for the Sheets and Drive clients used across the tests."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from receiptsync.drive_client import UploadedFile
from receiptsync.sheets_client import FORMULA, RangeSpec
from receiptsync.sync_engine import RemoteClients


def _trim(row: List[Any]) -> List[Any]:
    trimmed = list(row)
    while trimmed and trimmed[-1] in ("", None):
        trimmed.pop()
    return trimmed


class FakeSheets:
    """Grid backed fake of :class:`receiptsync.sheets_client.SheetsClient`.

    Reads behave like the Sheets API: trailing empty cells and rows are
    trimmed, formulas are returned only with ``render=FORMULA``.
    """

    def __init__(self, sheets: Optional[Dict[str, List[List[Any]]]] = None) -> None:
        self.sheets: Dict[str, List[List[Any]]] = {
            title: [list(row) for row in rows] for title, rows in (sheets or {}).items()
        }
        self.reads: List[RangeSpec] = []
        self.writes: List[tuple] = []
        self.read_errors: List[Exception] = []
        self.write_errors: List[Exception] = []

    # Helpers ------------------------------------------------------------
    def grid(self, sheet: str) -> List[List[Any]]:
        return self.sheets.setdefault(sheet, [])

    def cell(self, sheet: str, row: int, col: int) -> Any:
        grid = self.grid(sheet)
        if row - 1 >= len(grid) or col >= len(grid[row - 1]):
            return ""
        return grid[row - 1][col]

    @staticmethod
    def _render(value: Any, render: str) -> str:
        if value is None:
            return ""
        text = str(value)
        if render != FORMULA and text.startswith("=HYPERLINK("):
            return "Receipt"
        return text

    # Client API ---------------------------------------------------------
    def read_range(self, spec: RangeSpec, *, render: str = "FORMATTED_VALUE") -> List[List[str]]:
        self.reads.append(spec)
        if self.read_errors:
            raise self.read_errors.pop(0)
        grid = self.grid(spec.sheet)
        end_col = spec.start_col if spec.end_col is None else spec.end_col
        last_row = len(grid) if spec.end_row is None else min(spec.end_row, len(grid))
        rows: List[List[str]] = []
        for index in range(spec.start_row - 1, last_row):
            source = grid[index]
            cells = [
                self._render(source[col] if col < len(source) else "", render)
                for col in range(spec.start_col, end_col + 1)
            ]
            rows.append(_trim(cells))
        while rows and not rows[-1]:
            rows.pop()
        return rows

    def write_range(self, spec: RangeSpec, rows: Sequence[Sequence[Any]], *, mode: str = "USER_ENTERED") -> Dict:
        if self.write_errors:
            raise self.write_errors.pop(0)
        self.writes.append((spec, [list(row) for row in rows], mode))
        grid = self.grid(spec.sheet)
        for offset, values in enumerate(rows):
            row_index = spec.start_row - 1 + offset
            while len(grid) <= row_index:
                grid.append([])
            target = grid[row_index]
            for col_offset, value in enumerate(values):
                col = spec.start_col + col_offset
                while len(target) <= col:
                    target.append("")
                target[col] = value
        return {}

    def append_range(self, spec: RangeSpec, rows: Sequence[Sequence[Any]], *, mode: str = "USER_ENTERED") -> Dict:
        grid = self.grid(spec.sheet)
        start = RangeSpec(spec.sheet, spec.start_col, len(grid) + 1, spec.end_col, None)
        return self.write_range(start, rows, mode=mode)

    def spreadsheet_metadata(self) -> Dict[str, Any]:
        return {
            "properties": {"title": "Books"},
            "sheets": [{"properties": {"title": title}} for title in self.sheets],
        }

    def worksheet_titles(self, metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        return list(self.sheets)


class FakeDrive:
    def __init__(self) -> None:
        self.uploads: List[Dict[str, Any]] = []
        self.errors: List[Exception] = []

    def upload(self, data: bytes, content_type: str, folder_path: Sequence[str], filename: str) -> UploadedFile:
        if self.errors:
            raise self.errors.pop(0)
        file_id = f"file-{len(self.uploads) + 1}"
        self.uploads.append(
            {
                "data": data,
                "content_type": content_type,
                "folder_path": list(folder_path),
                "filename": filename,
                "id": file_id,
            }
        )
        return UploadedFile(id=file_id, view_link=f"https://drive.example/{file_id}/view", name=filename)


class FakeAuth:
    def __init__(self, token: Optional[str] = "token") -> None:
        self.token = token

    def get_access_token(self) -> Optional[str]:
        return self.token

    def credentials(self):
        return object()


def connector(sheets: FakeSheets, drive: FakeDrive):
    def connect() -> RemoteClients:
        return RemoteClients(sheets=sheets, drive=drive)

    return connect


EXPENSE_HEADERS = [
    "Date",
    "Vendor",
    "Description",
    "Amount",
    "Category",
    "Property",
    "Paid Via",
    "1099?",
    "Notes",
    "Class",
    "Receipt",
]
