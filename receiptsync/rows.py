"""Locate, append and update expense rows in the worksheet.

Sheets has no row reservation and no transactions.  Rows are therefore found
by scanning: new expenses go into the first row whose Date cell is blank
(people delete rows by clearing them, so gaps are common) and existing
expenses are located through the ExpenseId column.

Writes never blindly overwrite a row.  The worksheet usually carries formula
columns the client knows nothing about, so every write reads the row with
formulas rendered, changes only the mapped cells and writes the merged row
back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from receiptsync.columns import CanonicalField, ColumnMapping
from receiptsync.models import ExpenseRecord
from receiptsync.sheets_client import FORMULA, USER_ENTERED, RangeSpec

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = 2
STATUS_ACTIVE = "Active"
STATUS_DELETED = "Deleted"


class RowNotFoundError(LookupError):
    """Raised when an expense id has no row in the worksheet."""


@dataclass(frozen=True)
class RemoteRow:
    index: int
    mapping: ColumnMapping


def utc_timestamp(value: Optional[datetime] = None) -> str:
    moment = value or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def hyperlink_formula(link: str, label: str = "Receipt") -> str:
    if not link:
        return ""
    escaped = link.replace('"', '""')
    return f'=HYPERLINK("{escaped}", "{label}")'


def build_expense_values(
    record: ExpenseRecord,
    *,
    expense_id: str,
    file_id: str = "",
    link: str = "",
    timestamp: Optional[str] = None,
) -> Dict[CanonicalField, Any]:
    """Return the full set of cell values for a new expense row."""

    stamp = timestamp or utc_timestamp()
    return {
        CanonicalField.DATE: record.date,
        CanonicalField.VENDOR: record.vendor,
        CanonicalField.DESCRIPTION: record.description,
        CanonicalField.AMOUNT: record.amount_value(),
        CanonicalField.CATEGORY: record.category,
        CanonicalField.PROPERTY: record.property,
        CanonicalField.PAID_VIA: record.paid_via,
        CanonicalField.IS_1099: record.is_1099,
        CanonicalField.NOTES: record.notes,
        CanonicalField.CLASS: record.classification,
        CanonicalField.RECEIPT_LINK: hyperlink_formula(link),
        CanonicalField.MEMBER: record.member,
        CanonicalField.EXPENSE_ID: expense_id,
        CanonicalField.RECEIPT_FILE_ID: file_id,
        CanonicalField.STATUS: STATUS_ACTIVE,
        CanonicalField.CREATED_AT: stamp,
        CanonicalField.UPDATED_AT: stamp,
    }


def _cell(row: List[str], position: int) -> str:
    return row[position] if position < len(row) else ""


class RowAllocator:
    """Find and write rows of one worksheet through a resolved column mapping."""

    def __init__(self, client, sheet: str, mapping: ColumnMapping) -> None:
        self._client = client
        self._sheet = sheet
        self._mapping = mapping

    @property
    def mapping(self) -> ColumnMapping:
        return self._mapping

    def _scan_column(self, position: int) -> List[str]:
        rows = self._client.read_range(RangeSpec.column(self._sheet, position, start_row=FIRST_DATA_ROW))
        return [_cell(row, 0).strip() for row in rows]

    # ------------------------------------------------------------------
    # Row location
    # ------------------------------------------------------------------
    def find_append_row(self) -> RemoteRow:
        """Return the first data row whose Date cell is blank."""

        values = self._scan_column(self._mapping.require(CanonicalField.DATE))
        for offset, value in enumerate(values):
            if not value:
                return RemoteRow(FIRST_DATA_ROW + offset, self._mapping)
        return RemoteRow(FIRST_DATA_ROW + len(values), self._mapping)

    def find_row_by_key(self, expense_id: str) -> Optional[RemoteRow]:
        """Return the row carrying ``expense_id`` or ``None``."""

        position = self._mapping.get(CanonicalField.EXPENSE_ID)
        target = (expense_id or "").strip()
        if position is None or not target:
            return None
        for offset, value in enumerate(self._scan_column(position)):
            if value == target:
                return RemoteRow(FIRST_DATA_ROW + offset, self._mapping)
        return None

    def _require_row(self, expense_id: str) -> RemoteRow:
        row = self.find_row_by_key(expense_id)
        if row is None:
            raise RowNotFoundError(f"Expense {expense_id} not found in worksheet {self._sheet}")
        return row

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _read_row(self, row_index: int) -> List[Any]:
        width = self._mapping.span
        rows = self._client.read_range(RangeSpec.row(self._sheet, row_index, width), render=FORMULA)
        current: List[Any] = list(rows[0]) if rows else []
        if len(current) < width:
            current.extend([""] * (width - len(current)))
        return current

    def write_fields(self, row_index: int, values: Mapping[CanonicalField, Any]) -> None:
        """Merge ``values`` into the mapped cells of ``row_index``."""

        current = self._read_row(row_index)
        for canonical, value in values.items():
            position = self._mapping.get(canonical)
            if position is None:
                logger.debug("Skipping unmapped field %s on %s", canonical.value, self._sheet)
                continue
            current[position] = "" if value is None else value
        self._client.write_range(
            RangeSpec.row(self._sheet, row_index, len(current)),
            [current],
            mode=USER_ENTERED,
        )

    def append_record(self, values: Mapping[CanonicalField, Any]) -> RemoteRow:
        row = self.find_append_row()
        self.write_fields(row.index, values)
        logger.info("Wrote expense %s to %s row %d", values.get(CanonicalField.EXPENSE_ID, ""), self._sheet, row.index)
        return row

    def update_record(self, expense_id: str, changes: Mapping[CanonicalField, Any]) -> RemoteRow:
        row = self._require_row(expense_id)
        merged: Dict[CanonicalField, Any] = dict(changes)
        merged.setdefault(CanonicalField.UPDATED_AT, utc_timestamp())
        self.write_fields(row.index, merged)
        logger.info("Updated expense %s on %s row %d", expense_id, self._sheet, row.index)
        return row

    def mark_deleted(self, expense_id: str) -> RemoteRow:
        """Soft-delete ``expense_id`` by flipping its Status cell."""

        return self.update_record(expense_id, {CanonicalField.STATUS: STATUS_DELETED})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_records(self, *, include_deleted: bool = False) -> List[Dict[str, str]]:
        """Return the worksheet expenses as canonical dicts, newest first."""

        width = self._mapping.span
        rows = self._client.read_range(RangeSpec(self._sheet, 0, FIRST_DATA_ROW, width - 1, None))
        records: List[Dict[str, str]] = []
        for offset, row in enumerate(rows):
            record = {
                canonical.value: _cell(row, position).strip()
                for canonical, position in self._mapping.positions.items()
            }
            if not any(record.values()):
                continue
            status = record.get(CanonicalField.STATUS.value) or STATUS_ACTIVE
            record[CanonicalField.STATUS.value] = status
            if status == STATUS_DELETED and not include_deleted:
                continue
            record["row"] = str(FIRST_DATA_ROW + offset)
            records.append(record)
        records.reverse()
        return records


__all__ = [
    "FIRST_DATA_ROW",
    "RemoteRow",
    "RowAllocator",
    "RowNotFoundError",
    "STATUS_ACTIVE",
    "STATUS_DELETED",
    "build_expense_values",
    "hyperlink_formula",
    "utc_timestamp",
]
