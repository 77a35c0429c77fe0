"""Map the worksheet header row onto the canonical expense fields.

The expense worksheet is maintained by people: columns get renamed, moved and
inserted without notice.  Instead of hard-coding positions the header row is
read once per sync session and every canonical field is located by its
header text.  Matching is case-insensitive; a handful of fields whose header
text tends to carry decorations ("Paid Via (card / cash)") also match on a
substring.

The metadata columns that the client owns (ExpenseId, Member, ReceiptFileId,
Status, CreatedAt, UpdatedAt) are appended to the right of the existing header
the first time they are needed.  The check is name based, so running it twice
or from two processes never produces duplicate headers.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from receiptsync.sheets_client import RAW, RangeSpec

logger = logging.getLogger(__name__)

HEADER_SCAN_COLUMNS = 200


class CanonicalField(str, Enum):
    DATE = "Date"
    VENDOR = "Vendor"
    DESCRIPTION = "Description"
    AMOUNT = "Amount"
    CATEGORY = "Category"
    PROPERTY = "Property"
    PAID_VIA = "PaidVia"
    IS_1099 = "Is1099"
    NOTES = "Notes"
    CLASS = "Class"
    RECEIPT_LINK = "ReceiptLink"
    MEMBER = "Member"
    EXPENSE_ID = "ExpenseId"
    RECEIPT_FILE_ID = "ReceiptFileId"
    STATUS = "Status"
    CREATED_AT = "CreatedAt"
    UPDATED_AT = "UpdatedAt"


# Order matters: missing metadata headers are written in this order.
METADATA_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField.EXPENSE_ID,
    CanonicalField.MEMBER,
    CanonicalField.RECEIPT_FILE_ID,
    CanonicalField.STATUS,
    CanonicalField.CREATED_AT,
    CanonicalField.UPDATED_AT,
)

METADATA_LABELS: Mapping[CanonicalField, str] = {
    CanonicalField.EXPENSE_ID: "ExpenseId",
    CanonicalField.MEMBER: "Member",
    CanonicalField.RECEIPT_FILE_ID: "ReceiptFileId",
    CanonicalField.STATUS: "Status",
    CanonicalField.CREATED_AT: "CreatedAt",
    CanonicalField.UPDATED_AT: "UpdatedAt",
}

EXACT_ALIASES: Mapping[CanonicalField, Tuple[str, ...]] = {
    CanonicalField.DATE: ("date", "expense date", "transaction date"),
    CanonicalField.VENDOR: ("vendor", "payee", "merchant"),
    CanonicalField.DESCRIPTION: ("description", "memo"),
    CanonicalField.AMOUNT: ("amount", "total", "amount ($)"),
    CanonicalField.CATEGORY: ("category", "account"),
    CanonicalField.PROPERTY: ("property", "property address", "property id"),
    CanonicalField.PAID_VIA: ("paid via", "payment method"),
    CanonicalField.IS_1099: ("1099", "is 1099", "1099?"),
    CanonicalField.NOTES: ("notes", "note", "comments"),
    CanonicalField.CLASS: ("class", "classification"),
    CanonicalField.RECEIPT_LINK: ("receipt", "receipt link", "receipt url"),
    CanonicalField.MEMBER: ("member", "member name"),
    CanonicalField.EXPENSE_ID: ("expenseid", "expense id"),
    CanonicalField.RECEIPT_FILE_ID: ("receiptfileid", "receipt file id"),
    CanonicalField.STATUS: ("status",),
    CanonicalField.CREATED_AT: ("createdat", "created at", "created"),
    CanonicalField.UPDATED_AT: ("updatedat", "updated at", "updated"),
}

SUBSTRING_ALIASES: Mapping[CanonicalField, Tuple[str, ...]] = {
    CanonicalField.PAID_VIA: ("paid via",),
    CanonicalField.IS_1099: ("1099",),
    CanonicalField.PROPERTY: ("property",),
}

_WHITESPACE = re.compile(r"\s+")

_EXACT_LOOKUP: Dict[str, CanonicalField] = {
    alias: canonical for canonical, aliases in EXACT_ALIASES.items() for alias in aliases
}


class SchemaError(RuntimeError):
    """Raised when a required worksheet column cannot be found or provisioned."""


def normalise_header(value: object) -> str:
    return _WHITESPACE.sub(" ", str(value or "")).strip().lower()


@dataclass(frozen=True)
class ColumnMapping:
    """Canonical field to zero-based column position, derived from a header row."""

    positions: Mapping[CanonicalField, int] = field(default_factory=dict)
    headers: Tuple[str, ...] = ()

    def get(self, canonical: CanonicalField) -> Optional[int]:
        return self.positions.get(canonical)

    def __contains__(self, canonical: object) -> bool:
        return canonical in self.positions

    def require(self, canonical: CanonicalField) -> int:
        position = self.positions.get(canonical)
        if position is None:
            raise SchemaError(f"Worksheet has no column for {canonical.value}")
        return position

    def missing(self, fields: Iterable[CanonicalField]) -> List[CanonicalField]:
        return [canonical for canonical in fields if canonical not in self.positions]

    @property
    def header_width(self) -> int:
        """Number of columns up to and including the last non-empty header cell."""

        return last_header_index(self.headers) + 1

    @property
    def span(self) -> int:
        """Number of columns a full-row read must cover."""

        furthest = max(self.positions.values(), default=-1)
        return max(self.header_width, furthest + 1, 1)


def last_header_index(headers: Sequence[str]) -> int:
    for index in range(len(headers) - 1, -1, -1):
        if str(headers[index] or "").strip():
            return index
    return -1


def resolve_headers(headers: Sequence[str]) -> ColumnMapping:
    """Return the :class:`ColumnMapping` for a literal header row."""

    positions: Dict[CanonicalField, int] = {}
    claimed = set()
    normalised = [normalise_header(header) for header in headers]

    for index, text in enumerate(normalised):
        if not text:
            continue
        canonical = _EXACT_LOOKUP.get(text)
        if canonical is not None and canonical not in positions:
            positions[canonical] = index
            claimed.add(index)

    for index, text in enumerate(normalised):
        if not text or index in claimed:
            continue
        for canonical, needles in SUBSTRING_ALIASES.items():
            if canonical in positions:
                continue
            if any(needle in text for needle in needles):
                positions[canonical] = index
                claimed.add(index)
                break

    return ColumnMapping(positions=positions, headers=tuple(str(header or "") for header in headers))


class ColumnResolver:
    """Resolve and cache the column mapping of one worksheet for a session."""

    def __init__(self, client, sheet: str) -> None:
        self._client = client
        self._sheet = sheet
        self._mapping: Optional[ColumnMapping] = None

    @property
    def sheet(self) -> str:
        return self._sheet

    def _read_header(self) -> List[str]:
        rows = self._client.read_range(RangeSpec(self._sheet, 0, 1, HEADER_SCAN_COLUMNS - 1, 1))
        return list(rows[0]) if rows else []

    def resolve(self) -> ColumnMapping:
        """Return the session mapping, reading the header row on first use."""

        if self._mapping is None:
            self._mapping = resolve_headers(self._read_header())
            logger.debug(
                "Resolved %d columns on %s: %s",
                len(self._mapping.positions),
                self._sheet,
                {key.value: value for key, value in self._mapping.positions.items()},
            )
        return self._mapping

    def refresh(self) -> ColumnMapping:
        self._mapping = None
        return self.resolve()

    def ensure_metadata_columns(self) -> ColumnMapping:
        """Append any missing metadata headers and return the refreshed mapping."""

        mapping = self.resolve()
        if not mapping.missing(METADATA_FIELDS):
            return mapping

        headers = self._read_header()
        missing = resolve_headers(headers).missing(METADATA_FIELDS)
        if missing:
            start = last_header_index(headers) + 1
            labels = [METADATA_LABELS[canonical] for canonical in missing]
            spec = RangeSpec(self._sheet, start, 1, start + len(labels) - 1, 1)
            self._client.write_range(spec, [labels], mode=RAW)
            logger.info("Added metadata columns to %s: %s", self._sheet, ", ".join(labels))
        return self.refresh()


__all__ = [
    "CanonicalField",
    "ColumnMapping",
    "ColumnResolver",
    "EXACT_ALIASES",
    "METADATA_FIELDS",
    "METADATA_LABELS",
    "SUBSTRING_ALIASES",
    "SchemaError",
    "last_header_index",
    "normalise_header",
    "resolve_headers",
]
