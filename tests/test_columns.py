from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from fakes import EXPENSE_HEADERS, FakeSheets
from receiptsync.columns import (
    METADATA_FIELDS,
    CanonicalField,
    ColumnResolver,
    SchemaError,
    resolve_headers,
)
from receiptsync.sheets_client import RAW

SHEET = "Transactions (1065)"


def test_three_headers_resolve_three_fields():
    mapping = resolve_headers(["Date", "Vendor", "Amount"])

    assert dict(mapping.positions) == {
        CanonicalField.DATE: 0,
        CanonicalField.VENDOR: 1,
        CanonicalField.AMOUNT: 2,
    }


def test_matching_ignores_case_and_whitespace():
    mapping = resolve_headers(["  DATE ", "payee", "Total", "receipt   link"])

    assert mapping.get(CanonicalField.DATE) == 0
    assert mapping.get(CanonicalField.VENDOR) == 1
    assert mapping.get(CanonicalField.AMOUNT) == 2
    assert mapping.get(CanonicalField.RECEIPT_LINK) == 3


def test_substring_aliases_match_decorated_headers():
    mapping = resolve_headers(["Date", "Paid Via (card/cash)", "Is this a 1099 vendor?", "Rental Property #"])

    assert mapping.get(CanonicalField.PAID_VIA) == 1
    assert mapping.get(CanonicalField.IS_1099) == 2
    assert mapping.get(CanonicalField.PROPERTY) == 3


def test_first_matching_header_wins_and_unknown_cells_are_ignored():
    mapping = resolve_headers(["Amount", "Total", "Mileage", "", "Amount"])

    assert mapping.get(CanonicalField.AMOUNT) == 0
    assert len(mapping.positions) == 1


def test_exact_match_beats_an_earlier_substring_match():
    mapping = resolve_headers(["Property Manager Notes", "Property"])

    assert mapping.get(CanonicalField.PROPERTY) == 1


def test_require_raises_schema_error_for_missing_field():
    mapping = resolve_headers(["Vendor"])

    with pytest.raises(SchemaError):
        mapping.require(CanonicalField.DATE)


def test_span_covers_headers_and_mapped_columns():
    mapping = resolve_headers(["Date", "", "Amount", "Formula col"])

    assert mapping.header_width == 4
    assert mapping.span == 4


def test_resolver_caches_mapping_for_the_session():
    sheets = FakeSheets({SHEET: [["Date", "Vendor", "Amount"]]})
    resolver = ColumnResolver(sheets, SHEET)

    first = resolver.resolve()
    second = resolver.resolve()

    assert first is second
    assert len(sheets.reads) == 1

    resolver.refresh()
    assert len(sheets.reads) == 2


def test_ensure_metadata_columns_appends_six_headers_once():
    sheets = FakeSheets({SHEET: [["Date", "Vendor", "Amount"]]})
    resolver = ColumnResolver(sheets, SHEET)

    mapping = resolver.ensure_metadata_columns()

    assert sheets.grid(SHEET)[0] == [
        "Date",
        "Vendor",
        "Amount",
        "ExpenseId",
        "Member",
        "ReceiptFileId",
        "Status",
        "CreatedAt",
        "UpdatedAt",
    ]
    assert [mapping.get(field) for field in METADATA_FIELDS] == [3, 4, 5, 6, 7, 8]
    assert len(sheets.writes) == 1
    spec, _rows, mode = sheets.writes[0]
    assert spec.to_a1() == "'Transactions (1065)'!D1:I1"
    assert mode == RAW

    ColumnResolver(sheets, SHEET).ensure_metadata_columns()
    assert len(sheets.writes) == 1


def test_ensure_metadata_columns_only_adds_missing_names():
    headers = EXPENSE_HEADERS + ["", "Member", "ExpenseId"]
    sheets = FakeSheets({SHEET: [headers]})

    mapping = ColumnResolver(sheets, SHEET).ensure_metadata_columns()

    row = sheets.grid(SHEET)[0]
    assert row[len(headers):] == ["ReceiptFileId", "Status", "CreatedAt", "UpdatedAt"]
    assert mapping.get(CanonicalField.MEMBER) == 12
    assert mapping.get(CanonicalField.EXPENSE_ID) == 13
    assert mapping.get(CanonicalField.UPDATED_AT) == len(headers) + 3


def test_ensure_metadata_columns_on_empty_sheet_starts_at_column_a():
    sheets = FakeSheets({SHEET: []})

    mapping = ColumnResolver(sheets, SHEET).ensure_metadata_columns()

    assert mapping.get(CanonicalField.EXPENSE_ID) == 0
    assert sheets.grid(SHEET)[0][0] == "ExpenseId"
