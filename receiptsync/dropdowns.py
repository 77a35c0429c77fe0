"""Dropdown sources kept in the spreadsheet: categories, vendors and properties."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from receiptsync.sheets_client import (
    RAW,
    RangeSpec,
    SheetsApiResponseError,
    SheetsNotFoundError,
)

logger = logging.getLogger(__name__)

CATEGORY_FIRST_ROW = 2
CATEGORY_LIMIT = 500
ANNUAL_TOTAL = "annual total"


class StopReason(str, Enum):
    BLANK = "BLANK"
    ANNUAL_TOTAL = "ANNUAL_TOTAL"
    CAP = "CAP"
    ERROR = "ERROR"


class ListName(str, Enum):
    VENDOR = "VENDOR"
    PROPERTY = "PROPERTY"

    @property
    def column(self) -> int:
        return 0 if self is ListName.VENDOR else 1


@dataclass
class CategoryResult:
    categories: List[str] = field(default_factory=list)
    stop_reason: StopReason = StopReason.CAP
    stop_index: int = CATEGORY_FIRST_ROW


@dataclass
class ListsResult:
    vendors: List[str] = field(default_factory=list)
    properties: List[str] = field(default_factory=list)


class DropdownSource:
    """Read and extend the lookup lists that feed the expense form."""

    def __init__(self, client, *, categories_tab: str = "Chart of Accounts", lists_tab: str = "Lists") -> None:
        self._client = client
        self._categories_tab = categories_tab
        self._lists_tab = lists_tab

    def get_categories(self) -> CategoryResult:
        """Return column A of the categories tab up to the first blank or "Annual Total" cell."""

        last_row = CATEGORY_FIRST_ROW + CATEGORY_LIMIT - 1
        spec = RangeSpec(self._categories_tab, 0, CATEGORY_FIRST_ROW, 0, last_row)
        try:
            rows = self._client.read_range(spec)
        except (SheetsApiResponseError, SheetsNotFoundError) as exc:
            logger.error("Error fetching categories: %s", exc)
            return CategoryResult(stop_reason=StopReason.ERROR, stop_index=0)

        if not rows:
            return CategoryResult(stop_reason=StopReason.BLANK)

        result = CategoryResult()
        for offset, row in enumerate(rows[:CATEGORY_LIMIT]):
            value = (row[0] if row else "").strip()
            result.stop_index = CATEGORY_FIRST_ROW + offset
            if not value:
                result.stop_reason = StopReason.BLANK
                break
            if value.lower() == ANNUAL_TOTAL:
                result.stop_reason = StopReason.ANNUAL_TOTAL
                break
            result.categories.append(value)
        else:
            # Google trims trailing blanks; a short read ended on an empty cell.
            if len(rows) < CATEGORY_LIMIT:
                result.stop_reason = StopReason.BLANK
                result.stop_index = CATEGORY_FIRST_ROW + len(rows)
        return result

    def get_lists(self) -> ListsResult:
        """Return the sorted, de-duplicated vendor and property lists."""

        try:
            rows = self._client.read_range(RangeSpec(self._lists_tab, 0, 2, 1, None))
        except (SheetsApiResponseError, SheetsNotFoundError) as exc:
            logger.warning("Lists tab %s unavailable: %s", self._lists_tab, exc)
            return ListsResult()

        vendors = set()
        properties = set()
        for row in rows:
            if len(row) > 0 and row[0].strip():
                vendors.add(row[0].strip())
            if len(row) > 1 and row[1].strip():
                properties.add(row[1].strip())
        return ListsResult(vendors=sorted(vendors), properties=sorted(properties))

    def add_list_item(self, list_name: ListName, value: str) -> bool:
        """Add ``value`` to the list unless it is already present.

        The comparison ignores case.  Returns ``True`` when a cell was written.
        Remote failures propagate so the caller can retry later.
        """

        cleaned = (value or "").strip()
        if not cleaned:
            return False
        list_name = ListName(list_name)
        column = list_name.column
        rows = self._client.read_range(RangeSpec.column(self._lists_tab, column, start_row=2))
        existing = [(row[0] if row else "").strip() for row in rows]
        if any(item.lower() == cleaned.lower() for item in existing):
            return False

        target = 2 + len(existing)
        for offset, item in enumerate(existing):
            if not item:
                target = 2 + offset
                break
        self._client.write_range(RangeSpec(self._lists_tab, column, target, column, target), [[cleaned]], mode=RAW)
        logger.info("Added %s %r to %s", list_name.value.lower(), cleaned, self._lists_tab)
        return True


__all__ = [
    "CATEGORY_LIMIT",
    "CategoryResult",
    "DropdownSource",
    "ListName",
    "ListsResult",
    "StopReason",
]
