"""Google Sheets client helpers with robust A1 range handling.

This module centralises all direct interactions with the Google Sheets API
used by Receipt Sync.  It provides a small, well defined surface area that the
rest of the application can rely on without needing to know about HTTP
requests or googleapiclient internals:

* ``read_range``, ``write_range`` and ``append_range`` operate on a
  :class:`RangeSpec` and nothing else.  Worksheet titles are always quoted
  according to the Sheets rules and column letters come from a single
  bijective base-26 helper.
* No retries happen here.  Retrying is the job of the offline queue, which
  retries whole expenses rather than individual calls.
* Failures are classified.  An expired or revoked token surfaces as
  :class:`SheetsAuthError` so the caller can ask for a new sign-in instead of
  retrying forever, a missing spreadsheet or worksheet as
  :class:`SheetsNotFoundError`, and everything else (network, quota, 5xx) as
  :class:`SheetsApiResponseError`.
"""

from __future__ import annotations

import http.client
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, MutableSequence, Optional, Sequence

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)

USER_ENTERED = "USER_ENTERED"
RAW = "RAW"
FORMATTED_VALUE = "FORMATTED_VALUE"
FORMULA = "FORMULA"


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsAuthError(SheetsClientError):
    """Raised when the access token was rejected (HTTP 401)."""


class SheetsNotFoundError(SheetsClientError):
    """Raised when the spreadsheet or worksheet does not exist (HTTP 404)."""


class SheetsApiResponseError(SheetsClientError):
    """Raised for transient failures: network errors, quota and 5xx responses."""


def column_letter(index: int) -> str:
    """Return the A1 column letters for a zero-based column ``index``."""

    if index < 0:
        raise ValueError("Column index must be >= 0")
    letters: MutableSequence[str] = []
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def column_index(letters: str) -> int:
    """Return the zero-based column index for A1 column ``letters``."""

    text = (letters or "").strip().upper()
    if not text or not text.isalpha():
        raise ValueError(f"Invalid column letters: {letters!r}")
    value = 0
    for char in text:
        value = value * 26 + (ord(char) - 64)
    return value - 1


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if len(safe) >= 2 and safe[0] == safe[-1] and safe[0] in {"'", '"'}:
        safe = safe[1:-1].strip()
    if not safe:
        raise SheetsClientError("Worksheet title must be configured.")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


@dataclass(frozen=True)
class RangeSpec:
    """A rectangular worksheet range.

    Columns are zero-based indexes, rows are 1-based like the Sheets UI.  An
    ``end_row`` of ``None`` leaves the range open towards the bottom of the
    sheet (``A2:A``).
    """

    sheet: str
    start_col: int
    start_row: int
    end_col: Optional[int] = None
    end_row: Optional[int] = None

    def to_a1(self) -> str:
        if self.start_row < 1:
            raise ValueError("Row index must be >= 1")
        end_col = self.start_col if self.end_col is None else self.end_col
        if end_col < self.start_col:
            raise ValueError("end_col must not precede start_col")
        start = f"{column_letter(self.start_col)}{self.start_row}"
        end = column_letter(end_col)
        if self.end_row is not None:
            end = f"{end}{self.end_row}"
        return f"{quote_title(self.sheet)}!{start}:{end}"

    @classmethod
    def row(cls, sheet: str, row_index: int, width: int) -> "RangeSpec":
        """Return the range covering ``width`` columns of ``row_index``."""

        return cls(sheet, 0, row_index, max(width, 1) - 1, row_index)

    @classmethod
    def column(cls, sheet: str, col: int, *, start_row: int = 2) -> "RangeSpec":
        """Return the open range covering column ``col`` from ``start_row`` down."""

        return cls(sheet, col, start_row, col, None)


def parse_spreadsheet_id(value: str) -> str:
    """Normalise a spreadsheet identifier from raw input or URL."""

    if not value:
        return ""
    value = value.strip()
    if "/spreadsheets/d/" in value:
        value = value.split("/spreadsheets/d/", 1)[1]
        value = value.split("/", 1)[0]
    if "?" in value:
        value = value.split("?", 1)[0]
    if "#" in value:
        value = value.split("#", 1)[0]
    return value


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return 0
    resp = getattr(exc, "resp", None)
    if resp is not None:
        try:
            return int(getattr(resp, "status", 0))
        except (TypeError, ValueError):
            return 0
    return 0


def _translate_error(exc: Exception, description: str) -> SheetsClientError:
    if isinstance(exc, HttpError):
        status = http_status(exc)
        if status == 401:
            return SheetsAuthError(f"Sheets {description} rejected the access token: {exc}")
        if status == 404:
            return SheetsNotFoundError(f"Sheets {description} target not found: {exc}")
        return SheetsApiResponseError(f"Sheets {description} failed with HTTP {status}: {exc}")
    if isinstance(exc, RefreshError):
        return SheetsAuthError(f"Sheets {description} could not refresh credentials: {exc}")
    return SheetsApiResponseError(f"Sheets {description} failed: {exc}")


_TRANSLATED_ERRORS = (
    HttpError,
    RefreshError,
    TransportError,
    httplib2.HttpLib2Error,
    http.client.HTTPException,
    OSError,
)


def _execute(request, description: str) -> Dict[str, Any]:
    try:
        result = request.execute()
    except _TRANSLATED_ERRORS as exc:
        error = _translate_error(exc, description)
        logger.warning("%s", error)
        raise error from exc
    return result if isinstance(result, dict) else {}


def build_service(credentials):
    """Return a Sheets v4 service for ``credentials``."""

    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


class SheetsClient:
    """Concrete helper that speaks to Google Sheets using the REST API."""

    def __init__(self, spreadsheet_id: str, *, credentials=None, service=None) -> None:
        self._spreadsheet_id = parse_spreadsheet_id(spreadsheet_id)
        if not self._spreadsheet_id:
            raise SheetsClientError("Spreadsheet id must be configured.")
        if service is None:
            if credentials is None:
                raise SheetsAuthError("No credentials available for Google Sheets.")
            service = build_service(credentials)
        self._service = service

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def read_range(self, spec: RangeSpec, *, render: str = FORMATTED_VALUE) -> List[List[str]]:
        """Return the cell values of ``spec`` as rows of strings.

        Google trims trailing empty rows and cells, so callers must treat a
        short row as blank-padded.
        """

        request = (
            self._service.spreadsheets()
            .values()
            .get(
                spreadsheetId=self._spreadsheet_id,
                range=spec.to_a1(),
                majorDimension="ROWS",
                valueRenderOption=render,
            )
        )
        response = _execute(request, "values.get")
        return [["" if cell is None else str(cell) for cell in row] for row in response.get("values", [])]

    def write_range(
        self,
        spec: RangeSpec,
        rows: Sequence[Sequence[Any]],
        *,
        mode: str = USER_ENTERED,
    ) -> Dict[str, Any]:
        """Overwrite ``spec`` with ``rows``."""

        request = (
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=spec.to_a1(),
                valueInputOption=mode,
                body={"majorDimension": "ROWS", "values": [list(row) for row in rows]},
            )
        )
        return _execute(request, "values.update")

    def append_range(
        self,
        spec: RangeSpec,
        rows: Sequence[Sequence[Any]],
        *,
        mode: str = USER_ENTERED,
    ) -> Dict[str, Any]:
        """Append ``rows`` after the last table row detected inside ``spec``."""

        request = (
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=spec.to_a1(),
                valueInputOption=mode,
                insertDataOption="INSERT_ROWS",
                body={"majorDimension": "ROWS", "values": [list(row) for row in rows]},
            )
        )
        return _execute(request, "values.append")

    def spreadsheet_metadata(self) -> Dict[str, Any]:
        """Return the spreadsheet title and worksheet properties."""

        request = self._service.spreadsheets().get(
            spreadsheetId=self._spreadsheet_id,
            includeGridData=False,
            fields="properties.title,sheets.properties(title,sheetId)",
        )
        return _execute(request, "spreadsheets.get")

    def worksheet_titles(self, metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        if metadata is None:
            metadata = self.spreadsheet_metadata()
        titles: List[str] = []
        for sheet in metadata.get("sheets", []):
            props = sheet.get("properties", {}) if isinstance(sheet, dict) else {}
            title = props.get("title")
            if isinstance(title, str):
                titles.append(title)
        return titles


__all__ = [
    "FORMATTED_VALUE",
    "FORMULA",
    "RAW",
    "RangeSpec",
    "SCOPES",
    "SheetsApiResponseError",
    "SheetsAuthError",
    "SheetsClient",
    "SheetsClientError",
    "SheetsNotFoundError",
    "USER_ENTERED",
    "build_service",
    "column_index",
    "column_letter",
    "http_status",
    "parse_spreadsheet_id",
    "quote_title",
]
