"""Default Drive folder layout and file naming for receipts."""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import List

from receiptsync.models import ExpenseRecord

_UNSAFE = re.compile(r"[^A-Za-z0-9 ._-]+")


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime((value or "").strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return date.today()


def _safe(value: str, fallback: str) -> str:
    cleaned = _UNSAFE.sub("", value or "").strip()
    return cleaned[:60] or fallback


def receipt_folder_path(record: ExpenseRecord) -> List[str]:
    """Return ``[member, year, "MM"]`` for the receipt's expense date."""

    when = _parse_date(record.date)
    return [_safe(record.member, "Unassigned"), f"{when:%Y}", f"{when:%m}"]


def receipt_filename(record: ExpenseRecord, short_id: str, extension: str = "pdf") -> str:
    when = _parse_date(record.date)
    amount = record.amount_value()
    amount_text = f"{amount:.2f}" if isinstance(amount, float) else _safe(str(amount), "0")
    vendor = _safe(record.vendor, "Unknown").replace(" ", "-")
    return f"{when:%Y-%m-%d}_{vendor}_{amount_text}_{short_id}.{extension}"


__all__ = ["receipt_filename", "receipt_folder_path"]
