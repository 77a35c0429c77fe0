"""Value types shared by the queue, the sync engine and the capture path."""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class QueueKind(str, Enum):
    UPLOAD_AND_APPEND = "UPLOAD_AND_APPEND"
    UPDATE_ROW = "UPDATE_ROW"
    DELETE = "DELETE"
    ADD_LIST_ITEM = "ADD_LIST_ITEM"


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    RETRY = "RETRY"
    FAILED = "FAILED"


ELIGIBLE_STATUSES = (QueueStatus.PENDING, QueueStatus.RETRY)


@dataclass
class ExpenseRecord:
    """Semantic expense data captured by the user.

    The record carries everything needed to rebuild the worksheet row without
    going back to the form: the acting member is stored alongside the
    expense fields.
    """

    date: str
    vendor: str
    amount: str
    category: str = ""
    description: str = ""
    property: str = ""
    paid_via: str = ""
    is_1099: str = "No"
    notes: str = ""
    classification: str = "OpEx"
    member: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ExpenseRecord":
        known = {name for name in cls.__dataclass_fields__}
        values = {key: "" if value is None else str(value) for key, value in payload.items() if key in known}
        return cls(**values)

    def amount_value(self) -> Any:
        """Return the amount as a float when it parses, otherwise the raw text."""

        text = (self.amount or "").replace(",", "").replace("$", "").strip()
        try:
            return float(text)
        except ValueError:
            return self.amount


@dataclass
class QueueItem:
    """One durable unit of work waiting to reach the remote stores."""

    kind: QueueKind
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    blob: Optional[bytes] = None
    content_type: str = "application/pdf"
    remote_file_id: str = ""
    remote_link: str = ""
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    last_error: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def has_remote_blob(self) -> bool:
        return bool(self.remote_file_id)

    def expense(self) -> ExpenseRecord:
        return ExpenseRecord.from_dict(self.payload)

    @classmethod
    def for_expense(
        cls,
        record: ExpenseRecord,
        blob: Optional[bytes],
        *,
        content_type: str = "application/pdf",
        item_id: Optional[str] = None,
    ) -> "QueueItem":
        item = cls(
            kind=QueueKind.UPLOAD_AND_APPEND,
            payload=record.to_dict(),
            blob=blob,
            content_type=content_type,
        )
        if item_id:
            item.id = item_id
        return item


__all__ = [
    "ELIGIBLE_STATUSES",
    "ExpenseRecord",
    "QueueItem",
    "QueueKind",
    "QueueStatus",
]
