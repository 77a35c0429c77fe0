"""Record a new expense, delivering it immediately when possible."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from receiptsync.auth import AuthUnavailable
from receiptsync.dropdowns import ListName
from receiptsync.models import ELIGIBLE_STATUSES, ExpenseRecord, QueueItem, QueueKind
from receiptsync.offline_queue import OfflineQueue, QueueStorageError
from receiptsync.receipt_pdf import prepare_receipt
from receiptsync.storage_paths import receipt_filename, receipt_folder_path
from receiptsync.sync_engine import (
    REMOTE_ERRORS,
    ClientFactory,
    FilenameFn,
    FolderPathFn,
    RemoteSession,
    deliver_expense,
)

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    expense_id: str
    queued: bool
    row: Optional[int] = None
    file_id: str = ""
    link: str = ""

    @property
    def message(self) -> str:
        if self.queued:
            return "Saved to queue. Will upload when online."
        return "Receipt saved successfully."


class CaptureService:
    """Deliver a captured receipt online, falling back to the offline queue.

    The expense id is fixed before the first remote call, so an online attempt
    that fails half way is finished by the queue without writing a second row.
    A receipt that was already uploaded is queued with its remote file id and
    is not uploaded again.
    """

    def __init__(
        self,
        queue: OfflineQueue,
        connect: ClientFactory,
        *,
        auth,
        worksheet_title: str,
        categories_tab: str = "Chart of Accounts",
        lists_tab: str = "Lists",
        is_online: Optional[Callable[[], bool]] = None,
        folder_path: FolderPathFn = receipt_folder_path,
        filename: FilenameFn = receipt_filename,
        enrich_lists: bool = True,
    ) -> None:
        self._queue = queue
        self._connect = connect
        self._auth = auth
        self._worksheet_title = worksheet_title
        self._categories_tab = categories_tab
        self._lists_tab = lists_tab
        self._is_online = is_online or (lambda: True)
        self._folder_path = folder_path
        self._filename = filename
        self._enrich_lists = enrich_lists

    def capture(self, record: ExpenseRecord, document: bytes) -> CaptureResult:
        """Save ``record`` with its receipt ``document`` (PDF, JPEG or PNG).

        :class:`~receiptsync.offline_queue.QueueStorageError` propagates: when
        the expense can neither be delivered nor queued the caller must know.
        """

        pdf, content_type = prepare_receipt(document)
        item = QueueItem.for_expense(record, pdf, content_type=content_type)

        session = self._try_open_session()
        if session is not None:
            try:
                row = deliver_expense(
                    item,
                    session,
                    folder_path=self._folder_path,
                    filename=self._filename,
                )
            except Exception as exc:
                if isinstance(exc, REMOTE_ERRORS):
                    logger.warning("Online upload failed for %s, falling back to queue: %s", item.short_id, exc)
                else:
                    logger.exception("Unexpected error delivering %s, falling back to queue", item.short_id)
            else:
                logger.info("Captured expense %s online (row %s)", item.id, row)
                self._enrich(record, session)
                return CaptureResult(
                    expense_id=item.id,
                    queued=False,
                    row=row,
                    file_id=item.remote_file_id,
                    link=item.remote_link,
                )

        self._queue.enqueue(item)
        self._enrich(record, None)
        return CaptureResult(
            expense_id=item.id,
            queued=True,
            file_id=item.remote_file_id,
            link=item.remote_link,
        )

    def pending_count(self) -> int:
        return self._queue.count(ELIGIBLE_STATUSES)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _try_open_session(self) -> Optional[RemoteSession]:
        if not self._is_online():
            return None
        try:
            if self._auth.get_access_token() is None:
                return None
        except AuthUnavailable as exc:
            logger.info("Google is unreachable, queueing: %s", exc)
            return None
        try:
            clients = self._connect()
        except Exception as exc:
            logger.warning("Could not connect to Google: %s", exc)
            return None
        return RemoteSession(
            clients,
            self._worksheet_title,
            categories_tab=self._categories_tab,
            lists_tab=self._lists_tab,
        )

    def _list_values(self, record: ExpenseRecord) -> List[tuple]:
        values = []
        if record.vendor.strip():
            values.append((ListName.VENDOR, record.vendor.strip()))
        if record.property.strip():
            values.append((ListName.PROPERTY, record.property.strip()))
        return values

    def _enrich(self, record: ExpenseRecord, session: Optional[RemoteSession]) -> None:
        """Add the vendor and property to the dropdown lists, best effort."""

        if not self._enrich_lists:
            return
        for list_name, value in self._list_values(record):
            if session is not None:
                try:
                    session.dropdowns().add_list_item(list_name, value)
                    continue
                except Exception as exc:
                    logger.info("Deferring %s list update for %r: %s", list_name.value.lower(), value, exc)
            item = QueueItem(kind=QueueKind.ADD_LIST_ITEM, payload={"list": list_name.value, "value": value})
            try:
                self._queue.enqueue(item)
            except QueueStorageError as exc:
                logger.warning("Could not queue %s list update for %r: %s", list_name.value.lower(), value, exc)


__all__ = ["CaptureResult", "CaptureService"]
