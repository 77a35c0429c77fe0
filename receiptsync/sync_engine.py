"""Drain the offline queue into Google Drive and Google Sheets.

Each queued item is a multi-step operation against two stores that have no
transactions.  The engine makes every step resumable instead:

* the receipt upload is recorded in the queue the moment it succeeds, so a
  later attempt never uploads the same document twice;
* the expense id doubles as an idempotency key in the worksheet, so a row that
  was written before a crash is detected and not written again;
* failures are retried on later drains until the retry ceiling is exceeded,
  at which point the item is parked as ``FAILED`` for manual attention.

Only one drain runs at a time.  Overlapping triggers (timer, connectivity
restored, manual) return immediately with ``skipped="busy"``.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from receiptsync.auth import AuthenticationRequired, AuthUnavailable
from receiptsync.columns import CanonicalField, ColumnResolver, SchemaError
from receiptsync.drain_lock import ProcessLock
from receiptsync.drive_client import DriveApiResponseError, DriveAuthError, DriveClient
from receiptsync.dropdowns import DropdownSource, ListName
from receiptsync.models import ExpenseRecord, QueueItem, QueueKind, QueueStatus
from receiptsync.offline_queue import OfflineQueue, QueueStorageError
from receiptsync.rows import RowAllocator, RowNotFoundError, build_expense_values
from receiptsync.sheets_client import (
    SheetsApiResponseError,
    SheetsAuthError,
    SheetsClient,
    SheetsNotFoundError,
)
from receiptsync.storage_paths import receipt_filename, receipt_folder_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5

SKIP_BUSY = "busy"
SKIP_OFFLINE = "offline"
SKIP_REAUTHORIZE = "reauthorize"
SKIP_STORAGE = "storage"

LogCallback = Callable[[str], None]
FolderPathFn = Callable[[ExpenseRecord], Sequence[str]]
FilenameFn = Callable[[ExpenseRecord, str, str], str]

_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
}


class InvalidQueueItem(ValueError):
    """Raised when a queued payload cannot be turned into a remote operation."""


AUTH_ERRORS = (AuthenticationRequired, SheetsAuthError, DriveAuthError)
PERMANENT_ERRORS = (SchemaError, RowNotFoundError, SheetsNotFoundError, InvalidQueueItem)
TRANSIENT_ERRORS = (SheetsApiResponseError, DriveApiResponseError, AuthUnavailable)
REMOTE_ERRORS = AUTH_ERRORS + PERMANENT_ERRORS + TRANSIENT_ERRORS


@dataclass
class RemoteClients:
    sheets: Any
    drive: Any


ClientFactory = Callable[[], RemoteClients]


@dataclass
class DrainReport:
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.skipped and not self.processed:
            return f"Sync skipped ({self.skipped})"
        text = (
            f"Processed {self.processed}: {self.succeeded} synced, "
            f"{self.retried} will retry, {self.failed} failed"
        )
        if self.skipped:
            text += f" (stopped: {self.skipped})"
        return text


def google_connector(auth, spreadsheet_id: str, drive_folder_id: Optional[str]) -> ClientFactory:
    """Return a factory building fresh Sheets and Drive clients from ``auth``."""

    def connect() -> RemoteClients:
        credentials = auth.credentials()
        return RemoteClients(
            sheets=SheetsClient(spreadsheet_id, credentials=credentials),
            drive=DriveClient(drive_folder_id, credentials=credentials),
        )

    return connect


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get((content_type or "").lower(), "bin")


class RemoteSession:
    """Remote handles shared by the items of one drain.

    The column mapping is resolved at most once per session and discarded
    with it, so header edits made between drains are always picked up.
    """

    def __init__(
        self,
        clients: RemoteClients,
        worksheet_title: str,
        *,
        categories_tab: str = "Chart of Accounts",
        lists_tab: str = "Lists",
    ) -> None:
        self.sheets = clients.sheets
        self.drive = clients.drive
        self._resolver = ColumnResolver(clients.sheets, worksheet_title)
        self._allocator: Optional[RowAllocator] = None
        self._categories_tab = categories_tab
        self._lists_tab = lists_tab

    def allocator(self) -> RowAllocator:
        if self._allocator is None:
            mapping = self._resolver.ensure_metadata_columns()
            self._allocator = RowAllocator(self.sheets, self._resolver.sheet, mapping)
        return self._allocator

    def dropdowns(self) -> DropdownSource:
        return DropdownSource(self.sheets, categories_tab=self._categories_tab, lists_tab=self._lists_tab)


def deliver_expense(
    item: QueueItem,
    session: RemoteSession,
    *,
    folder_path: FolderPathFn = receipt_folder_path,
    filename: FilenameFn = receipt_filename,
    on_uploaded: Optional[Callable[[str, str], None]] = None,
) -> Optional[int]:
    """Upload the receipt of ``item`` (unless already uploaded) and write its row.

    ``on_uploaded(file_id, link)`` runs right after a successful upload and
    before any worksheet call.  Returns the row written, or ``None`` when a
    row with this expense id already existed.
    """

    try:
        record = item.expense()
    except (TypeError, AttributeError) as exc:
        raise InvalidQueueItem(f"Expense payload of {item.id} is malformed: {exc}") from exc
    if not item.has_remote_blob and item.blob:
        uploaded = session.drive.upload(
            item.blob,
            item.content_type,
            list(folder_path(record)),
            filename(record, item.short_id, extension_for(item.content_type)),
        )
        if on_uploaded is not None:
            on_uploaded(uploaded.id, uploaded.view_link)
        item.remote_file_id = uploaded.id
        item.remote_link = uploaded.view_link

    allocator = session.allocator()
    existing = allocator.find_row_by_key(item.id)
    if existing is not None:
        logger.info("Expense %s already present on row %d", item.id, existing.index)
        return None
    values = build_expense_values(
        record,
        expense_id=item.id,
        file_id=item.remote_file_id,
        link=item.remote_link,
    )
    return allocator.append_record(values).index


class SyncEngine:
    """Replay queued items against the remote stores."""

    def __init__(
        self,
        queue: OfflineQueue,
        connect: ClientFactory,
        *,
        auth,
        worksheet_title: str,
        categories_tab: str = "Chart of Accounts",
        lists_tab: str = "Lists",
        max_retries: int = DEFAULT_MAX_RETRIES,
        is_online: Optional[Callable[[], bool]] = None,
        folder_path: FolderPathFn = receipt_folder_path,
        filename: FilenameFn = receipt_filename,
        log_callback: Optional[LogCallback] = None,
        process_lock: Optional[ProcessLock] = None,
    ) -> None:
        self._queue = queue
        self._connect = connect
        self._auth = auth
        self._worksheet_title = worksheet_title
        self._categories_tab = categories_tab
        self._lists_tab = lists_tab
        self._max_retries = max(0, int(max_retries))
        self._is_online = is_online or (lambda: True)
        self._folder_path = folder_path
        self._filename = filename
        self._log_callback = log_callback
        self._lock = threading.Lock()
        self._process_lock = process_lock

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------
    def drain(self) -> DrainReport:
        """Process every eligible item once and return what happened."""

        if not self._lock.acquire(blocking=False):
            return DrainReport(skipped=SKIP_BUSY)
        try:
            if self._process_lock is not None and not self._process_lock.try_acquire():
                return DrainReport(skipped=SKIP_BUSY)
            try:
                report = self._drain_locked()
            finally:
                if self._process_lock is not None:
                    self._process_lock.release()
        finally:
            self._lock.release()
        if report.processed or report.skipped == SKIP_REAUTHORIZE:
            self._log(report.summary())
        return report

    def _drain_locked(self) -> DrainReport:
        report = DrainReport()
        if not self._is_online():
            report.skipped = SKIP_OFFLINE
            return report
        try:
            token = self._auth.get_access_token()
        except AuthUnavailable as exc:
            logger.warning("Google is unreachable, treating as offline: %s", exc)
            report.skipped = SKIP_OFFLINE
            return report
        if token is None:
            report.skipped = SKIP_REAUTHORIZE
            return report

        try:
            items = self._queue.list_pending()
        except QueueStorageError as exc:
            logger.error("Could not read the offline queue: %s", exc)
            report.skipped = SKIP_STORAGE
            report.errors.append(str(exc))
            return report
        if not items:
            return report

        try:
            clients = self._connect()
        except AuthUnavailable as exc:
            logger.warning("Google is unreachable, treating as offline: %s", exc)
            report.skipped = SKIP_OFFLINE
            return report
        except AUTH_ERRORS as exc:
            logger.warning("Cannot connect to Google: %s", exc)
            report.skipped = SKIP_REAUTHORIZE
            return report

        session = RemoteSession(
            clients,
            self._worksheet_title,
            categories_tab=self._categories_tab,
            lists_tab=self._lists_tab,
        )
        for item in items:
            try:
                keep_going = self._run_item(item, session, report)
            except QueueStorageError as exc:
                logger.error("Offline queue write failed for %s: %s", item.id, exc)
                report.skipped = SKIP_STORAGE
                report.errors.append(str(exc))
                break
            if not keep_going:
                break
        return report

    def _run_item(self, item: QueueItem, session: RemoteSession, report: DrainReport) -> bool:
        try:
            self._process(item, session)
        except AUTH_ERRORS as exc:
            self._log(f"Google sign-in required, stopping sync: {exc}")
            report.skipped = SKIP_REAUTHORIZE
            report.errors.append(str(exc))
            return False
        except PERMANENT_ERRORS as exc:
            logger.error("Item %s (%s) cannot be synced: %s", item.id, item.kind.value, exc)
            self._mark_failed(item, exc)
            report.failed += 1
            report.errors.append(str(exc))
        except QueueStorageError:
            raise
        except Exception as exc:
            if isinstance(exc, TRANSIENT_ERRORS):
                logger.warning("Item %s (%s) failed: %s", item.id, item.kind.value, exc)
            else:
                logger.exception("Unexpected error while syncing %s", item.id)
            status = self._record_retry(item, exc)
            if status is QueueStatus.FAILED:
                report.failed += 1
            else:
                report.retried += 1
            report.errors.append(str(exc))
        else:
            self._queue.remove(item.id)
            report.succeeded += 1
        report.processed += 1
        return True

    # ------------------------------------------------------------------
    # Retry bookkeeping
    # ------------------------------------------------------------------
    def _record_retry(self, item: QueueItem, exc: Exception) -> QueueStatus:
        retry_count = item.retry_count + 1
        status = QueueStatus.FAILED if retry_count > self._max_retries else QueueStatus.RETRY
        self._queue.update_status(item.id, status, retry_count=retry_count, last_error=str(exc))
        if status is QueueStatus.FAILED:
            self._log(f"Giving up on {item.short_id} after {retry_count} attempts: {exc}")
        return status

    def _mark_failed(self, item: QueueItem, exc: Exception) -> None:
        retry_count = max(item.retry_count, self._max_retries) + 1
        self._queue.update_status(item.id, QueueStatus.FAILED, retry_count=retry_count, last_error=str(exc))
        self._log(f"{item.short_id} failed permanently: {exc}")

    # ------------------------------------------------------------------
    # Per-kind processing
    # ------------------------------------------------------------------
    def _process(self, item: QueueItem, session: RemoteSession) -> None:
        if item.kind is QueueKind.UPLOAD_AND_APPEND:
            self._upload_and_append(item, session)
        elif item.kind is QueueKind.UPDATE_ROW:
            expense_id = self._expense_id(item)
            session.allocator().update_record(expense_id, self._changes(item))
        elif item.kind is QueueKind.DELETE:
            session.allocator().mark_deleted(self._expense_id(item))
        elif item.kind is QueueKind.ADD_LIST_ITEM:
            try:
                list_name = ListName(str(item.payload.get("list", "")).upper())
            except ValueError as exc:
                raise InvalidQueueItem(f"Unknown list {item.payload.get('list')!r}") from exc
            session.dropdowns().add_list_item(list_name, str(item.payload.get("value", "")))
        else:  # pragma: no cover - enum is exhaustive
            raise InvalidQueueItem(f"Unsupported queue item kind {item.kind!r}")

    def _upload_and_append(self, item: QueueItem, session: RemoteSession) -> None:
        def persist_upload(file_id: str, link: str) -> None:
            self._queue.record_upload(item.id, file_id, link)
            self._log(f"Uploaded receipt for {item.short_id}")

        deliver_expense(
            item,
            session,
            folder_path=self._folder_path,
            filename=self._filename,
            on_uploaded=persist_upload,
        )

    @staticmethod
    def _expense_id(item: QueueItem) -> str:
        expense_id = str(item.payload.get("expense_id", "")).strip()
        if not expense_id:
            raise InvalidQueueItem(f"{item.kind.value} item {item.id} has no expense_id")
        return expense_id

    @staticmethod
    def _changes(item: QueueItem) -> Dict[CanonicalField, Any]:
        raw = item.payload.get("changes") or {}
        if not isinstance(raw, Mapping):
            raise InvalidQueueItem(f"Changes of {item.id} must be a mapping, got {type(raw).__name__}")
        changes: Dict[CanonicalField, Any] = {}
        for key, value in raw.items():
            try:
                changes[CanonicalField(key)] = value
            except ValueError as exc:
                raise InvalidQueueItem(f"Unknown expense field {key!r}") from exc
        return changes

    def _log(self, message: str) -> None:
        logger.info(message)
        if self._log_callback:
            try:
                self._log_callback(message)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Sync log callback failed", exc_info=True)


__all__ = [
    "AUTH_ERRORS",
    "ClientFactory",
    "DEFAULT_MAX_RETRIES",
    "DrainReport",
    "InvalidQueueItem",
    "PERMANENT_ERRORS",
    "REMOTE_ERRORS",
    "RemoteClients",
    "RemoteSession",
    "SKIP_BUSY",
    "SKIP_OFFLINE",
    "SKIP_REAUTHORIZE",
    "SKIP_STORAGE",
    "SyncEngine",
    "TRANSIENT_ERRORS",
    "deliver_expense",
    "extension_for",
    "google_connector",
]
