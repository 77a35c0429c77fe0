"""Command line entry point for Receipt Sync."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from receiptsync import __version__
from receiptsync.auth import AuthenticationRequired, AuthSession, AuthUnavailable, MemberNotAllowedError
from receiptsync.auto_sync import AutoSyncScheduler, ConnectivityMonitor
from receiptsync.capture import CaptureService
from receiptsync.columns import ColumnResolver
from receiptsync.drain_lock import ProcessLock
from receiptsync.dropdowns import DropdownSource, StopReason
from receiptsync.logging_config import configure_logging, get_log_path
from receiptsync.models import ELIGIBLE_STATUSES, ExpenseRecord, QueueStatus
from receiptsync.offline_queue import OfflineQueue, QueueStorageError
from receiptsync.receipt_pdf import UnsupportedReceiptError
from receiptsync.rows import RowAllocator
from receiptsync.sync_engine import REMOTE_ERRORS, SKIP_REAUTHORIZE, SKIP_STORAGE, SyncEngine, google_connector
from settings import ReceiptSyncSettings, load_settings

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: ReceiptSyncSettings
    queue: OfflineQueue
    auth: AuthSession
    monitor: ConnectivityMonitor

    def connector(self):
        return google_connector(self.auth, self.settings.spreadsheet_id, self.settings.drive_folder_id)

    def engine(self) -> SyncEngine:
        return SyncEngine(
            self.queue,
            self.connector(),
            auth=self.auth,
            worksheet_title=self.settings.worksheet_title,
            categories_tab=self.settings.categories_tab,
            lists_tab=self.settings.lists_tab,
            max_retries=self.settings.max_retries,
            is_online=self.monitor.is_online,
            log_callback=print,
            process_lock=ProcessLock.for_queue(self.queue.path),
        )

    def capture_service(self) -> CaptureService:
        return CaptureService(
            self.queue,
            self.connector(),
            auth=self.auth,
            worksheet_title=self.settings.worksheet_title,
            categories_tab=self.settings.categories_tab,
            lists_tab=self.settings.lists_tab,
            is_online=self.monitor.is_online,
        )


def build_runtime(settings: ReceiptSyncSettings | None = None) -> Runtime:
    settings = settings or load_settings()
    return Runtime(
        settings=settings,
        queue=OfflineQueue(),
        auth=AuthSession(
            settings.client_secret_path,
            settings.token_path,
            allowed_members=settings.allowed_members,
        ),
        monitor=ConnectivityMonitor(),
    )


def _require_configured(runtime: Runtime) -> bool:
    if runtime.settings.is_configured:
        return True
    print("Error: spreadsheet_id is not configured. Set it in settings.json or RECEIPTSYNC_SPREADSHEET_ID.", file=sys.stderr)
    return False


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def command_status(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        pending = runtime.queue.count(ELIGIBLE_STATUSES)
        failed = runtime.queue.count([QueueStatus.FAILED])
    except QueueStorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        signed_in = "yes" if runtime.auth.get_access_token() is not None else "no"
    except AuthUnavailable:
        signed_in = "yes (token refresh pending)"
    print(f"Receipt Sync  : {__version__}")
    print(f"Spreadsheet   : {runtime.settings.spreadsheet_id or 'not configured'}")
    print(f"Worksheet     : {runtime.settings.worksheet_title}")
    print(f"Signed in     : {signed_in}")
    print(f"Online        : {'yes' if runtime.monitor.is_online() else 'no'}")
    print(f"Pending items : {pending}")
    print(f"Failed items  : {failed}")
    print(f"Log file      : {get_log_path()}")
    return 0


def command_login(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        runtime.auth.sign_in()
        identity = runtime.auth.fetch_identity()
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except MemberNotAllowedError as exc:
        runtime.auth.sign_out()
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (AuthenticationRequired, AuthUnavailable) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Signed in as {identity.email} ({identity.member})")
    return 0


def command_sync(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if not _require_configured(runtime):
        return 1
    report = runtime.engine().drain()
    print(report.summary())
    if report.skipped == SKIP_REAUTHORIZE:
        print("Run 'receiptsync login' to sign in again.", file=sys.stderr)
        return 2
    if report.skipped == SKIP_STORAGE:
        return 1
    return 0


def command_run(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if not _require_configured(runtime):
        return 1
    scheduler = AutoSyncScheduler(
        runtime.engine(),
        interval_seconds=runtime.settings.poll_interval_seconds,
        is_online=runtime.monitor.is_online,
        log_callback=print,
    )
    scheduler.start()
    print(f"Syncing every {scheduler.interval} seconds. Press Ctrl+C to stop.")
    try:
        # Keep the main thread responsive to Ctrl+C.
        while scheduler.is_running():
            time.sleep(1.0)
    except KeyboardInterrupt:
        print("Stopping...")
    finally:
        scheduler.stop()
    return 0


def _member_for(runtime: Runtime, args: argparse.Namespace) -> str:
    if args.member:
        return args.member
    identity = runtime.auth.cached_identity() or runtime.auth.fetch_identity()
    return identity.member


def command_capture(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if not _require_configured(runtime):
        return 1
    path = Path(args.document)
    try:
        document = path.read_bytes()
    except OSError as exc:
        print(f"Error: cannot read {path}: {exc}", file=sys.stderr)
        return 1

    try:
        member = _member_for(runtime, args)
    except MemberNotAllowedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (AuthenticationRequired, *REMOTE_ERRORS) as exc:
        print(f"Error: cannot determine member, pass --member: {exc}", file=sys.stderr)
        return 1

    record = ExpenseRecord(
        date=args.date,
        vendor=args.vendor,
        amount=args.amount,
        category=args.category,
        description=args.description,
        property=args.property,
        paid_via=args.paid_via,
        is_1099="Yes" if args.is_1099 else "No",
        notes=args.notes,
        classification=args.classification,
        member=member,
    )
    try:
        result = runtime.capture_service().capture(record, document)
    except UnsupportedReceiptError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except QueueStorageError as exc:
        print(f"Error: receipt was not saved: {exc}", file=sys.stderr)
        return 1

    print(result.message)
    print(f"Expense id: {result.expense_id}")
    if result.row:
        print(f"Worksheet row: {result.row}")
    return 0


def command_history(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if not _require_configured(runtime):
        return 1
    try:
        clients = runtime.connector()()
        resolver = ColumnResolver(clients.sheets, runtime.settings.worksheet_title)
        allocator = RowAllocator(clients.sheets, resolver.sheet, resolver.resolve())
        records = allocator.list_records(include_deleted=args.all)
    except (AuthenticationRequired, *REMOTE_ERRORS) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    for record in records[: args.limit]:
        print(
            f"{record.get('row', ''):>5}  {record.get('Date', ''):<10}  "
            f"{record.get('Vendor', ''):<24.24}  {record.get('Amount', ''):>10}  {record.get('Status', '')}"
        )
    if not records:
        print("No expenses found.")
    return 0


def command_lists(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if not _require_configured(runtime):
        return 1
    try:
        source = DropdownSource(
            runtime.connector()().sheets,
            categories_tab=runtime.settings.categories_tab,
            lists_tab=runtime.settings.lists_tab,
        )
    except (AuthenticationRequired, *REMOTE_ERRORS) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    categories = source.get_categories()
    lists = source.get_lists()
    sections = (
        ("Categories", categories.categories),
        ("Vendors", lists.vendors),
        ("Properties", lists.properties),
    )
    for title, values in sections:
        print(f"{title} ({len(values)}):")
        for value in values:
            print(f"  {value}")
    if categories.stop_reason is StopReason.ERROR:
        print(f"Warning: could not read {runtime.settings.categories_tab!r}.", file=sys.stderr)
    return 0


def command_failed(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        items = runtime.queue.list_failed()
    except QueueStorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if not items:
        print("No failed items.")
        return 0
    for item in items:
        print(f"{item.id}  {item.kind.value:<17}  {_format_time(item.created_at)}  retries={item.retry_count}")
        if item.last_error:
            print(f"    {item.last_error}")
    return 0


def command_requeue(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        runtime.queue.requeue(args.item_id)
    except KeyError:
        print(f"Error: no queue item {args.item_id}", file=sys.stderr)
        return 1
    except QueueStorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Requeued {args.item_id}")
    return 0


def command_check(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if not _require_configured(runtime):
        return 1
    try:
        sheets = runtime.connector()().sheets
        metadata = sheets.spreadsheet_metadata()
        titles = sheets.worksheet_titles(metadata)
    except (AuthenticationRequired, *REMOTE_ERRORS) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    spreadsheet_title = metadata.get("properties", {}).get("title", runtime.settings.spreadsheet_id)
    print(f"Connection OK. Worksheets in {spreadsheet_title}:")
    for title in titles:
        marker = "*" if title == runtime.settings.worksheet_title else " "
        print(f" {marker} {title}")
    if runtime.settings.worksheet_title not in titles:
        print(f"Warning: worksheet {runtime.settings.worksheet_title!r} not found.", file=sys.stderr)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Receipt Sync: offline-first expense capture for Google Sheets")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Echo log output to the console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show configuration and queue counts")
    status_parser.set_defaults(func=command_status)

    login_parser = subparsers.add_parser("login", help="Sign in with Google")
    login_parser.set_defaults(func=command_login)

    sync_parser = subparsers.add_parser("sync", help="Drain the offline queue once")
    sync_parser.set_defaults(func=command_sync)

    run_parser = subparsers.add_parser("run", help="Keep syncing in the background until interrupted")
    run_parser.set_defaults(func=command_run)

    capture_parser = subparsers.add_parser("capture", help="Record an expense with its receipt")
    capture_parser.add_argument("document", help="Receipt PDF, JPEG or PNG")
    capture_parser.add_argument("--date", required=True, help="Expense date (YYYY-MM-DD)")
    capture_parser.add_argument("--vendor", required=True)
    capture_parser.add_argument("--amount", required=True)
    capture_parser.add_argument("--category", default="")
    capture_parser.add_argument("--description", default="")
    capture_parser.add_argument("--property", default="")
    capture_parser.add_argument("--paid-via", dest="paid_via", default="")
    capture_parser.add_argument("--is-1099", dest="is_1099", action="store_true")
    capture_parser.add_argument("--notes", default="")
    capture_parser.add_argument("--class", dest="classification", default="OpEx")
    capture_parser.add_argument("--member", default="", help="Member name; looked up from the Google account if omitted")
    capture_parser.set_defaults(func=command_capture)

    history_parser = subparsers.add_parser("history", help="List recent expenses from the worksheet")
    history_parser.add_argument("--all", action="store_true", help="Include deleted expenses")
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.set_defaults(func=command_history)

    lists_parser = subparsers.add_parser("lists", help="Show categories, vendors and properties from the spreadsheet")
    lists_parser.set_defaults(func=command_lists)

    failed_parser = subparsers.add_parser("failed", help="List items that exhausted their retries")
    failed_parser.set_defaults(func=command_failed)

    requeue_parser = subparsers.add_parser("requeue", help="Return a failed item to the queue")
    requeue_parser.add_argument("item_id")
    requeue_parser.set_defaults(func=command_requeue)

    check_parser = subparsers.add_parser("check", help="Test the spreadsheet connection")
    check_parser.set_defaults(func=command_check)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
