"""Background triggers that keep the offline queue draining."""
from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Optional

from receiptsync.sync_engine import DrainReport, SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30
DEFAULT_PROBE_INTERVAL = 5
MIN_POLL_INTERVAL = 5

StatusCallback = Callable[[str, Optional[DrainReport]], None]
LogCallback = Callable[[str], None]


class ConnectivityMonitor:
    """Cheap reachability probe against the Google API front end."""

    def __init__(self, host: str = "www.googleapis.com", port: int = 443, timeout: float = 3.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    def is_online(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False


def status_for(report: DrainReport) -> str:
    if report.skipped:
        return report.skipped
    if report.processed == 0:
        return "idle"
    if report.failed or report.retried:
        return "partial"
    return "synced"


class AutoSyncScheduler:
    """Run drains on a daemon thread.

    A drain starts when the scheduler starts, every ``interval_seconds``
    afterwards, whenever connectivity comes back and whenever
    :meth:`sync_now` is called.  All triggers funnel into one worker thread,
    and the engine's own guard turns any overlap into a no-op.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: int = DEFAULT_POLL_INTERVAL,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        is_online: Optional[Callable[[], bool]] = None,
        status_callback: Optional[StatusCallback] = None,
        log_callback: Optional[LogCallback] = None,
    ) -> None:
        self._engine = engine
        self._interval = max(MIN_POLL_INTERVAL, int(interval_seconds))
        self._probe_interval = max(0.1, float(probe_interval))
        self._is_online = is_online
        self._status_callback = status_callback
        self._log_callback = log_callback
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watcher: Optional[threading.Thread] = None
        self._online: Optional[bool] = None
        self.last_report: Optional[DrainReport] = None

    @property
    def interval(self) -> int:
        return self._interval

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._wake.set()
        self._thread = threading.Thread(target=self._run_loop, name="receiptsync-drain", daemon=True)
        self._thread.start()
        if self._is_online is not None:
            self._watcher = threading.Thread(target=self._watch_loop, name="receiptsync-probe", daemon=True)
            self._watcher.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake.set()
        for thread in (self._thread, self._watcher):
            if thread and thread.is_alive():
                thread.join(timeout=2)
        self._thread = None
        self._watcher = None

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def sync_now(self) -> None:
        """Ask the worker thread to drain as soon as possible."""

        self._wake.set()

    def notify_online(self, online: bool) -> None:
        """Record a connectivity observation; an offline to online edge triggers a drain."""

        previous = self._online
        self._online = online
        if online and previous is False:
            self._log("Connection restored, syncing queued receipts")
            self._wake.set()
        elif not online and previous is not False:
            self._log("Connection lost, receipts will be queued")

    def run_once(self) -> DrainReport:
        """Drain on the calling thread and publish the result."""

        try:
            report = self._engine.drain()
        except Exception as exc:  # pragma: no cover - drain reports its own failures
            logger.exception("Sync drain failed")
            report = DrainReport(skipped="error", errors=[str(exc)])
        self.last_report = report
        self._notify_status(status_for(report), report)
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake.wait(self._interval)
            if self._stop_event.is_set():
                break
            self._wake.clear()
            self.run_once()

    def _watch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                online = bool(self._is_online())
            except Exception:  # pragma: no cover - probe guard
                logger.debug("Connectivity probe failed", exc_info=True)
                online = False
            self.notify_online(online)
            if self._stop_event.wait(self._probe_interval):
                break

    def _log(self, message: str) -> None:
        logger.info(message)
        if self._log_callback:
            try:
                self._log_callback(message)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Auto sync log callback failed", exc_info=True)

    def _notify_status(self, status: str, report: Optional[DrainReport]) -> None:
        if self._status_callback:
            try:
                self._status_callback(status, report)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Auto sync status callback failed", exc_info=True)


__all__ = [
    "AutoSyncScheduler",
    "ConnectivityMonitor",
    "DEFAULT_POLL_INTERVAL",
    "status_for",
]
