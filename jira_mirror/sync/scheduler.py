"""Periodic background trigger for sync cycles."""

from __future__ import annotations

import logging
import threading

from .orchestrator import SyncOrchestrator, SyncRequest

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Fires ``start_sync`` every ``interval_seconds`` on a daemon thread.

    Manual triggers go through :meth:`trigger_now`; both paths share the
    orchestrator's single-flight gate, so a tick that lands while a cycle is
    running simply joins it.
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval_seconds: float, *, run_immediately: bool = True):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._orchestrator = orchestrator
        self._interval = float(interval_seconds)
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="jira-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started (every %.0fs)", self._interval)

    def trigger_now(self) -> SyncRequest:
        return self._orchestrator.start_sync()

    def stop(self, *, cancel_running: bool = True, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if cancel_running:
            self._orchestrator.cancel_sync()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._orchestrator.wait(timeout)
        logger.info("Sync scheduler stopped")

    def _loop(self) -> None:
        if self._run_immediately:
            self._tick()
        while not self._stop.wait(self._interval):
            self._tick()

    def _tick(self) -> None:
        request = self._orchestrator.start_sync()
        if not request.started:
            logger.debug("Scheduled sync skipped; cycle %s still running", request.cycle_id)
