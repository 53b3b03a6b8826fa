"""SyncOrchestrator: single-flight fetch, merge, and categorize cycles.

One cycle reads the scope watermark, pulls every page of issues updated since
then, and commits the merged tickets, their categories, and the advanced
watermark in a single store transaction. A failed or cancelled cycle commits
nothing, so the next cycle re-fetches the same window.

While a cycle runs, the scope state carries a lease naming the owning process.
Another process sharing the store file skips its cycles until the lease is
released or goes stale, and only resets a stale RUNNING state on startup.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial
from typing import Protocol

import pytz

from jira_mirror.analytics.categorize import CategoryRule, categorize, load_rules, rules_fingerprint
from jira_mirror.core.config import DEFAULT_SCOPE, SYNC_LEASE_TTL_SECONDS
from jira_mirror.core.exceptions import MalformedResponseError, MirrorError, NotFound, StorageUnavailable
from jira_mirror.core.mappers import map_issue
from jira_mirror.core.models import SyncProgress, SyncScopeState, SyncStatus, Ticket, TicketPage
from jira_mirror.core.store import TicketStore

from .retry import RetryAborted, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int | None, int | None], None]
RulesProvider = Callable[[], Sequence[CategoryRule]]


class RemoteSource(Protocol):
    def fetch_page(self, since: datetime | None, cursor: str | None = None) -> TicketPage: ...


class SyncCancelled(Exception):
    pass


class LeaseLost(Exception):
    """Another process took over the scope while this cycle was running."""


@dataclass(slots=True)
class SyncRequest:
    """Answer to a sync trigger.

    ``started`` is False when the trigger joined a cycle that was already
    running; ``cycle_id`` then names that cycle.
    """

    cycle_id: str
    started: bool


def _utcnow() -> datetime:
    return datetime.now(tz=pytz.UTC)


class SyncOrchestrator:
    def __init__(
        self,
        source: RemoteSource,
        store: TicketStore,
        *,
        scope: str = DEFAULT_SCOPE,
        rules_provider: RulesProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        lease_ttl: float = SYNC_LEASE_TTL_SECONDS,
    ):
        self._source = source
        self._store = store
        self._scope = scope
        self._rules_provider = rules_provider or (lambda: load_rules(store.load_category_rules()))
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock
        self._lease_ttl = lease_ttl
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self._gate = threading.Lock()
        self._active_id: str | None = None
        self._worker: threading.Thread | None = None
        self._cancel = threading.Event()

        self._progress_lock = threading.Lock()
        self._progress = SyncProgress()
        self._subscribers: list[ProgressCallback] = []

        self._recover_interrupted_cycle()

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def active_cycle_id(self) -> str | None:
        with self._gate:
            return self._active_id

    @property
    def is_running(self) -> bool:
        return self.active_cycle_id is not None

    @property
    def progress(self) -> SyncProgress:
        with self._progress_lock:
            return replace(self._progress)

    def state(self) -> SyncScopeState:
        return self._store.get_scope_state(self._scope)

    # ------------------ Triggers ------------------
    def start_sync(self) -> SyncRequest:
        """Start a cycle on a background thread unless one is already running."""
        with self._gate:
            if self._active_id is not None:
                logger.info("Sync already running for scope %s (cycle %s)", self._scope, self._active_id)
                return SyncRequest(self._active_id, started=False)
            cycle_id = self._claim()
            self._worker = threading.Thread(
                target=self._run_claimed,
                args=(cycle_id,),
                name=f"jira-sync-{cycle_id[:8]}",
                daemon=True,
            )
            self._worker.start()
        return SyncRequest(cycle_id, started=True)

    def run_cycle(self) -> SyncRequest:
        """Run a cycle on the calling thread, subject to the same single-flight gate."""
        with self._gate:
            if self._active_id is not None:
                return SyncRequest(self._active_id, started=False)
            cycle_id = self._claim()
        self._run_claimed(cycle_id)
        return SyncRequest(cycle_id, started=True)

    def cancel_sync(self) -> bool:
        with self._gate:
            if self._active_id is None:
                return False
            logger.info("Cancelling sync cycle %s", self._active_id)
            self._cancel.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the background cycle; True once no cycle is running."""
        with self._gate:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return not self.is_running

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        with self._progress_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._progress_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # ------------------ Gate ------------------
    def _claim(self) -> str:
        # Caller holds self._gate
        cycle_id = uuid.uuid4().hex
        self._active_id = cycle_id
        self._cancel.clear()
        return cycle_id

    def _run_claimed(self, cycle_id: str) -> None:
        try:
            self._execute_cycle(cycle_id)
        finally:
            with self._gate:
                if self._active_id == cycle_id:
                    self._active_id = None

    def _live_foreign_lease(self, state: SyncScopeState, now: datetime) -> str | None:
        """Owner of a lease on ``state`` still held by another process, if any."""
        if state.last_sync_status is not SyncStatus.RUNNING or not state.lease_owner:
            return None
        if state.lease_owner == self._owner or state.lease_renewed_at is None:
            return None
        if (now - state.lease_renewed_at).total_seconds() >= self._lease_ttl:
            return None
        return state.lease_owner

    def _recover_interrupted_cycle(self) -> None:
        with self._store.transaction():
            state = self._store.get_scope_state(self._scope)
            if state.last_sync_status is not SyncStatus.RUNNING:
                return
            holder = self._live_foreign_lease(state, self._clock())
            if holder is not None:
                logger.info("Scope %s is being synced by %s; leaving its state alone", self._scope, holder)
                return
            logger.warning("Scope %s was left running by a previous process; resetting to idle", self._scope)
            self._store.set_scope_state(
                state.copy(last_sync_status=SyncStatus.IDLE, lease_owner=None, lease_renewed_at=None)
            )

    # ------------------ Cycle ------------------
    def _execute_cycle(self, cycle_id: str) -> None:
        try:
            with self._store.transaction():
                current = self._store.get_scope_state(self._scope)
                started_at = self._clock()
                holder = self._live_foreign_lease(current, started_at)
                if holder is None:
                    self._store.set_scope_state(
                        current.copy(
                            last_sync_status=SyncStatus.RUNNING,
                            last_sync_started_at=started_at,
                            lease_owner=self._owner,
                            lease_renewed_at=started_at,
                        )
                    )
        except StorageUnavailable as exc:
            logger.error("Sync cycle %s could not start: %s", cycle_id, exc)
            return
        if holder is not None:
            logger.info("Scope %s is being synced by %s; skipping cycle %s", self._scope, holder, cycle_id)
            with self._progress_lock:
                self._progress = SyncProgress(cycle_id=cycle_id, phase="skipped")
            self._publish("Sync skipped; another process is syncing this scope")
            return
        # Every state written from here on releases the lease
        previous = current.copy(lease_owner=None, lease_renewed_at=None)

        logger.info(
            "Sync cycle %s started for scope %s (watermark=%s)",
            cycle_id,
            self._scope,
            previous.last_sync_watermark.isoformat() if previous.last_sync_watermark else "full",
        )
        self._reset_progress(cycle_id)
        try:
            rules = list(self._rules_provider())
            tickets = self._fetch_all(previous.last_sync_watermark)
            self._check_cancel()
            self._publish("Merging tickets into local store", phase="merging")
            committed = self._commit(previous, tickets, rules, started_at)
        except LeaseLost as exc:
            logger.warning("Sync cycle %s abandoned: %s", cycle_id, exc)
            self._publish("Sync abandoned; another process took over this scope", phase="abandoned")
            return
        except (SyncCancelled, RetryAborted):
            logger.info("Sync cycle %s cancelled; nothing committed", cycle_id)
            self._write_state(previous.copy(last_sync_status=SyncStatus.IDLE))
            self._publish("Sync cancelled", phase="cancelled")
            return
        except MirrorError as exc:
            if isinstance(exc, MalformedResponseError):
                logger.error("Sync cycle %s got a malformed Jira response: %s", cycle_id, exc)
            else:
                logger.error("Sync cycle %s failed: %s", cycle_id, exc)
            self._record_failure(previous, started_at, str(exc))
            return
        except Exception as exc:
            logger.exception("Sync cycle %s failed unexpectedly", cycle_id)
            self._record_failure(previous, started_at, f"{type(exc).__name__}: {exc}")
            return

        self._publish("Sync complete", phase="done")
        logger.info(
            "Sync cycle %s merged %s tickets; watermark now %s",
            cycle_id,
            committed.last_sync_ticket_count,
            committed.last_sync_watermark.isoformat() if committed.last_sync_watermark else None,
        )

    def _fetch_all(self, since: datetime | None) -> list[Ticket]:
        by_key: dict[str, Ticket] = {}
        cursor: str | None = None
        pages = 0
        records = 0
        while True:
            self._check_cancel()
            page = call_with_retry(
                partial(self._source.fetch_page, since, cursor),
                self._retry,
                wait=self._cancel.wait,
                describe=f"Jira page {pages + 1}",
            )
            # A page that arrives after cancellation is dropped
            self._check_cancel()
            pages += 1
            records += len(page.records)
            for raw in page.records:
                ticket = map_issue(raw)
                current = by_key.get(ticket.key)
                # Paging by updated time can return a ticket twice; keep the newest
                if current is None or ticket.updated_at >= current.updated_at:
                    by_key[ticket.key] = ticket
            self._renew_lease()
            self._publish(
                f"Fetched page {pages} from Jira",
                pages_fetched=pages,
                records_fetched=records,
                estimated_total=page.total if page.total is not None else self.progress.estimated_total,
            )
            if page.next_cursor is None:
                return list(by_key.values())
            if page.next_cursor == cursor:
                raise MalformedResponseError(f"Jira pagination token did not advance after page {pages}")
            cursor = page.next_cursor

    def _commit(
        self,
        previous: SyncScopeState,
        tickets: list[Ticket],
        rules: list[CategoryRule],
        started_at: datetime,
    ) -> SyncScopeState:
        fingerprint = rules_fingerprint(rules)
        rescan_all = fingerprint != previous.rules_fingerprint
        watermark = max((t.updated_at for t in tickets if t.updated_at is not None), default=None)
        if previous.last_sync_watermark is not None and (
            watermark is None or watermark < previous.last_sync_watermark
        ):
            watermark = previous.last_sync_watermark

        with self._store.transaction():
            self._renew_lease()
            for ticket in tickets:
                self._store.upsert(ticket)
            targets = list(self._store.get_all()) if rescan_all else tickets
            if rescan_all:
                logger.info("Category rules changed; recategorizing %s tickets", len(targets))
            for ticket in targets:
                try:
                    self._store.set_category(ticket.key, categorize(ticket, rules))
                except NotFound as exc:
                    logger.warning("Skipping categorization: %s", exc)
            state = previous.copy(
                last_sync_watermark=watermark,
                last_sync_status=SyncStatus.SUCCESS,
                last_sync_error=None,
                last_sync_error_at=None,
                last_sync_started_at=started_at,
                last_sync_completed_at=self._clock(),
                last_sync_ticket_count=len(tickets),
                rules_fingerprint=fingerprint,
            )
            self._store.set_scope_state(state)
        return state

    def _record_failure(self, previous: SyncScopeState, started_at: datetime, reason: str) -> None:
        self._write_state(
            previous.copy(
                last_sync_status=SyncStatus.ERROR,
                last_sync_error=reason,
                last_sync_error_at=self._clock(),
                last_sync_started_at=started_at,
            )
        )
        self._publish(f"Sync failed: {reason}", phase="error")

    def _write_state(self, state: SyncScopeState) -> None:
        try:
            with self._store.transaction():
                holder = self._store.get_scope_state(self._scope).lease_owner
                if holder not in (None, self._owner):
                    logger.warning("Scope %s is now held by %s; not recording this cycle", self._scope, holder)
                    return
                self._store.set_scope_state(state)
        except StorageUnavailable as exc:
            logger.error("Could not record sync state for scope %s: %s", self._scope, exc)

    def _renew_lease(self) -> None:
        if not self._store.renew_lease(self._scope, self._owner, self._clock()):
            raise LeaseLost(f"scope {self._scope} is now held by another process")

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise SyncCancelled()

    # ------------------ Progress ------------------
    def _reset_progress(self, cycle_id: str) -> None:
        with self._progress_lock:
            self._progress = SyncProgress(cycle_id=cycle_id, phase="fetching")
        self._publish("Querying Jira for updated tickets")

    def _publish(self, message: str, **changes) -> None:
        with self._progress_lock:
            for name, value in changes.items():
                setattr(self._progress, name, value)
            snapshot = replace(self._progress)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(message, snapshot.records_fetched, snapshot.estimated_total)
            except Exception as exc:  # pragma: no cover - observer bug
                logger.warning("Progress subscriber failed: %s", exc)
