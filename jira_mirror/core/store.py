"""SQLite-backed local mirror of tickets, sync scope state, and category rules."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .config import DEFAULT_SCOPE
from .exceptions import NotFound, StorageUnavailable
from .mappers import parse_dt
from .models import SyncScopeState, SyncStatus, Ticket

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tickets (
    jira_key TEXT PRIMARY KEY,
    summary TEXT,
    status TEXT,
    priority TEXT,
    issue_type TEXT,
    assignee TEXT,
    reporter TEXT,
    created_at TEXT,
    updated_at TEXT,
    resolved_at TEXT,
    labels TEXT NOT NULL DEFAULT '[]',
    project_key TEXT,
    category TEXT
);
CREATE INDEX IF NOT EXISTS idx_tickets_updated_at ON tickets(updated_at);
CREATE TABLE IF NOT EXISTS sync_scope_state (
    scope TEXT PRIMARY KEY,
    last_sync_watermark TEXT,
    last_sync_status TEXT NOT NULL DEFAULT 'idle',
    last_sync_error TEXT,
    last_sync_error_at TEXT,
    last_sync_started_at TEXT,
    last_sync_completed_at TEXT,
    last_sync_ticket_count INTEGER NOT NULL DEFAULT 0,
    rules_fingerprint TEXT,
    lease_owner TEXT,
    lease_renewed_at TEXT
);
CREATE TABLE IF NOT EXISTS category_rules (
    position INTEGER PRIMARY KEY,
    rule TEXT NOT NULL
);
"""

# Columns added after the first release; older store files gain them on open
_SCOPE_STATE_ADDED_COLUMNS = {"lease_owner": "TEXT", "lease_renewed_at": "TEXT"}

TICKET_SELECT = (
    "SELECT jira_key, summary, status, priority, issue_type, assignee, reporter, "
    "created_at, updated_at, resolved_at, labels, project_key, category FROM tickets"
)

_FILTER_COLUMNS = {
    "status": "status",
    "priority": "priority",
    "category": "category",
    "project_key": "project_key",
    "assignee": "assignee",
}


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so lexical order matches chronological order
    if value is None:
        return None
    parsed = parse_dt(value)
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.%f+00:00") if parsed else None


def _row_to_ticket(row: tuple) -> Ticket:
    return Ticket(
        key=row[0],
        summary=row[1],
        status=row[2],
        priority=row[3],
        issue_type=row[4],
        assignee=row[5],
        reporter=row[6],
        created_at=parse_dt(row[7]),
        updated_at=parse_dt(row[8]),
        resolved_at=parse_dt(row[9]),
        labels=frozenset(json.loads(row[10] or "[]")),
        project_key=row[11],
        category=row[12],
    )


class TicketStore:
    """Durable keyed mirror of Jira tickets.

    A single connection is shared by every thread and guarded by a re-entrant
    lock. Writes issued inside :meth:`transaction` commit together, and readers
    on other threads block until the transaction ends, so a half-applied sync
    cycle is never observable.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._path = str(path)
        self._lock = threading.RLock()
        self._depth = 0
        try:
            if self._path != ":memory:":
                Path(self._path).expanduser().parent.mkdir(parents=True, exist_ok=True)
                self._path = str(Path(self._path).expanduser())
            self._conn = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
            if self._path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
            self._add_missing_columns()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"Cannot open ticket store at {self._path}: {exc}") from exc

    def _add_missing_columns(self) -> None:
        present = {row[1] for row in self._conn.execute("PRAGMA table_info(sync_scope_state)")}
        for name, kind in _SCOPE_STATE_ADDED_COLUMNS.items():
            if name not in present:
                self._conn.execute(f"ALTER TABLE sync_scope_state ADD COLUMN {name} {kind}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------ Transactions ------------------
    @contextmanager
    def transaction(self) -> Iterator[TicketStore]:
        """Group writes into one atomic unit; nested calls join the outer one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                self._rollback()
                raise
            self._depth = 0
            try:
                self._execute("COMMIT")
            except StorageUnavailable:
                self._rollback()
                raise

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:  # pragma: no cover - connection already gone
            logger.warning("Rollback failed: %s", exc)

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Ticket store operation failed: {exc}") from exc

    def _fetchall(self, sql: str, params: Iterable = ()) -> list[tuple]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    # ------------------ Tickets ------------------
    def upsert(self, ticket: Ticket) -> None:
        """Insert or replace ``ticket``; an existing category is kept when the new one is null."""
        with self.transaction():
            self._execute(
                """
                INSERT INTO tickets (
                    jira_key, summary, status, priority, issue_type, assignee, reporter,
                    created_at, updated_at, resolved_at, labels, project_key, category
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(jira_key) DO UPDATE SET
                    summary = excluded.summary,
                    status = excluded.status,
                    priority = excluded.priority,
                    issue_type = excluded.issue_type,
                    assignee = excluded.assignee,
                    reporter = excluded.reporter,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at,
                    resolved_at = excluded.resolved_at,
                    labels = excluded.labels,
                    project_key = excluded.project_key,
                    category = COALESCE(excluded.category, tickets.category)
                """,
                (
                    ticket.key,
                    ticket.summary,
                    ticket.status,
                    ticket.priority,
                    ticket.issue_type,
                    ticket.assignee,
                    ticket.reporter,
                    _ts(ticket.created_at),
                    _ts(ticket.updated_at),
                    _ts(ticket.resolved_at),
                    json.dumps(sorted(ticket.labels)),
                    ticket.project_key,
                    ticket.category,
                ),
            )

    def upsert_many(self, tickets: Iterable[Ticket]) -> int:
        count = 0
        with self.transaction():
            for ticket in tickets:
                self.upsert(ticket)
                count += 1
        return count

    def get_by_key(self, key: str) -> Ticket | None:
        rows = self._fetchall(f"{TICKET_SELECT} WHERE jira_key = ?", (key,))
        return _row_to_ticket(rows[0]) if rows else None

    def get_all(self) -> Iterator[Ticket]:
        rows = self._fetchall(f"{TICKET_SELECT} ORDER BY created_at DESC")
        return (_row_to_ticket(r) for r in rows)

    def query_by_updated_since(self, instant: datetime) -> Iterator[Ticket]:
        rows = self._fetchall(
            f"{TICKET_SELECT} WHERE updated_at >= ? ORDER BY updated_at ASC", (_ts(instant),)
        )
        return (_row_to_ticket(r) for r in rows)

    def query(self, *, resolved: bool | None = None, **filters: str | None) -> Iterator[Ticket]:
        """Filter tickets by exact column values.

        Supported keyword filters: status, priority, category, project_key,
        assignee. Passing ``None`` for a filter matches null values.
        ``resolved`` selects tickets with or without a resolution instant.
        """
        clauses: list[str] = []
        params: list[str] = []
        for name, value in filters.items():
            column = _FILTER_COLUMNS.get(name)
            if column is None:
                raise ValueError(f"Unsupported filter: {name}")
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        if resolved is True:
            clauses.append("resolved_at IS NOT NULL")
        elif resolved is False:
            clauses.append("resolved_at IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"{TICKET_SELECT}{where} ORDER BY created_at DESC", params)
        return (_row_to_ticket(r) for r in rows)

    def count(self) -> int:
        return int(self._fetchall("SELECT COUNT(*) FROM tickets")[0][0])

    def set_category(self, key: str, label: str | None) -> None:
        with self.transaction():
            cur = self._execute("UPDATE tickets SET category = ? WHERE jira_key = ?", (label, key))
            if cur.rowcount == 0:
                raise NotFound(key)

    # ------------------ Sync scope state ------------------
    def get_scope_state(self, scope: str = DEFAULT_SCOPE) -> SyncScopeState:
        rows = self._fetchall(
            """
            SELECT scope, last_sync_watermark, last_sync_status, last_sync_error,
                   last_sync_error_at, last_sync_started_at, last_sync_completed_at,
                   last_sync_ticket_count, rules_fingerprint, lease_owner, lease_renewed_at
            FROM sync_scope_state WHERE scope = ?
            """,
            (scope,),
        )
        if not rows:
            return SyncScopeState(scope=scope)
        row = rows[0]
        return SyncScopeState(
            scope=row[0],
            last_sync_watermark=parse_dt(row[1]),
            last_sync_status=SyncStatus(row[2]),
            last_sync_error=row[3],
            last_sync_error_at=parse_dt(row[4]),
            last_sync_started_at=parse_dt(row[5]),
            last_sync_completed_at=parse_dt(row[6]),
            last_sync_ticket_count=int(row[7] or 0),
            rules_fingerprint=row[8],
            lease_owner=row[9],
            lease_renewed_at=parse_dt(row[10]),
        )

    def set_scope_state(self, state: SyncScopeState) -> None:
        with self.transaction():
            self._execute(
                """
                INSERT OR REPLACE INTO sync_scope_state (
                    scope, last_sync_watermark, last_sync_status, last_sync_error,
                    last_sync_error_at, last_sync_started_at, last_sync_completed_at,
                    last_sync_ticket_count, rules_fingerprint, lease_owner, lease_renewed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.scope,
                    _ts(state.last_sync_watermark),
                    SyncStatus(state.last_sync_status).value,
                    state.last_sync_error,
                    _ts(state.last_sync_error_at),
                    _ts(state.last_sync_started_at),
                    _ts(state.last_sync_completed_at),
                    state.last_sync_ticket_count,
                    state.rules_fingerprint,
                    state.lease_owner,
                    _ts(state.lease_renewed_at),
                ),
            )

    def renew_lease(self, scope: str, owner: str, at: datetime) -> bool:
        """Refresh ``owner``'s lease on ``scope``; False when another owner holds it."""
        with self.transaction():
            cur = self._execute(
                "UPDATE sync_scope_state SET lease_renewed_at = ? WHERE scope = ? AND lease_owner = ?",
                (_ts(at), scope, owner),
            )
            return cur.rowcount > 0

    # ------------------ Category rules ------------------
    def save_category_rules(self, rules: Iterable[dict]) -> None:
        """Replace the persisted rule sequence with ``rules`` (plain dicts)."""
        with self.transaction():
            self._execute("DELETE FROM category_rules")
            for position, rule in enumerate(rules):
                self._execute(
                    "INSERT INTO category_rules (position, rule) VALUES (?, ?)",
                    (position, json.dumps(rule, sort_keys=True)),
                )

    def load_category_rules(self) -> list[dict]:
        rows = self._fetchall("SELECT rule FROM category_rules ORDER BY position ASC")
        return [json.loads(r[0]) for r in rows]
