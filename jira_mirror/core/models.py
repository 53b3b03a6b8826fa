"""Domain data models for mirrored tickets and sync bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


@dataclass(slots=True)
class Ticket:
    key: str
    summary: str | None
    status: str | None
    priority: str | None
    issue_type: str | None
    assignee: str | None
    reporter: str | None
    created_at: datetime | None
    updated_at: datetime | None
    resolved_at: datetime | None = None
    labels: frozenset[str] = field(default_factory=frozenset)
    project_key: str | None = None

    # Derived locally, never sourced from Jira
    category: str | None = None


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class SyncScopeState:
    """Persisted bookkeeping for one configured Jira connection.

    ``last_sync_watermark`` is the newest ``updated_at`` fully merged into the
    store; ``None`` means the next cycle performs a full fetch.
    """

    scope: str
    last_sync_watermark: datetime | None = None
    last_sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_error: str | None = None
    last_sync_error_at: datetime | None = None
    last_sync_started_at: datetime | None = None
    last_sync_completed_at: datetime | None = None
    last_sync_ticket_count: int = 0
    rules_fingerprint: str | None = None
    # Process running the current cycle and when it last showed progress
    lease_owner: str | None = None
    lease_renewed_at: datetime | None = None

    def copy(self, **changes) -> SyncScopeState:
        return replace(self, **changes)


@dataclass(slots=True)
class TicketPage:
    """One page of raw Jira issues.

    ``next_cursor`` is ``None`` on the last page. ``total`` is the server's
    estimate when it reports one.
    """

    records: list[dict] = field(default_factory=list)
    next_cursor: str | None = None
    total: int | None = None


@dataclass(slots=True)
class SyncProgress:
    cycle_id: str | None = None
    phase: str = "idle"
    pages_fetched: int = 0
    records_fetched: int = 0
    estimated_total: int | None = None
