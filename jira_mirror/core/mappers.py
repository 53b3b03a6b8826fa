"""Mapping raw Jira issue JSON into Ticket instances and DataFrames."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import pandas as pd

from .config import PRIORITY_MAPPING, normalize_priority_name
from .exceptions import MalformedResponseError
from .models import Ticket

TICKET_COLUMNS = (
    "key",
    "summary",
    "status",
    "priority",
    "priority_value",
    "issue_type",
    "assignee",
    "reporter",
    "created_at",
    "updated_at",
    "resolved_at",
    "labels",
    "project_key",
    "category",
)


def parse_dt(val) -> datetime | None:
    """Parse a Jira timestamp into an aware UTC datetime (naive input is UTC)."""
    if val is None or val == "":
        return None
    ts = pd.to_datetime(val, utc=True, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    return ts.to_pydatetime()


def map_priority(p: str | None) -> int:
    """Rank of a priority name; Jira's "Highest"/"Lowest" rank with Critical/Low."""
    if not p:
        return -99
    canonical = normalize_priority_name(p)
    if canonical in PRIORITY_MAPPING:
        return PRIORITY_MAPPING[canonical]
    for k, v in PRIORITY_MAPPING.items():
        if p.startswith(k):
            return v
    return -99


def _name(node: Any, attr: str = "name") -> str | None:
    if isinstance(node, dict):
        value = node.get(attr)
        return str(value) if value is not None else None
    return None


def map_issue(raw: dict[str, Any]) -> Ticket:
    if not isinstance(raw, dict):
        raise MalformedResponseError(f"Expected issue object, got {type(raw).__name__}")
    key = raw.get("key")
    fields = raw.get("fields")
    if not key or not isinstance(fields, dict):
        raise MalformedResponseError(f"Issue payload missing key or fields: {str(raw)[:200]}")

    updated = parse_dt(fields.get("updated"))
    if updated is None:
        raise MalformedResponseError(f"Issue {key} has no parsable 'updated' timestamp")

    labels = fields.get("labels") or []
    if not isinstance(labels, list):
        raise MalformedResponseError(f"Issue {key} has non-list labels")

    priority = (_name(fields.get("priority")) or "").strip() or None
    return Ticket(
        key=str(key),
        summary=fields.get("summary"),
        status=_name(fields.get("status")),
        priority=priority,
        issue_type=_name(fields.get("issuetype")),
        assignee=_name(fields.get("assignee"), "displayName"),
        reporter=_name(fields.get("reporter"), "displayName"),
        created_at=parse_dt(fields.get("created")),
        updated_at=updated,
        resolved_at=parse_dt(fields.get("resolutiondate")),
        labels=frozenset(str(label) for label in labels if label),
        project_key=_name(fields.get("project"), "key"),
    )


def tickets_to_dataframe(tickets: Iterable[Ticket]) -> pd.DataFrame:
    rows = []
    for t in tickets:
        rows.append(
            {
                "key": t.key,
                "summary": t.summary,
                "status": t.status,
                "priority": t.priority,
                "priority_value": map_priority(t.priority),
                "issue_type": t.issue_type,
                "assignee": t.assignee,
                "reporter": t.reporter,
                "created_at": t.created_at,
                "updated_at": t.updated_at,
                "resolved_at": t.resolved_at,
                # Stable, comma-separated string for display
                "labels": ", ".join(sorted(t.labels, key=lambda s: s.lower())),
                "project_key": t.project_key,
                "category": t.category,
            }
        )
    df = pd.DataFrame(rows, columns=list(TICKET_COLUMNS))
    for col in ("created_at", "updated_at", "resolved_at"):
        df[col] = pd.to_datetime(df[col], utc=True, errors="coerce")
    return df
