"""Status normalization and grouping utilities.

Uses the workflow configuration from config.py (STATUS_ALIASES,
TERMINAL_STATUSES) so metrics can group raw Jira status names that differ
between projects.
"""

from __future__ import annotations

from .config import STATUS_ALIASES, TERMINAL_STATUSES


def normalize_workflow_status(value: str | None) -> str:
    """Map a raw Jira status to its canonical workflow name.

    Returns "Unknown" for empty values; unmapped names are returned stripped
    so new statuses remain visible.

    Examples
    --------
    >>> normalize_workflow_status("in progress")
    'In Progress'
    >>> normalize_workflow_status("resolved")
    'Done'
    """
    if not value:
        return "Unknown"
    text = str(value).strip()
    if not text:
        return "Unknown"
    return STATUS_ALIASES.get(text.lower(), text)


def map_status_category(value: str | None) -> str:
    """Group a status into "To Do", "In Progress", "Done" or "Other"."""
    normalized = normalize_workflow_status(value)
    if normalized == "To Do":
        return "To Do"
    if normalized in {"In Progress", "Blocked"}:
        return "In Progress"
    if normalized in TERMINAL_STATUSES:
        return "Done"
    return "Other"
