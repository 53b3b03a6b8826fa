"""Summary metrics over the local ticket mirror."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

import pandas as pd

from jira_mirror.analytics.metrics.business_hours import business_hours_between
from jira_mirror.core.config import TIMELINE_MONTHS, UNCATEGORIZED_LABEL, BusinessHoursConfig
from jira_mirror.core.mappers import map_priority, tickets_to_dataframe
from jira_mirror.core.models import Ticket
from jira_mirror.core.status import map_status_category


@dataclass(slots=True)
class ResolutionStats:
    priority: str
    mean_hours: float
    median_hours: float
    count: int


@dataclass(slots=True)
class TimelineEntry:
    month: str
    created: int
    resolved: int


@dataclass(slots=True)
class SummaryStats:
    total_tickets: int = 0
    open_tickets: int = 0
    resolved_tickets: int = 0
    mean_resolution_hours: float = 0.0
    median_resolution_hours: float = 0.0


@dataclass(slots=True)
class MetricsSummary:
    by_status: dict[str, int] = field(default_factory=dict)
    by_status_category: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    by_category: dict[str, int] = field(default_factory=dict)
    resolution_by_priority: list[ResolutionStats] = field(default_factory=list)
    tickets_over_time: list[TimelineEntry] = field(default_factory=list)
    summary: SummaryStats = field(default_factory=SummaryStats)


def _priority_rank(name: str) -> tuple[int, str]:
    # Stored names stay as Jira sent them; only the ordering is canonical
    return (-map_priority(name), name)


def add_business_resolution(df: pd.DataFrame, config: BusinessHoursConfig) -> pd.DataFrame:
    """Add ``resolution_business_hours`` for rows with both created and resolved instants."""
    out = df.copy()
    out["resolution_business_hours"] = float("nan")
    if out.empty:
        return out
    mask = out["created_at"].notna() & out["resolved_at"].notna()
    if mask.any():
        out.loc[mask, "resolution_business_hours"] = [
            business_hours_between(created.to_pydatetime(), resolved.to_pydatetime(), config)
            for created, resolved in zip(out.loc[mask, "created_at"], out.loc[mask, "resolved_at"])
        ]
    return out


def count_by(df: pd.DataFrame, column: str, fill: str) -> dict[str, int]:
    if df.empty:
        return {}
    counts = df[column].fillna(fill).value_counts()
    return {str(k): int(v) for k, v in counts.items()}


def resolution_by_priority(df: pd.DataFrame) -> list[ResolutionStats]:
    if df.empty:
        return []
    resolved = df[df["resolution_business_hours"].notna()]
    if resolved.empty:
        return []
    grouped = (
        resolved.assign(priority=resolved["priority"].fillna("Undefined"))
        .groupby("priority")["resolution_business_hours"]
        .agg(["mean", "median", "count"])
    )
    stats = [
        ResolutionStats(
            priority=str(name),
            mean_hours=float(row["mean"]),
            median_hours=float(row["median"]),
            count=int(row["count"]),
        )
        for name, row in grouped.iterrows()
    ]
    return sorted(stats, key=lambda s: _priority_rank(s.priority))


def tickets_over_time(df: pd.DataFrame, config: BusinessHoursConfig, months: int = TIMELINE_MONTHS) -> list[TimelineEntry]:
    """Created and resolved counts for the most recent ``months`` months.

    Each count is grouped by its own month, so a ticket created in January and
    resolved in February counts once in each.
    """
    if df.empty:
        return []
    tz = config.tzinfo

    def _monthly(column: str) -> pd.Series:
        stamps = df[column].dropna()
        if stamps.empty:
            return pd.Series(dtype="int64")
        return stamps.dt.tz_convert(tz).dt.strftime("%Y-%m").value_counts()

    created = _monthly("created_at")
    resolved = _monthly("resolved_at")
    all_months = sorted(set(created.index) | set(resolved.index), reverse=True)[:months]
    return [
        TimelineEntry(month=m, created=int(created.get(m, 0)), resolved=int(resolved.get(m, 0)))
        for m in sorted(all_months)
    ]


def summary_stats(df: pd.DataFrame) -> SummaryStats:
    if df.empty:
        return SummaryStats()
    total = len(df)
    resolved_count = int(df["resolved_at"].notna().sum())
    hours = df["resolution_business_hours"].dropna()
    return SummaryStats(
        total_tickets=total,
        open_tickets=total - resolved_count,
        resolved_tickets=resolved_count,
        mean_resolution_hours=float(hours.mean()) if not hours.empty else 0.0,
        median_resolution_hours=float(hours.median()) if not hours.empty else 0.0,
    )


def summarize_frame(df: pd.DataFrame, config: BusinessHoursConfig) -> MetricsSummary:
    if df.empty:
        return MetricsSummary()
    enriched = add_business_resolution(df, config)
    status_groups = enriched["status"].apply(map_status_category)
    return MetricsSummary(
        by_status=count_by(enriched, "status", "Unknown"),
        by_status_category={str(k): int(v) for k, v in status_groups.value_counts().items()},
        by_priority=count_by(enriched, "priority", "Undefined"),
        by_category=count_by(enriched, "category", UNCATEGORIZED_LABEL),
        resolution_by_priority=resolution_by_priority(enriched),
        tickets_over_time=tickets_over_time(enriched, config),
        summary=summary_stats(enriched),
    )


def compute_metrics(tickets: Iterable[Ticket], config: BusinessHoursConfig) -> MetricsSummary:
    return summarize_frame(tickets_to_dataframe(tickets), config)
