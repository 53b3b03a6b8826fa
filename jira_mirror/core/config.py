"""Central configuration, constants, and settings loading."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytz
import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# =============================================================================
# Jira Connection Settings
# =============================================================================
JIRA_API_VERSION = "3"
DEFAULT_JQL_FILTER = "assignee = currentUser()"
DEFAULT_SCOPE = "default"
DEFAULT_STORE_PATH = "~/.jira-mirror/mirror.db"
SEARCH_PAGE_SIZE = 100
# Upper bound on a server supplied Retry-After value (seconds)
MAX_RETRY_AFTER_SECONDS = 300
# A running cycle that has not renewed its scope lease for this long is presumed dead
SYNC_LEASE_TTL_SECONDS = 600

# Canonical field list for Jira fetches
JIRA_FETCH_BASE_FIELDS = [
    "summary",
    "status",
    "priority",
    "issuetype",
    "assignee",
    "reporter",
    "created",
    "updated",
    "resolutiondate",
    "labels",
    "project",
]

# =============================================================================
# Workflow Status Configuration
# =============================================================================
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {
        "Done",
        "Cancelled",
        "Duplicate",
        "Transferred",
    }
)

# Keys should be lowercase for case-insensitive matching
STATUS_ALIASES: dict[str, str] = {
    "to do": "To Do",
    "todo": "To Do",
    "open": "To Do",
    "new": "To Do",
    "in progress": "In Progress",
    "inprogress": "In Progress",
    "in-progress": "In Progress",
    "blocked": "Blocked",
    "cancelled": "Cancelled",
    "canceled": "Cancelled",
    "done": "Done",
    "resolved": "Done",
    "closed": "Done",
    "complete": "Done",
    "completed": "Done",
    "duplicate": "Duplicate",
    "transferred": "Transferred",
}

# =============================================================================
# Priority Configuration
# =============================================================================
PRIORITY_MAPPING = {
    "Blocker": 5,
    "Critical": 4,
    "High": 3,
    "Medium": 2,
    "Low": 1,
    "Undefined": 0,
}

PRIORITY_ALIASES: dict[str, str] = {
    "blocker": "Blocker",
    "critical": "Critical",
    "highest": "Critical",
    "high": "High",
    "medium": "Medium",
    "low": "Low",
    "lowest": "Low",
    "undefined": "Undefined",
    "none": "Undefined",
}

UNCATEGORIZED_LABEL = "Uncategorized"
TIMELINE_MONTHS = 12


def normalize_priority_name(priority: str | None) -> str:
    """Normalize a priority name to its canonical form.

    Strips whitespace and "(migrated)" suffixes and resolves case variants.
    Unknown names are returned cleaned but otherwise untouched.
    """
    if priority is None:
        return "Undefined"
    cleaned = str(priority).strip()
    if not cleaned:
        return "Undefined"
    cleaned = re.sub(r"\s*\(migrated\)\s*$", "", cleaned, flags=re.IGNORECASE).strip()
    return PRIORITY_ALIASES.get(cleaned.lower(), cleaned)


# =============================================================================
# Business hours
# =============================================================================
WEEKDAY_NAMES: dict[str, int] = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
    "thu": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}
DEFAULT_WORKING_WEEKDAYS: frozenset[int] = frozenset({0, 1, 2, 3, 4})


def parse_weekday(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid weekday: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ConfigurationError(f"Weekday number out of range 0-6: {value}")
    text = str(value).strip().lower()
    if text in WEEKDAY_NAMES:
        return WEEKDAY_NAMES[text]
    raise ConfigurationError(f"Unknown weekday: {value!r}")


@dataclass(frozen=True, slots=True)
class BusinessHoursConfig:
    """Working window used for SLA elapsed time.

    Hours are local wall-clock hours in ``timezone``; the window is
    ``[start_hour, end_hour)`` on every weekday in ``working_weekdays``
    (0 = Monday). Invalid values raise ``ConfigurationError`` on construction.
    """

    start_hour: int = 9
    end_hour: int = 17
    working_weekdays: frozenset[int] = DEFAULT_WORKING_WEEKDAYS
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        for name in ("start_hour", "end_hour"):
            hour = getattr(self, name)
            if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
                raise ConfigurationError(f"{name} must be an integer in 0-23, got {hour!r}")
        if self.start_hour >= self.end_hour:
            raise ConfigurationError(
                f"start_hour ({self.start_hour}) must be before end_hour ({self.end_hour})"
            )
        object.__setattr__(
            self, "working_weekdays", frozenset(parse_weekday(d) for d in self.working_weekdays)
        )
        try:
            pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError as exc:
            raise ConfigurationError(f"Unknown timezone: {self.timezone!r}") from exc

    @property
    def tzinfo(self):
        return pytz.timezone(self.timezone)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BusinessHoursConfig:
        data = data or {}
        weekdays = data.get("working_weekdays", DEFAULT_WORKING_WEEKDAYS)
        if isinstance(weekdays, (str, int)):
            weekdays = [weekdays]
        return cls(
            start_hour=data.get("start_hour", 9),
            end_hour=data.get("end_hour", 17),
            working_weekdays=frozenset(weekdays),
            timezone=data.get("timezone", "UTC"),
        )


# =============================================================================
# Application settings
# =============================================================================
@dataclass(slots=True)
class JiraSettings:
    server: str = ""
    email: str = ""
    token: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.server and self.email and self.token)


@dataclass(slots=True)
class RetrySettings:
    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be a positive integer")
        if min(self.base_delay, self.max_delay) < 0 or self.multiplier < 1.0:
            raise ConfigurationError("retry delays must be non-negative and multiplier >= 1.0")


@dataclass(slots=True)
class MirrorSettings:
    jira: JiraSettings = field(default_factory=JiraSettings)
    store_path: str = DEFAULT_STORE_PATH
    scope: str = DEFAULT_SCOPE
    jql_filter: str = DEFAULT_JQL_FILTER
    jql_timezone: str | None = None
    sync_interval_minutes: float = 15.0
    retry: RetrySettings = field(default_factory=RetrySettings)
    business_hours: BusinessHoursConfig = field(default_factory=BusinessHoursConfig)
    category_rules: list[dict[str, Any]] = field(default_factory=list)

    @property
    def resolved_store_path(self) -> Path:
        return Path(self.store_path).expanduser()


def load_settings(path: str | Path | None = None, env: dict[str, str] | None = None) -> MirrorSettings:
    """Load settings from YAML with environment overrides for credentials.

    A missing file yields defaults. Malformed content raises
    ``ConfigurationError`` so bad settings are rejected before any sync runs.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}
    if path is not None:
        yaml_path = Path(path).expanduser()
        if yaml_path.exists():
            try:
                data = yaml.safe_load(yaml_path.read_text()) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid settings file {yaml_path}: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigurationError(f"Settings file {yaml_path} must contain a mapping")
        else:
            logger.info("Settings file %s not found; using defaults", yaml_path)

    jira_data = data.get("jira") or {}
    jira = JiraSettings(
        server=env.get("JIRA_SERVER") or jira_data.get("server", ""),
        email=env.get("JIRA_EMAIL") or jira_data.get("email", ""),
        token=env.get("JIRA_API_TOKEN") or env.get("JIRA_TOKEN") or jira_data.get("token", ""),
    )
    store_data = data.get("store") or {}
    sync_data = data.get("sync") or {}
    retry_data = data.get("retry") or {}
    try:
        retry = RetrySettings(**retry_data)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid retry settings: {exc}") from exc
    rules = data.get("category_rules")
    if rules is None:
        rules = []
    if not isinstance(rules, list):
        raise ConfigurationError("category_rules must be a list")

    settings = MirrorSettings(
        jira=jira,
        store_path=store_data.get("path", DEFAULT_STORE_PATH),
        scope=sync_data.get("scope", DEFAULT_SCOPE),
        jql_filter=sync_data.get("jql_filter", DEFAULT_JQL_FILTER),
        jql_timezone=sync_data.get("jql_timezone"),
        sync_interval_minutes=float(sync_data.get("interval_minutes", 15.0)),
        retry=retry,
        business_hours=BusinessHoursConfig.from_dict(data.get("business_hours")),
        category_rules=rules,
    )
    if settings.sync_interval_minutes <= 0:
        raise ConfigurationError("sync.interval_minutes must be positive")
    if settings.jql_timezone:
        try:
            pytz.timezone(settings.jql_timezone)
        except pytz.UnknownTimeZoneError as exc:
            raise ConfigurationError(f"Unknown sync.jql_timezone: {settings.jql_timezone!r}") from exc
    return settings

