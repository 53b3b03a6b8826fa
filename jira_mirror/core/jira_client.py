"""Jira API client wrapper (REST v3 enhanced search, one page per call)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import pytz
import requests
from jira import JIRA, JIRAError

from .config import (
    DEFAULT_JQL_FILTER,
    JIRA_API_VERSION,
    JIRA_FETCH_BASE_FIELDS,
    MAX_RETRY_AFTER_SECONDS,
    SEARCH_PAGE_SIZE,
)
from .exceptions import AuthError, FetchError, MalformedResponseError, RateLimitedError, TransientFetchError
from .mappers import parse_dt
from .models import TicketPage

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT = 60.0
JQL_DATE_FORMAT = "%Y-%m-%d %H:%M"


def build_jql(since: datetime | str | None, jql_filter: str = DEFAULT_JQL_FILTER, tz=pytz.UTC) -> str:
    """JQL for an incremental fetch from ``since`` or a full fetch when absent.

    JQL dates carry no offset and are read in the Jira user's time zone, so
    ``since`` is rendered in ``tz`` as ``yyyy-MM-dd HH:mm``. Truncating to the
    minute only widens the window; upserts are idempotent so the overlap is
    harmless. An unparsable watermark falls back to the full query.
    """
    if since is not None and since != "":
        parsed = parse_dt(since)
        if parsed is not None:
            stamp = parsed.astimezone(tz).strftime(JQL_DATE_FORMAT)
            return f'{jql_filter} AND updated >= "{stamp}" ORDER BY updated ASC'
        logger.warning("Invalid sync watermark %r; falling back to full sync query", since)
    return f"{jql_filter} ORDER BY created DESC"


def parse_retry_after(value: Any) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        logger.warning("Rate limited but Retry-After missing or invalid; waiting %ss", DEFAULT_RATE_LIMIT_WAIT)
        seconds = DEFAULT_RATE_LIMIT_WAIT
    return max(0.0, min(seconds, float(MAX_RETRY_AFTER_SECONDS)))


def classify_http_error(status: int | None, body: str = "", headers: Any = None) -> FetchError:
    """Translate an HTTP failure into the fetch error taxonomy."""
    snippet = (body or "")[:200]
    if status in (401, 403):
        return AuthError(f"Jira rejected the credentials ({status}): {snippet}")
    if status == 429:
        retry_after = parse_retry_after((headers or {}).get("Retry-After"))
        return RateLimitedError(f"Jira rate limit hit; retry after {retry_after:.0f}s", retry_after=retry_after)
    if status is None or status == 408 or status >= 500:
        return TransientFetchError(f"Jira search failed {status}: {snippet}")
    return FetchError(f"Jira search failed {status}: {snippet}")


def _classify_jira_error(exc: JIRAError) -> FetchError:
    response = getattr(exc, "response", None)
    return classify_http_error(exc.status_code, exc.text or "", getattr(response, "headers", None))


class JiraAPI:
    def __init__(
        self,
        server: str,
        email: str,
        token: str,
        *,
        jql_filter: str = DEFAULT_JQL_FILTER,
        page_size: int = SEARCH_PAGE_SIZE,
        timeout: float = 30.0,
        timezone: str | None = None,
    ):
        self.server = server.rstrip("/")
        self.jql_filter = jql_filter
        self.page_size = page_size
        self.timeout = timeout
        # None means "ask Jira for the account's zone on first incremental fetch"
        self._search_tz = pytz.timezone(timezone) if timezone else None
        # Retries are owned by the sync orchestrator, not the session
        self.client = JIRA(
            basic_auth=(email, token),
            options={"server": self.server, "rest_api_version": JIRA_API_VERSION},
            get_server_info=False,
            max_retries=0,
        )

    def search_timezone(self):
        """Time zone Jira uses to read JQL dates: the account's profile zone.

        Looked up once from ``/myself`` unless configured; lookup failures are
        classified like search failures so the cycle retries or aborts.
        """
        if self._search_tz is None:
            try:
                profile = self.client.myself()
            except JIRAError as exc:
                raise _classify_jira_error(exc) from exc
            except (requests.ConnectionError, requests.Timeout) as exc:
                raise TransientFetchError(f"Network error talking to Jira: {exc}") from exc
            name = (profile or {}).get("timeZone") or "UTC"
            try:
                self._search_tz = pytz.timezone(name)
            except pytz.UnknownTimeZoneError:
                logger.warning("Jira profile time zone %r unknown; using UTC for JQL dates", name)
                self._search_tz = pytz.UTC
            logger.info("Using %s for JQL date filters", self._search_tz.zone)
        return self._search_tz

    def fetch_page(self, since: datetime | None, cursor: str | None = None) -> TicketPage:
        """Fetch one page of issues updated at or after ``since``."""
        session = getattr(self.client, "_session", None)
        if session is None:
            raise RuntimeError("JIRA session unavailable")
        url = f"{self.server}/rest/api/{JIRA_API_VERSION}/search/jql"
        params = {
            "jql": build_jql(since, self.jql_filter, self.search_timezone() if since else pytz.UTC),
            "maxResults": self.page_size,
            "fields": ",".join(JIRA_FETCH_BASE_FIELDS),
        }
        if cursor:
            params["nextPageToken"] = cursor
        try:
            resp = session.get(url, params=params, timeout=self.timeout)
        except JIRAError as exc:
            raise _classify_jira_error(exc) from exc
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientFetchError(f"Network error talking to Jira: {exc}") from exc

        if resp.status_code >= 400:
            raise classify_http_error(resp.status_code, resp.text, resp.headers)
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponseError(f"Jira returned invalid JSON: {resp.text[:200]}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
            raise MalformedResponseError(f"Jira search response has no issue list: {str(data)[:200]}")

        token = data.get("nextPageToken") or None
        if data.get("isLast") is True:
            token = None
        total = data.get("total")
        return TicketPage(
            records=data["issues"],
            next_cursor=token,
            total=total if isinstance(total, int) else None,
        )
