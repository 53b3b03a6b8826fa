"""Error taxonomy shared by the client, store, and sync orchestrator."""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all mirror errors."""


class ConfigurationError(MirrorError):
    """Settings, business hours, or category rules failed validation."""


class FetchError(MirrorError):
    """The remote source could not deliver a page."""


class TransientFetchError(FetchError):
    """Network failure or server hiccup; safe to retry the same page."""

    def __init__(self, message: str, *, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitedError(TransientFetchError):
    """HTTP 429 from Jira."""


class AuthError(FetchError):
    """Credentials were rejected. Never retried."""


class MalformedResponseError(FetchError):
    """The response could not be parsed into issues. Never retried."""


class StorageUnavailable(MirrorError):
    """The local store could not complete an operation; nothing was committed."""


class NotFound(MirrorError):
    """A keyed operation referenced a ticket that is not in the store."""

    def __init__(self, key: str):
        super().__init__(f"Ticket {key} not found")
        self.key = key
