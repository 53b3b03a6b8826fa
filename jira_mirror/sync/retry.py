"""Exponential backoff for transient Jira page fetch failures."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from jira_mirror.core.config import RetrySettings
from jira_mirror.core.exceptions import ConfigurationError, TransientFetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryAborted(Exception):
    """Raised when the wait between attempts was interrupted by cancellation."""


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be non-negative")
        if self.multiplier < 1.0:
            raise ConfigurationError("retry.multiplier must be >= 1.0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError("retry.jitter must be within 0.0-1.0")

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number ``attempt`` (0-indexed).

        A server supplied ``retry_after`` wins when it is longer than the
        computed backoff.
        """
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter > 0 and delay > 0:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    wait: Callable[[float], bool],
    describe: str = "request",
) -> T:
    """Call ``func`` until it succeeds or the attempt budget runs out.

    Only ``TransientFetchError`` is retried; anything else propagates at once.
    ``wait(seconds)`` sleeps and returns True when the sleep was interrupted,
    in which case ``RetryAborted`` is raised.
    """
    attempt = 0
    while True:
        try:
            return func()
        except TransientFetchError as exc:
            attempt += 1
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %s attempts: %s", describe, attempt, exc)
                raise
            delay = policy.delay_for(attempt - 1, exc.retry_after)
            logger.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.1fs",
                describe,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if wait(delay):
                raise RetryAborted(describe) from exc
