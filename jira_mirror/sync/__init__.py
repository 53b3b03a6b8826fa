"""Incremental Jira synchronization: orchestrator, retry policy, and scheduler."""

from .orchestrator import ProgressCallback, RemoteSource, SyncOrchestrator, SyncRequest
from .retry import RetryPolicy, call_with_retry
from .scheduler import SyncScheduler

__all__ = [
    "ProgressCallback",
    "RemoteSource",
    "RetryPolicy",
    "SyncOrchestrator",
    "SyncRequest",
    "SyncScheduler",
    "call_with_retry",
]
