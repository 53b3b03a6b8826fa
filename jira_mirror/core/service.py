"""MirrorService: query and trigger surface consumed by the presentation layer."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

import pandas as pd

from jira_mirror.analytics.aggregations.summary import MetricsSummary, compute_metrics
from jira_mirror.analytics.categorize import (
    CategoryRule,
    categorize,
    load_rules,
    rule_from_dict,
    rule_to_dict,
    rules_fingerprint,
    validate_rules,
)
from jira_mirror.sync import ProgressCallback, RetryPolicy, SyncOrchestrator, SyncRequest

from .config import BusinessHoursConfig, MirrorSettings
from .jira_client import JiraAPI
from .mappers import tickets_to_dataframe
from .models import SyncProgress, SyncScopeState, Ticket
from .store import TicketStore

logger = logging.getLogger(__name__)


class MirrorService:
    def __init__(
        self,
        store: TicketStore,
        orchestrator: SyncOrchestrator,
        business_hours: BusinessHoursConfig | None = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.business_hours = business_hours or BusinessHoursConfig()

    @classmethod
    def from_settings(cls, settings: MirrorSettings, api: Any = None) -> MirrorService:
        """Wire store, Jira client and orchestrator from loaded settings.

        Rules given in the settings replace the persisted rule set; without
        them the persisted rules stay in force.
        """
        store = TicketStore(settings.resolved_store_path)
        if api is None:
            api = JiraAPI(
                settings.jira.server,
                settings.jira.email,
                settings.jira.token,
                jql_filter=settings.jql_filter,
                timezone=settings.jql_timezone,
            )
        if settings.category_rules:
            rules = load_rules(settings.category_rules)
            store.save_category_rules(rule_to_dict(r) for r in rules)
        orchestrator = SyncOrchestrator(
            api,
            store,
            scope=settings.scope,
            retry_policy=RetryPolicy.from_settings(settings.retry),
        )
        return cls(store, orchestrator, settings.business_hours)

    # ------------------ Queries ------------------
    def get_all_tickets(self) -> list[Ticket]:
        return list(self.store.get_all())

    def get_ticket(self, key: str) -> Ticket | None:
        return self.store.get_by_key(key)

    def query_tickets(self, *, resolved: bool | None = None, **filters: str | None) -> list[Ticket]:
        return list(self.store.query(resolved=resolved, **filters))

    def tickets_frame(self) -> pd.DataFrame:
        return tickets_to_dataframe(self.store.get_all())

    def get_metrics(self) -> MetricsSummary:
        return compute_metrics(self.store.get_all(), self.business_hours)

    def get_sync_state(self) -> SyncScopeState:
        return self.orchestrator.state()

    def get_sync_progress(self) -> SyncProgress:
        return self.orchestrator.progress

    def subscribe_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        return self.orchestrator.subscribe(callback)

    # ------------------ Triggers ------------------
    def start_sync(self) -> SyncRequest:
        return self.orchestrator.start_sync()

    def cancel_sync(self) -> bool:
        return self.orchestrator.cancel_sync()

    def load_category_rules(self) -> list[CategoryRule]:
        return load_rules(self.store.load_category_rules())

    def save_category_rules(self, rules: Iterable[CategoryRule | dict[str, Any]]) -> int:
        """Validate, persist, and apply a new rule set to every mirrored ticket.

        Returns the number of tickets whose category changed. Invalid rules
        raise ``ConfigurationError`` and leave the stored rules untouched.
        """
        # Dict rules go through the same parser as settings files
        parsed = [r if isinstance(r, CategoryRule) else rule_from_dict(r) for r in rules]
        return self._apply_rules(validate_rules(parsed))

    def recategorize_all(self) -> int:
        return self._apply_rules(self.load_category_rules(), persist=False)

    def _apply_rules(self, rules: list[CategoryRule], *, persist: bool = True) -> int:
        changed = 0
        scope = self.orchestrator.scope
        with self.store.transaction():
            if persist:
                self.store.save_category_rules(rule_to_dict(r) for r in rules)
            for ticket in self.store.get_all():
                label = categorize(ticket, rules)
                if label != ticket.category:
                    self.store.set_category(ticket.key, label)
                    changed += 1
            state = self.store.get_scope_state(scope)
            self.store.set_scope_state(state.copy(rules_fingerprint=rules_fingerprint(rules)))
        logger.info("Applied %s category rules; %s tickets changed category", len(rules), changed)
        return changed
