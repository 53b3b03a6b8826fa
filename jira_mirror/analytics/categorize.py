"""Rule-based ticket categorization.

Rules are evaluated in ascending ``priority_order`` and the first rule whose
conditions all hold assigns its label. Conditions are a closed set of kinds
over a closed set of ticket fields, evaluated without ``eval``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jira_mirror.core.exceptions import ConfigurationError
from jira_mirror.core.models import Ticket


class ConditionKind(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    ONE_OF = "one_of"


class TicketField(str, Enum):
    SUMMARY = "summary"
    STATUS = "status"
    PRIORITY = "priority"
    ISSUE_TYPE = "issue_type"
    ASSIGNEE = "assignee"
    REPORTER = "reporter"
    LABELS = "labels"
    PROJECT_KEY = "project_key"


@dataclass(frozen=True, slots=True)
class Condition:
    kind: ConditionKind
    field: TicketField
    values: tuple[str, ...]

    def matches(self, ticket: Ticket) -> bool:
        raw = getattr(ticket, self.field.value)
        if raw is None:
            return False
        if self.field is TicketField.LABELS:
            return any(self._matches_text(label) for label in raw)
        return self._matches_text(raw)

    def _matches_text(self, value: str) -> bool:
        text = _fold(value)
        if self.kind is ConditionKind.CONTAINS:
            return _fold(self.values[0]) in text
        return any(text == _fold(v) for v in self.values)


@dataclass(frozen=True, slots=True)
class CategoryRule:
    priority_order: int
    conditions: tuple[Condition, ...]
    category_label: str

    def matches(self, ticket: Ticket) -> bool:
        return all(c.matches(ticket) for c in self.conditions)


def _fold(value: Any) -> str:
    return str(value).strip().casefold()


def categorize(ticket: Ticket, rules: Sequence[CategoryRule]) -> str | None:
    for rule in sorted(rules, key=lambda r: r.priority_order):
        if rule.matches(ticket):
            return rule.category_label
    return None


# ------------------ Parsing & validation ------------------
def condition_from_dict(data: dict[str, Any]) -> Condition:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Condition must be a mapping, got {data!r}")
    try:
        kind = ConditionKind(str(data.get("kind", "equals")).lower())
    except ValueError as exc:
        raise ConfigurationError(f"Unknown condition kind: {data.get('kind')!r}") from exc
    try:
        field = TicketField(str(data.get("field", "")).lower())
    except ValueError as exc:
        raise ConfigurationError(f"Unknown ticket field: {data.get('field')!r}") from exc

    if kind is ConditionKind.ONE_OF:
        values = data.get("values")
        if isinstance(values, str) or not isinstance(values, list) or not values:
            raise ConfigurationError(f"one_of condition on {field.value} needs a non-empty 'values' list")
    else:
        value = data.get("value")
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ConfigurationError(f"{kind.value} condition on {field.value} needs a 'value'")
        values = [value]
    return Condition(kind=kind, field=field, values=tuple(str(v) for v in values))


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    out: dict[str, Any] = {"kind": condition.kind.value, "field": condition.field.value}
    if condition.kind is ConditionKind.ONE_OF:
        out["values"] = list(condition.values)
    else:
        out["value"] = condition.values[0]
    return out


def rule_from_dict(data: dict[str, Any]) -> CategoryRule:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Rule must be a mapping, got {data!r}")
    label = data.get("category_label") or data.get("category")
    if not isinstance(label, str) or not label.strip():
        raise ConfigurationError(f"Rule is missing a category label: {data!r}")
    order = data.get("priority_order")
    if isinstance(order, bool) or not isinstance(order, int):
        raise ConfigurationError(f"Rule {label!r} needs an integer priority_order")
    conditions = data.get("conditions") or []
    if not isinstance(conditions, list) or not conditions:
        raise ConfigurationError(f"Rule {label!r} must have at least one condition")
    return CategoryRule(
        priority_order=order,
        conditions=tuple(condition_from_dict(c) for c in conditions),
        category_label=label.strip(),
    )


def rule_to_dict(rule: CategoryRule) -> dict[str, Any]:
    return {
        "priority_order": rule.priority_order,
        "category_label": rule.category_label,
        "conditions": [condition_to_dict(c) for c in rule.conditions],
    }


def validate_rules(rules: Iterable[CategoryRule]) -> list[CategoryRule]:
    """Return rules sorted by priority; duplicate orders are rejected."""
    ordered = sorted(rules, key=lambda r: r.priority_order)
    seen: set[int] = set()
    for rule in ordered:
        if rule.priority_order in seen:
            raise ConfigurationError(f"Duplicate priority_order {rule.priority_order}")
        seen.add(rule.priority_order)
        if not rule.conditions:
            raise ConfigurationError(f"Rule {rule.category_label!r} has no conditions")
    return ordered


def load_rules(data: Iterable[dict[str, Any]]) -> list[CategoryRule]:
    return validate_rules(rule_from_dict(d) for d in data)


def rules_fingerprint(rules: Iterable[CategoryRule]) -> str:
    payload = [rule_to_dict(r) for r in sorted(rules, key=lambda r: r.priority_order)]
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
