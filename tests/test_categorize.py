import pytest

from factories import ticket
from jira_mirror.analytics.categorize import (
    ConditionKind,
    TicketField,
    categorize,
    load_rules,
    rule_from_dict,
    rule_to_dict,
    rules_fingerprint,
)
from jira_mirror.core.exceptions import ConfigurationError

RULES = load_rules(
    [
        {
            "priority_order": 1,
            "category_label": "Hardware",
            "conditions": [{"kind": "contains", "field": "summary", "value": "PRINTER"}],
        },
        {
            "priority_order": 2,
            "category_label": "Urgent bugs",
            "conditions": [
                {"kind": "equals", "field": "issue_type", "value": "bug"},
                {"kind": "one_of", "field": "priority", "values": ["Critical", "Blocker"]},
            ],
        },
        {
            "priority_order": 3,
            "category_label": "Customer",
            "conditions": [{"kind": "equals", "field": "labels", "value": "customer"}],
        },
    ]
)


def test_first_match_by_priority_order_wins():
    t = ticket(summary="Printer jam", issue_type="Bug", priority="Critical")
    assert categorize(t, RULES) == "Hardware"
    assert categorize(t, list(reversed(RULES))) == "Hardware"


def test_conjunction_requires_all_conditions():
    assert categorize(ticket(summary="Crash", issue_type="Bug", priority="Critical"), RULES) == "Urgent bugs"
    assert categorize(ticket(summary="Crash", issue_type="Bug", priority="Low"), RULES) is None


def test_label_conditions_match_any_label_case_insensitively():
    assert categorize(ticket(summary="Crash", labels={"VIP", "Customer"}), RULES) == "Customer"


def test_null_fields_never_match():
    assert categorize(ticket(summary=None, issue_type=None, priority=None), RULES) is None
    rules = load_rules(
        [{"priority_order": 1, "category_label": "Mine", "conditions": [{"field": "assignee", "value": "alice"}]}]
    )
    assert categorize(ticket(assignee="Alice"), rules) == "Mine"
    assert categorize(ticket(assignee=None), rules) is None


def test_no_match_returns_none():
    assert categorize(ticket(summary="Question", issue_type="Task", priority="Low"), RULES) is None
    assert categorize(ticket(), []) is None


def test_categorize_is_idempotent():
    t = ticket(summary="printer offline")
    assert categorize(t, RULES) == categorize(t, RULES) == "Hardware"


def test_reordering_non_overlapping_rules_keeps_outcomes():
    swapped = load_rules(
        [
            {**rule_to_dict(RULES[0]), "priority_order": 2},
            {**rule_to_dict(RULES[1]), "priority_order": 1},
            rule_to_dict(RULES[2]),
        ]
    )
    samples = [
        ticket(summary="Printer jam", issue_type="Task"),
        ticket(summary="Crash", issue_type="Bug", priority="Blocker"),
        ticket(summary="Other", issue_type="Task", priority="Low"),
    ]
    assert [categorize(t, RULES) for t in samples] == [categorize(t, swapped) for t in samples]


def test_rule_round_trip_and_parsing():
    rule = rule_from_dict(
        {"priority_order": 5, "category": " Ops ", "conditions": [{"kind": "ONE_OF", "field": "Status", "values": ["Open"]}]}
    )
    assert rule.category_label == "Ops"
    assert rule.conditions[0].kind is ConditionKind.ONE_OF
    assert rule.conditions[0].field is TicketField.STATUS
    assert rule_from_dict(rule_to_dict(rule)) == rule


def test_fingerprint_tracks_rule_changes():
    assert rules_fingerprint(RULES) == rules_fingerprint(list(reversed(RULES)))
    edited = load_rules([{**rule_to_dict(RULES[0]), "category_label": "Devices"}])
    assert rules_fingerprint(edited) != rules_fingerprint(RULES[:1])


@pytest.mark.parametrize(
    "data",
    [
        {"priority_order": 1, "category_label": "X", "conditions": []},
        {"priority_order": 1, "category_label": "", "conditions": [{"field": "status", "value": "x"}]},
        {"priority_order": "1", "category_label": "X", "conditions": [{"field": "status", "value": "x"}]},
        {"priority_order": 1, "category_label": "X", "conditions": [{"field": "color", "value": "x"}]},
        {"priority_order": 1, "category_label": "X", "conditions": [{"kind": "regex", "field": "status", "value": "x"}]},
        {"priority_order": 1, "category_label": "X", "conditions": [{"kind": "one_of", "field": "status", "values": []}]},
        {"priority_order": 1, "category_label": "X", "conditions": [{"kind": "contains", "field": "summary"}]},
    ],
)
def test_invalid_rules_rejected(data):
    with pytest.raises(ConfigurationError):
        load_rules([data])


def test_duplicate_priority_order_rejected():
    rule = rule_to_dict(RULES[0])
    with pytest.raises(ConfigurationError):
        load_rules([rule, {**rule, "category_label": "Other"}])
