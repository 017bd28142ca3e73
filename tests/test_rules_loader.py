from __future__ import annotations

import os

import pytest

from src.fleet_alerts.errors import RuleLoadError
from src.fleet_alerts.schemas.common import Severity
from src.fleet_alerts.services.rules_loader import EMPTY_RULESET, RuleSetLoader, parse_ruleset


def _bump_mtime(path) -> None:
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 2_000_000_000))


def test_legacy_flat_map_is_parsed_into_escalation_and_auto_close_rules():
    ruleset = parse_ruleset(
        {
            "overspeed": {"escalate_if_count": 3, "window_mins": 60, "escalate_to": "critical"},
            "compliance": {"auto_close_if": "document_valid"},
        }
    )

    assert ruleset.source_format == "legacy"
    rule = ruleset.escalation["overspeed"]
    assert rule.escalate_if_count == 3
    assert rule.window_mins == 60
    assert rule.escalate_to == Severity.critical
    assert ruleset.auto_close["compliance"].fields == ("document_valid",)
    assert "compliance" not in ruleset.escalation
    assert ruleset.classifiers == ()
    assert ruleset.dropped == ()


def test_structured_document_is_parsed_including_classifiers():
    ruleset = parse_ruleset(
        {
            "rules": [
                {
                    "ruleId": "speed-critical",
                    "name": "Very high speed",
                    "eventTypes": ["overspeed"],
                    "condition": {"speed": {"gt": 120}},
                    "severity": "critical",
                    "description": "More than 120 km/h",
                }
            ],
            "escalation": {"overspeed": {"escalate_if_count": 2, "window_mins": 30}},
            "auto_close": {"compliance": {"auto_close_if": ["document_valid", "inspection_passed"]}},
        }
    )

    assert ruleset.source_format == "structured"
    assert len(ruleset.classifiers) == 1
    classifier = ruleset.classifiers[0]
    assert classifier.rule_id == "speed-critical"
    assert classifier.event_types == ("overspeed",)
    assert classifier.severity == Severity.critical
    assert ruleset.escalation["overspeed"].escalate_to is None
    assert ruleset.auto_close["compliance"].fields == ("document_valid", "inspection_passed")


def test_invalid_entries_are_dropped_and_unknown_keys_stripped():
    ruleset = parse_ruleset(
        {
            "overspeed": {"escalate_if_count": 0, "window_mins": 60},
            "harsh_braking": {"escalate_if_count": 2, "window_mins": 10, "colour": "red"},
            "idling": {"escalate_if_count": 2, "window_mins": 10, "escalate_to": "PANIC"},
            "bad": "not-a-map",
        }
    )

    assert set(ruleset.escalation) == {"harsh_braking"}
    assert "escalation.overspeed" in ruleset.dropped
    assert "escalation.idling" in ruleset.dropped
    assert "bad" in ruleset.dropped

    out = ruleset.to_out()
    assert out.escalation["harsh_braking"] == {"escalate_if_count": 2, "window_mins": 10, "escalate_to": None}


def test_structured_invalid_classifier_is_dropped_but_others_survive():
    ruleset = parse_ruleset(
        {
            "rules": [
                {"ruleId": "ok", "eventTypes": "*", "condition": {}, "severity": "info"},
                {"ruleId": "no-severity", "eventTypes": ["overspeed"]},
                "garbage",
            ]
        }
    )

    assert [r.rule_id for r in ruleset.classifiers] == ["ok"]
    assert ruleset.classifiers[0].event_types == ("*",)
    assert set(ruleset.dropped) == {"rules[1]", "rules[2]"}


def test_non_object_document_is_rejected():
    with pytest.raises(RuleLoadError):
        parse_ruleset(["overspeed"])


def test_loader_keeps_previous_ruleset_when_reload_fails(rules_file):
    loader = RuleSetLoader(rules_file)
    first = loader.current()
    assert "overspeed" in first.escalation

    rules_file.write_text("{not json", encoding="utf-8")
    _bump_mtime(rules_file)

    assert loader.reload() is False
    assert loader.last_error and "not valid JSON" in loader.last_error
    assert loader.current() is first


def test_loader_reloads_lazily_when_file_changes(rules_file, write_rules):
    loader = RuleSetLoader(rules_file)
    assert loader.current().escalation["overspeed"].escalate_if_count == 3

    write_rules(rules_file, {"overspeed": {"escalate_if_count": 5, "window_mins": 60}})
    _bump_mtime(rules_file)

    current = loader.current()
    assert current.escalation["overspeed"].escalate_if_count == 5
    assert "compliance" not in current.auto_close
    assert loader.last_error is None


def test_loader_without_file_serves_empty_ruleset(tmp_path):
    loader = RuleSetLoader(tmp_path / "missing.json")

    assert loader.current() is EMPTY_RULESET
    assert loader.last_error is not None
    assert loader.reload() is False
