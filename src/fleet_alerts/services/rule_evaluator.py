from __future__ import annotations

import logging
import operator
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from src.fleet_alerts.schemas.common import TERMINAL_STATUSES, AlertStatus, as_utc
from src.fleet_alerts.schemas.rules import ClassifierRule, EscalationRule
from src.fleet_alerts.services.alert_store import AlertStore, group_filter
from src.fleet_alerts.services.rules_loader import RuleSet

logger = logging.getLogger(__name__)

NONE = "NONE"
ESCALATE = "ESCALATE"
AUTO_CLOSE = "AUTO_CLOSE"

REASON_DOCUMENT_RENEWED = "DOCUMENT_RENEWED"

# Checked for every source type that has an auto-close rule, after the rule's own fields.
AUTO_CLOSE_FALLBACK_FIELDS = ("document_valid", "document_renewed")

_MISSING = object()

OPERATOR_MAP: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "equals": operator.eq,
    "==": operator.eq,
    "ne": operator.ne,
    "not_equals": operator.ne,
    "!=": operator.ne,
    "gt": operator.gt,
    "greater": operator.gt,
    ">": operator.gt,
    "gte": operator.ge,
    "greater_or_equal": operator.ge,
    ">=": operator.ge,
    "lt": operator.lt,
    "less": operator.lt,
    "<": operator.lt,
    "lte": operator.le,
    "less_or_equal": operator.le,
    "<=": operator.le,
}


def escalation_reason(rule: EscalationRule) -> str:
    return f"RULE_COUNT_{rule.escalate_if_count}_IN_{rule.window_mins}MIN"


@dataclass(frozen=True)
class Decision:
    """What evaluation wants to do. Applying it is the lifecycle manager's job."""

    action: str = NONE
    details: Dict[str, Any] = field(default_factory=dict)
    # (alertId, severity at decision time) for every alert the action targets.
    targets: Tuple[Tuple[str, str], ...] = ()
    reason: Optional[str] = None
    severity: Optional[str] = None


def _evaluate_condition(value: Any, op: str, operand: Any, warnings: List[str], field_name: str) -> bool:
    func = OPERATOR_MAP.get(op)
    if func is None:
        warnings.append(f"unknown operator {op!r} on field {field_name!r}")
        return False
    if value is _MISSING or value is None:
        return False
    try:
        return bool(func(value, operand))
    except TypeError:
        return False


# PUBLIC_INTERFACE
def match_condition(condition: Mapping[str, Any], metadata: Mapping[str, Any], warnings: List[str]) -> bool:
    """
    Match a classifier condition against alert metadata.

    A condition maps field -> expected value (equality) or field -> {operator: operand, ...}.
    Every clause must hold. An unknown operator makes the clause non-matching and appends a
    warning; it never raises.
    """
    for field_name, expected in condition.items():
        value = metadata.get(field_name, _MISSING)
        if isinstance(expected, Mapping):
            for op, operand in expected.items():
                if not _evaluate_condition(value, str(op), operand, warnings, field_name):
                    return False
        elif value is _MISSING or value != expected:
            return False
    return True


# PUBLIC_INTERFACE
def classify(
    source_type: str, metadata: Mapping[str, Any], classifiers: Sequence[ClassifierRule]
) -> Tuple[Optional[ClassifierRule], List[str]]:
    """First classifier rule (list order) whose event types and condition match; plus any warnings."""
    warnings: List[str] = []
    for rule in classifiers:
        if source_type not in rule.event_types and "*" not in rule.event_types:
            continue
        if match_condition(rule.condition, metadata, warnings):
            return rule, warnings
    return None, warnings


class RuleEvaluator:
    """
    Decides ESCALATE / AUTO_CLOSE / NONE for one alert against a ruleset.

    Reads only. Decisions are made from the alert's persisted state as passed in by the
    caller (always a fresh read), so an alert already in its target state yields NONE.
    """

    def __init__(self, store: AlertStore):
        self._store = store

    def _escalation(self, alert: Mapping[str, Any], rule: EscalationRule) -> Optional[Decision]:
        window_end = as_utc(alert["timestamp"])
        window_start = window_end - timedelta(minutes=int(rule.window_mins))
        driver_id = (alert.get("metadata") or {}).get("driverId")
        key = group_filter(alert["sourceType"], driver_id)

        count = self._store.count_in_window(key, window_start, window_end)
        if count < rule.escalate_if_count:
            return None

        # Retroactive: every still-OPEN alert of the group inside the window.
        pending = self._store.find_in_window(key, window_start, window_end, statuses=[AlertStatus.open.value])
        # With no OPEN member left, only a pending severity bump on this alert remains.
        needs_bump = rule.escalate_to is not None and alert.get("severity") != rule.escalate_to.value
        if not pending and not needs_bump:
            return None

        return Decision(
            action=ESCALATE,
            details={
                "count": count,
                "threshold": rule.escalate_if_count,
                "windowMinutes": rule.window_mins,
                "groupKey": {"sourceType": alert["sourceType"], "driverId": driver_id},
                "escalateTo": rule.escalate_to.value if rule.escalate_to else None,
            },
            targets=tuple((d["alertId"], d.get("severity")) for d in pending),
            reason=escalation_reason(rule),
            severity=rule.escalate_to.value if rule.escalate_to else None,
        )

    def _auto_close(self, alert: Mapping[str, Any], fields: Sequence[str]) -> Optional[Decision]:
        metadata = alert.get("metadata") or {}
        candidates = list(dict.fromkeys([*fields, *AUTO_CLOSE_FALLBACK_FIELDS]))
        for name in candidates:
            if metadata.get(name) is True:
                return Decision(
                    action=AUTO_CLOSE,
                    details={"field": name},
                    targets=((alert["alertId"], alert.get("severity")),),
                    reason=REASON_DOCUMENT_RENEWED,
                )
        return None

    # PUBLIC_INTERFACE
    def decide(self, alert: Mapping[str, Any], ruleset: RuleSet) -> Decision:
        """Return the transition this alert qualifies for right now."""
        status = alert.get("status")
        if status in TERMINAL_STATUSES:
            return Decision(details={"status": status, "skipped": "terminal"})

        source_type = alert.get("sourceType")
        escalation_rule = ruleset.escalation.get(source_type)
        auto_close_rule = ruleset.auto_close.get(source_type)
        if escalation_rule is None and auto_close_rule is None:
            return Decision(details={"skipped": "no_rule"})

        if escalation_rule is not None:
            decision = self._escalation(alert, escalation_rule)
            if decision is not None:
                return decision

        if auto_close_rule is not None:
            decision = self._auto_close(alert, auto_close_rule.fields)
            if decision is not None:
                return decision

        return Decision()
