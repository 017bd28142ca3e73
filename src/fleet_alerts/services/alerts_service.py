from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError

from src.fleet_alerts.errors import AlertNotFoundError, AlertValidationError, StorageUnavailableError
from src.fleet_alerts.schemas.alerts import AlertCreate, AlertOut, AlertsQuery, EvaluationResult
from src.fleet_alerts.schemas.common import AlertStatus, EventType, Severity, as_utc, utc_now
from src.fleet_alerts.services.alert_store import AlertStore
from src.fleet_alerts.services.event_log import EventLog
from src.fleet_alerts.services.rule_evaluator import (
    AUTO_CLOSE,
    ESCALATE,
    NONE,
    Decision,
    RuleEvaluator,
    classify,
)
from src.fleet_alerts.services.rules_loader import RuleSetLoader

logger = logging.getLogger(__name__)

REASON_CREATED = "CREATED"
REASON_MANUAL_RESOLVE = "MANUAL_RESOLVE"
REASON_TIME_WINDOW_EXPIRED = "TIME_WINDOW_EXPIRED"


def _doc_to_alert_out(doc: dict) -> AlertOut:
    return AlertOut(
        alertId=doc["alertId"],
        sourceType=doc["sourceType"],
        severity=doc.get("severity", Severity.warning.value),
        status=doc.get("status", AlertStatus.open.value),
        timestamp=doc["timestamp"],
        metadata=doc.get("metadata") or {},
        history=doc.get("history") or [],
        lastTransitionAt=doc.get("lastTransitionAt"),
        lastTransitionReason=doc.get("lastTransitionReason"),
        classification=doc.get("classification"),
    )


def _validate_metadata_keys(metadata: Mapping[str, Any]) -> None:
    # Keys become Mongo field paths on merge.
    for key in metadata:
        if not isinstance(key, str) or not key or key.startswith("$") or "." in key:
            raise AlertValidationError(f"invalid metadata key: {key!r}")


class AlertLifecycleManager:
    """
    Create / update-metadata / resolve / evaluate for alerts.

    Every status change goes through AlertStore.transition (compare-and-set on the
    non-terminal statuses) and an event is appended only by the caller whose write
    modified the record. No lock is held between a decision and its write.
    """

    def __init__(
        self,
        store: AlertStore,
        events: EventLog,
        rules: RuleSetLoader,
        evaluator: Optional[RuleEvaluator] = None,
    ):
        self._store = store
        self._events = events
        self._rules = rules
        self._evaluator = evaluator or RuleEvaluator(store)

    def _require(self, alert_id: str) -> Dict[str, Any]:
        doc = self._store.get(alert_id)
        if doc is None:
            raise AlertNotFoundError(alert_id)
        return doc

    # PUBLIC_INTERFACE
    def get(self, alert_id: str) -> AlertOut:
        """Fetch one alert; raises AlertNotFoundError."""
        return _doc_to_alert_out(self._require(alert_id))

    # PUBLIC_INTERFACE
    def list_alerts(self, filters: AlertsQuery) -> Tuple[List[AlertOut], int]:
        """List alerts with filters and pagination. Returns (page, total_matching)."""
        docs, total = self._store.list_alerts(filters)
        return [_doc_to_alert_out(d) for d in docs], total

    # PUBLIC_INTERFACE
    def create(self, payload: Union[AlertCreate, Mapping[str, Any]]) -> AlertOut:
        """
        Ingest an alert: persist it OPEN, log CREATED, then evaluate rules before returning.

        Creation can therefore come back already ESCALATED or AUTO_CLOSED.

        Writes are not transactional. Once the insert succeeds, a store outage during
        the CREATED event or the evaluation does not fail the call: the inserted (OPEN)
        snapshot is returned, the CREATED event may be missing, and a partially applied
        escalation is logged. A retry with the same alertId gets AlertConflictError.
        """
        if not isinstance(payload, AlertCreate):
            try:
                payload = AlertCreate.model_validate(payload)
            except ValidationError as exc:
                raise AlertValidationError(str(exc)) from exc
        _validate_metadata_keys(payload.metadata)

        now = utc_now()
        alert_id = payload.alert_id or str(uuid4())
        ts = as_utc(payload.timestamp) if payload.timestamp else now
        severity = (payload.severity or Severity.warning).value

        doc: Dict[str, Any] = {
            "alertId": alert_id,
            "sourceType": payload.source_type,
            "severity": severity,
            "status": AlertStatus.open.value,
            "timestamp": ts,
            "metadata": dict(payload.metadata),
            "history": [{"state": AlertStatus.open.value, "timestamp": now, "reason": REASON_CREATED}],
            "lastTransitionAt": now,
            "lastTransitionReason": REASON_CREATED,
        }

        # Advisory label only; status is never derived from it.
        rule, warnings = classify(payload.source_type, payload.metadata, self._rules.current().classifiers)
        for w in warnings:
            logger.warning("Classifier warning for alertId=%s: %s", alert_id, w)
        if rule is not None:
            doc["classification"] = {"ruleId": rule.rule_id, "severity": rule.severity.value}

        created = self._store.insert(doc)
        logger.info("Alert created alertId=%s sourceType=%s", alert_id, payload.source_type)
        try:
            self._events.append(
                alert_id,
                EventType.created,
                {"sourceType": payload.source_type, "severity": severity, "metadata": created["metadata"]},
            )
            self._evaluate_doc(created, trigger="create")
            return self.get(alert_id)
        except StorageUnavailableError:
            # The insert stands; the sweeper re-evaluates the alert on its next pass.
            logger.warning(
                "Alert alertId=%s persisted but post-insert steps failed; returning the inserted snapshot",
                alert_id,
                exc_info=True,
            )
            return _doc_to_alert_out(created)

    # PUBLIC_INTERFACE
    def update_metadata(self, alert_id: str, patch: Mapping[str, Any]) -> Tuple[AlertOut, EvaluationResult]:
        """Shallow-merge metadata (patch keys win), persist, then re-run evaluation."""
        _validate_metadata_keys(patch)
        doc = self._store.merge_metadata(alert_id, dict(patch))
        if doc is None:
            raise AlertNotFoundError(alert_id)
        result = self._evaluate_doc(doc, trigger="metadata_update")
        return self.get(alert_id), result

    # PUBLIC_INTERFACE
    def resolve(self, alert_id: str, reason: Optional[str] = None) -> AlertOut:
        """
        Manually resolve from any non-terminal status (including ESCALATED).

        Resolving an already terminal alert changes nothing and logs no event.
        """
        self._require(alert_id)
        reason = reason or REASON_MANUAL_RESOLVE
        if self._store.transition(alert_id, AlertStatus.resolved, reason):
            self._record(alert_id, EventType.resolved, {"reason": reason})
            logger.info("Alert resolved alertId=%s reason=%s", alert_id, reason)
        else:
            logger.info("Resolve of alertId=%s had no effect (already terminal)", alert_id)
        return self.get(alert_id)

    # PUBLIC_INTERFACE
    def evaluate(self, alert_id: str, trigger: str = "evaluate") -> EvaluationResult:
        """Re-read the alert and apply whatever the current rules decide. Safe to call repeatedly."""
        return self._evaluate_doc(self._require(alert_id), trigger=trigger)

    # PUBLIC_INTERFACE
    def expire(self, alert_id: str, timestamp: Optional[datetime] = None) -> bool:
        """Guarded age expiry to AUTO_CLOSED. Returns True only for the writer that applied it."""
        if not self._store.transition(alert_id, AlertStatus.auto_closed, REASON_TIME_WINDOW_EXPIRED):
            return False
        payload: Dict[str, Any] = {"reason": REASON_TIME_WINDOW_EXPIRED, "trigger": "sweep"}
        if timestamp is not None:
            payload["alertTimestamp"] = as_utc(timestamp).isoformat()
        self._record(alert_id, EventType.auto_closed, payload)
        logger.info("Alert expired alertId=%s", alert_id)
        return True

    def _record(self, alert_id: str, event_type: EventType, payload: Dict[str, Any]) -> None:
        # Only called after a write went through; a failure here leaves that write without its event.
        try:
            self._events.append(alert_id, event_type, payload)
        except StorageUnavailableError:
            logger.error(
                "alertId=%s was updated but its %s event was not logged", alert_id, EventType(event_type).value
            )
            raise

    def _evaluate_doc(self, doc: Mapping[str, Any], trigger: str) -> EvaluationResult:
        decision = self._evaluator.decide(doc, self._rules.current())
        if decision.action == ESCALATE:
            return self._apply_escalation(doc, decision, trigger)
        if decision.action == AUTO_CLOSE:
            return self._apply_auto_close(doc, decision, trigger)
        return EvaluationResult(action=NONE, details=decision.details)

    def _apply_escalation(self, doc: Mapping[str, Any], decision: Decision, trigger: str) -> EvaluationResult:
        reason = decision.reason or ESCALATE
        trigger_id = doc["alertId"]
        severity = decision.severity
        escalated: List[str] = []
        bumped = False

        # Group members converge individually; each row is its own compare-and-set.
        # Only the triggering alert takes the rule's target severity.
        try:
            for target_id, prior_severity in decision.targets:
                extra = {"severity": severity} if severity and target_id == trigger_id else None
                if not self._store.transition(target_id, AlertStatus.escalated, reason, extra_set=extra):
                    continue
                escalated.append(target_id)
                self._record(
                    target_id,
                    EventType.escalated,
                    {"reason": reason, "trigger": trigger, "triggeredBy": trigger_id, **decision.details},
                )
                if extra and prior_severity != severity:
                    bumped = True

            # Triggering alert already ESCALATED (earlier, or by a concurrent writer).
            if severity and trigger_id not in escalated:
                bumped = self._store.bump_severity(trigger_id, severity)

            if bumped:
                self._record(trigger_id, EventType.info, {"msg": "severity_bumped", "to": severity})
        except StorageUnavailableError:
            if escalated:
                logger.error(
                    "Escalation partially applied triggeredBy=%s escalated=%s", trigger_id, ",".join(escalated)
                )
            raise

        if not escalated and not bumped:
            return EvaluationResult(action=NONE, details={**decision.details, "conflict": True})

        logger.info("Escalated %d alert(s) reason=%s triggeredBy=%s", len(escalated), reason, trigger_id)
        return EvaluationResult(
            action=ESCALATE,
            details={**decision.details, "reason": reason, "escalated": escalated, "severityBumped": bumped},
        )

    def _apply_auto_close(self, doc: Mapping[str, Any], decision: Decision, trigger: str) -> EvaluationResult:
        reason = decision.reason or AUTO_CLOSE
        alert_id = doc["alertId"]
        if not self._store.transition(alert_id, AlertStatus.auto_closed, reason):
            return EvaluationResult(action=NONE, details={**decision.details, "conflict": True})
        self._record(alert_id, EventType.auto_closed, {"reason": reason, "trigger": trigger, **decision.details})
        logger.info("Alert auto-closed alertId=%s reason=%s", alert_id, reason)
        return EvaluationResult(action=AUTO_CLOSE, details={**decision.details, "reason": reason})
