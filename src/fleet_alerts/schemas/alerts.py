from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.fleet_alerts.schemas.common import AlertStatus, Severity


EvaluationAction = Literal["NONE", "ESCALATE", "AUTO_CLOSE"]


class AlertCreate(BaseModel):
    """Ingestion payload for a telemetry-derived alert."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    alert_id: Optional[str] = Field(
        default=None,
        description="Caller-assigned alert id; generated when omitted.",
        alias="alertId",
        min_length=1,
        max_length=200,
    )
    source_type: str = Field(
        ...,
        description="Alert source type (e.g. overspeed, compliance); key into the ruleset.",
        alias="sourceType",
        min_length=1,
        max_length=100,
    )
    severity: Optional[Severity] = Field(default=None, description="Initial severity; defaults to WARNING.")
    timestamp: Optional[datetime] = Field(default=None, description="Occurrence time; defaults to now.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Open key/value map (driverId, vehicleId, ...).")


class MetadataPatch(BaseModel):
    """Shallow merge patch for alert metadata; patch keys win."""

    metadata: Dict[str, Any] = Field(default_factory=dict, description="Keys to set on the alert metadata.")


class ResolveRequest(BaseModel):
    """Manual resolve request."""

    reason: Optional[str] = Field(default=None, description="Resolution reason; defaults to MANUAL_RESOLVE.", max_length=500)


class HistoryEntry(BaseModel):
    """One lifecycle transition recorded on the alert."""

    state: AlertStatus = Field(..., description="State entered.")
    timestamp: datetime = Field(..., description="UTC time of the transition.")
    reason: Optional[str] = Field(default=None, description="Transition reason code.")


class Classification(BaseModel):
    """Advisory severity label assigned by the first matching classifier rule."""

    rule_id: Optional[str] = Field(default=None, description="Classifier rule id.", alias="ruleId")
    severity: Severity = Field(..., description="Advisory severity (does not affect status).")


class AlertOut(BaseModel):
    """Response model for a persisted alert."""

    alert_id: str = Field(..., description="Unique alert id.", alias="alertId")
    source_type: str = Field(..., description="Alert source type.", alias="sourceType")
    severity: Severity = Field(..., description="Current severity.")
    status: AlertStatus = Field(..., description="Current lifecycle status.")
    timestamp: datetime = Field(..., description="Immutable occurrence time (UTC).")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Alert metadata.")
    history: List[HistoryEntry] = Field(default_factory=list, description="Ordered transition history.")
    last_transition_at: Optional[datetime] = Field(default=None, alias="lastTransitionAt")
    last_transition_reason: Optional[str] = Field(default=None, alias="lastTransitionReason")
    classification: Optional[Classification] = Field(default=None, description="Advisory classifier label.")


class AlertCreatedResponse(BaseModel):
    """Ingestion result."""

    alert_id: str = Field(..., alias="alertId")
    status: AlertStatus = Field(...)
    severity: Severity = Field(...)


class EvaluationResult(BaseModel):
    """Outcome of one rule evaluation pass for an alert."""

    action: EvaluationAction = Field("NONE", description="Transition applied by this evaluation.")
    details: Dict[str, Any] = Field(default_factory=dict, description="Rule/decision details.")


class AlertUpdateResponse(BaseModel):
    """Metadata update result: the fresh alert plus what evaluation did."""

    alert: AlertOut = Field(...)
    evaluation: EvaluationResult = Field(...)


class AlertListResponse(BaseModel):
    """Envelope for listing alerts."""

    items: List[AlertOut] = Field(..., description="Alerts, newest occurrence first.")
    total: int = Field(..., ge=0, description="Total count of matching alerts.")


class AlertsQuery(BaseModel):
    """Filter/pagination model for listing alerts."""

    status: Optional[AlertStatus] = Field(default=None)
    source_type: Optional[str] = Field(default=None, alias="sourceType")
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    limit: int = Field(50, ge=1, le=500)
    skip: int = Field(0, ge=0, le=100000)
