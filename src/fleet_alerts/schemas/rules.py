from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PositiveInt, field_validator

from src.fleet_alerts.schemas.common import Severity


def _upper_severity(v: Any) -> Any:
    return v.strip().upper() if isinstance(v, str) else v


# Rule files may spell severities in any case.
RuleSeverity = Annotated[Severity, BeforeValidator(_upper_severity)]


class EscalationRule(BaseModel):
    """Count-in-window escalation rule for one source type.

    Unknown keys in the source document are dropped (extra="ignore").
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    source_type: str = Field(..., min_length=1)
    escalate_if_count: PositiveInt = Field(..., description="Alerts needed in the window to escalate.")
    window_mins: PositiveInt = Field(..., description="Lookback window in minutes.")
    escalate_to: Optional[RuleSeverity] = Field(default=None, description="Severity applied to escalated alerts.")


class AutoCloseRule(BaseModel):
    """Metadata-flag auto-close rule for one source type."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    source_type: str = Field(..., min_length=1)
    fields: Tuple[str, ...] = Field(..., min_length=1, description="Metadata fields whose true value closes the alert.")

    @field_validator("fields", mode="before")
    @classmethod
    def _coerce_fields(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        return v


class ClassifierRule(BaseModel):
    """Condition-based advisory severity classifier (first match wins)."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    rule_id: str = Field(..., min_length=1, alias="ruleId")
    name: Optional[str] = Field(default=None)
    event_types: Tuple[str, ...] = Field(..., min_length=1, alias="eventTypes")
    condition: Dict[str, Any] = Field(default_factory=dict)
    severity: RuleSeverity = Field(...)
    description: Optional[str] = Field(default=None)

    @field_validator("event_types", mode="before")
    @classmethod
    def _coerce_event_types(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        return v


class RuleSetOut(BaseModel):
    """Sanitised view of the currently loaded ruleset."""

    source_format: str = Field(..., description="legacy | structured | empty")
    loaded_at: Optional[str] = Field(default=None, description="ISO time of the last successful load.")
    rules: List[Dict[str, Any]] = Field(default_factory=list)
    escalation: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    auto_close: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    dropped: List[str] = Field(default_factory=list, description="Entries rejected by validation.")


class RulesReloadResponse(BaseModel):
    """Result of a forced rules reload."""

    ok: bool = Field(...)
    error: Optional[str] = Field(default=None)
    ruleset: RuleSetOut = Field(...)
