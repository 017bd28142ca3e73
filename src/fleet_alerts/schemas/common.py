from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Severity levels for fleet alerts."""

    info = "INFO"
    warning = "WARNING"
    critical = "CRITICAL"


class AlertStatus(str, Enum):
    """Lifecycle states of an alert. AUTO_CLOSED and RESOLVED are terminal."""

    open = "OPEN"
    escalated = "ESCALATED"
    auto_closed = "AUTO_CLOSED"
    resolved = "RESOLVED"


class EventType(str, Enum):
    """Event log entry types."""

    created = "CREATED"
    escalated = "ESCALATED"
    auto_closed = "AUTO_CLOSED"
    resolved = "RESOLVED"
    info = "INFO"


# Source-state set for every guarded transition.
NON_TERMINAL_STATUSES = (AlertStatus.open.value, AlertStatus.escalated.value)
TERMINAL_STATUSES = (AlertStatus.auto_closed.value, AlertStatus.resolved.value)


class HealthResponse(BaseModel):
    """Response model for health endpoints."""

    status: str = Field(..., description="High-level health status string (e.g., 'ok').")
    message: str = Field(..., description="Human-readable status message.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    detail: str = Field(..., description="Human-readable error details.")
    code: Optional[str] = Field(default=None, description="Optional machine-readable error code.")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata for debugging.")


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def as_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)
