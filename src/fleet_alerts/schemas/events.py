from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.fleet_alerts.schemas.common import EventType


class EventLogOut(BaseModel):
    """Response model for an event log entry."""

    id: str = Field(..., description="Event id (Mongo ObjectId string).")
    alert_id: str = Field(..., description="Alert this entry refers to.", alias="alertId")
    type: EventType = Field(..., description="Event type.")
    timestamp: datetime = Field(..., description="UTC time the event was recorded.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event details.")


class EventListResponse(BaseModel):
    """Envelope for listing events."""

    items: List[EventLogOut] = Field(..., description="Events, newest first.")
    total: int = Field(..., ge=0, description="Total count of matching events.")


class EventsQuery(BaseModel):
    """Filter/pagination model for the event log."""

    alert_id: Optional[str] = Field(default=None, alias="alertId")
    type: Optional[EventType] = Field(default=None)
    since: Optional[datetime] = Field(default=None, description="Start time (inclusive).")
    until: Optional[datetime] = Field(default=None, description="End time (inclusive).")
    limit: int = Field(200, ge=1, le=1000)
    skip: int = Field(0, ge=0, le=100000)


class EventCountsResponse(BaseModel):
    """Event log counts grouped by type."""

    counts: Dict[str, int] = Field(default_factory=dict)
