from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, Request
from pydantic import ValidationError

from src.fleet_alerts.errors import AlertValidationError
from src.fleet_alerts.schemas.events import EventCountsResponse, EventListResponse, EventsQuery
from src.fleet_alerts.state import get_state

router = APIRouter(prefix="/api/events", tags=["Events"])


@router.get(
    "",
    response_model=EventListResponse,
    summary="List event log",
    description="List lifecycle events with filters: alertId, type, time range. Results sorted by time desc.",
    operation_id="list_events",
)
def list_events(
    request: Request,
    alert_id: Optional[str] = Query(default=None, alias="alertId"),
    event_type: Optional[str] = Query(default=None, alias="type", description="CREATED|ESCALATED|AUTO_CLOSED|RESOLVED|INFO"),
    since: Optional[str] = Query(default=None, description="ISO datetime start (inclusive)"),
    until: Optional[str] = Query(default=None, description="ISO datetime end (inclusive)"),
    limit: int = Query(200, ge=1, le=1000),
    skip: int = Query(0, ge=0, le=100000),
) -> EventListResponse:
    """List event log entries."""
    # Let Pydantic parse datetimes via the model (it accepts datetime, but also parses strings).
    try:
        filters = EventsQuery(
            alertId=alert_id,
            type=event_type.upper() if event_type else None,
            since=since,
            until=until,
            limit=limit,
            skip=skip,
        )
    except ValidationError as exc:
        raise AlertValidationError(str(exc)) from exc
    items, total = get_state(request.app).events.list_events(filters)
    return EventListResponse(items=items, total=total)


@router.get(
    "/counts",
    response_model=EventCountsResponse,
    summary="Event counts",
    description="Count event log entries per type, optionally within a time range.",
    operation_id="event_counts",
)
def event_counts(
    request: Request,
    since: Optional[datetime] = Query(default=None),
    until: Optional[datetime] = Query(default=None),
) -> EventCountsResponse:
    """Count events by type."""
    return EventCountsResponse(counts=get_state(request.app).events.counts(since, until))
