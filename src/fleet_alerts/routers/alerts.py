from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Path, Query, Request, status
from pydantic import ValidationError

from src.fleet_alerts.errors import AlertValidationError
from src.fleet_alerts.schemas.alerts import (
    AlertCreate,
    AlertCreatedResponse,
    AlertListResponse,
    AlertOut,
    AlertsQuery,
    AlertUpdateResponse,
    EvaluationResult,
    MetadataPatch,
    ResolveRequest,
)
from src.fleet_alerts.schemas.common import ErrorResponse
from src.fleet_alerts.services.alerts_service import AlertLifecycleManager
from src.fleet_alerts.state import get_state

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


def _manager(request: Request) -> AlertLifecycleManager:
    return get_state(request.app).alerts


@router.post(
    "",
    response_model=AlertCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Ingest alert",
    description="Create an alert (status OPEN) and evaluate rules before returning; may come back ESCALATED or AUTO_CLOSED.",
    operation_id="create_alert",
)
def create_alert(request: Request, payload: AlertCreate) -> AlertCreatedResponse:
    """Ingest an alert."""
    alert = _manager(request).create(payload)
    return AlertCreatedResponse(alertId=alert.alert_id, status=alert.status, severity=alert.severity)


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description="List alerts newest first, optionally filtered by status, sourceType and driverId.",
    operation_id="list_alerts",
)
def list_alerts(
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status", description="OPEN|ESCALATED|AUTO_CLOSED|RESOLVED"),
    source_type: Optional[str] = Query(default=None, alias="sourceType"),
    driver_id: Optional[str] = Query(default=None, alias="driverId"),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0, le=100000),
) -> AlertListResponse:
    """List alerts with filters and pagination."""
    try:
        filters = AlertsQuery(
            status=status_filter.upper() if status_filter else None,
            sourceType=source_type,
            driverId=driver_id,
            limit=limit,
            skip=skip,
        )
    except ValidationError as exc:
        raise AlertValidationError(str(exc)) from exc
    items, total = _manager(request).list_alerts(filters)
    return AlertListResponse(items=items, total=total)


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert",
    description="Fetch a single alert, including its transition history.",
    operation_id="get_alert",
)
def get_alert(request: Request, alert_id: str = Path(..., description="Alert id.")) -> AlertOut:
    """Get an alert by id."""
    return _manager(request).get(alert_id)


@router.patch(
    "/{alert_id}/metadata",
    response_model=AlertUpdateResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update alert metadata",
    description="Shallow-merge metadata (patch keys win) and re-evaluate rules, e.g. auto-close on document renewal.",
    operation_id="update_alert_metadata",
)
def update_alert_metadata(
    request: Request,
    payload: MetadataPatch,
    alert_id: str = Path(..., description="Alert id."),
) -> AlertUpdateResponse:
    """Patch alert metadata."""
    alert, evaluation = _manager(request).update_metadata(alert_id, payload.metadata)
    return AlertUpdateResponse(alert=alert, evaluation=evaluation)


@router.post(
    "/{alert_id}/resolve",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Resolve alert",
    description="Manually resolve an OPEN or ESCALATED alert. Terminal alerts are returned unchanged.",
    operation_id="resolve_alert",
)
def resolve_alert(
    request: Request,
    payload: Optional[ResolveRequest] = Body(default=None),
    alert_id: str = Path(..., description="Alert id."),
) -> AlertOut:
    """Resolve an alert."""
    reason = payload.reason if payload else None
    return _manager(request).resolve(alert_id, reason)


@router.post(
    "/{alert_id}/evaluate",
    response_model=EvaluationResult,
    responses={404: {"model": ErrorResponse}},
    summary="Evaluate alert",
    description="Re-run rule evaluation for one alert. Repeated calls are no-ops once the alert reached its target state.",
    operation_id="evaluate_alert",
)
def evaluate_alert(request: Request, alert_id: str = Path(..., description="Alert id.")) -> EvaluationResult:
    """Evaluate an alert."""
    return _manager(request).evaluate(alert_id)
