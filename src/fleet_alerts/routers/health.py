from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.fleet_alerts.config import sanitize_mongo_uri
from src.fleet_alerts.schemas.common import HealthResponse, utc_now
from src.fleet_alerts.state import get_state

router = APIRouter(tags=["Health"])


class MongoConnectivityResponse(BaseModel):
    """Alert store reachability as seen from this process."""

    ok: bool = Field(..., description="Whether a ping against the alert store succeeded.")
    mongo_uri_source: str = Field(..., description="MONGO_URI when set in the environment, otherwise default.")
    mongo_uri_sanitized: str = Field(..., description="Effective store URI with any password replaced by ***.")
    database: str = Field(..., description="Database holding alerts and the event log.")
    timestamp: str = Field(..., description="UTC time of the ping (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Extra diagnostics.")


class SweeperDiagnosticsResponse(BaseModel):
    """Diagnostics model describing the expiry sweeper configuration and last run."""

    enabled: bool = Field(..., description="Whether the background sweeper loop is started.")
    running: bool = Field(..., description="Whether the sweeper task is currently alive.")
    interval_sec: int = Field(..., description="Seconds between sweeps.")
    batch_size: int = Field(..., description="Max alerts scanned per sweep.")
    alert_expiry_hours: int = Field(..., description="Age after which non-terminal alerts are auto-closed.")
    last_run: Optional[Dict[str, Any]] = Field(default=None, description="Counters of the most recent sweep.")
    timestamp: str = Field(..., description="UTC timestamp when the diagnostics were produced (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Liveness only; does not touch the store."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the configured MongoDB and reports how the URI was resolved. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Ping the alert store and report the masked URI."""
    state = get_state(request.app)
    ok = state.mongo.ping()

    return MongoConnectivityResponse(
        ok=ok,
        mongo_uri_source=state.config.mongo_uri_source,
        mongo_uri_sanitized=sanitize_mongo_uri(state.config.mongo_uri),
        database=state.config.mongo_db_name,
        timestamp=utc_now().isoformat(),
        meta={},
    )


@router.get(
    "/api/health/sweeper",
    response_model=SweeperDiagnosticsResponse,
    summary="Sweeper diagnostics",
    description="Reports expiry sweeper configuration and the counters of its last run.",
    operation_id="sweeper_diagnostics",
)
def sweeper_diagnostics(request: Request) -> SweeperDiagnosticsResponse:
    """Return sweeper configuration and last-run diagnostics."""
    state = get_state(request.app)
    cfg = state.config
    task = state.sweeper_task
    last = state.sweeper.last_report
    return SweeperDiagnosticsResponse(
        enabled=bool(cfg.sweeper_enabled),
        running=bool(task is not None and not task.done()),  # type: ignore[attr-defined]
        interval_sec=int(cfg.sweep_interval_sec),
        batch_size=int(cfg.sweep_batch_size),
        alert_expiry_hours=int(cfg.alert_expiry_hours),
        last_run=last.to_dict() if last else None,
        timestamp=utc_now().isoformat(),
    )
