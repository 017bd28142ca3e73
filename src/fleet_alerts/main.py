from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.fleet_alerts.config import FleetAlertsConfig, load_config, setup_logging
from src.fleet_alerts.db.mongo import MongoManager
from src.fleet_alerts.errors import (
    AlertConflictError,
    AlertNotFoundError,
    AlertValidationError,
    FleetAlertsError,
    StorageUnavailableError,
)
from src.fleet_alerts.routers import alerts, events, health, rules
from src.fleet_alerts.schemas.common import ErrorResponse
from src.fleet_alerts.services.expiry_sweeper import sweeper_loop
from src.fleet_alerts.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and liveness."},
    {"name": "Alerts", "description": "Alert ingestion, metadata updates, manual resolve and evaluation."},
    {"name": "Rules", "description": "Current escalation/auto-close/classifier rules and hot reload."},
    {"name": "Events", "description": "Append-only lifecycle event log."},
]

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    AlertValidationError: 400,
    AlertNotFoundError: 404,
    AlertConflictError: 409,
    StorageUnavailableError: 503,
}


def _error_response(status_code: int, detail: str, code: Optional[str]) -> JSONResponse:
    body = ErrorResponse(detail=detail, code=code)
    return JSONResponse(body.model_dump(), status_code=status_code)


async def _fleet_alerts_error_handler(request: Request, exc: FleetAlertsError) -> JSONResponse:
    status_code = next((s for t, s in _ERROR_STATUS.items() if isinstance(exc, t)), 500)
    if status_code >= 500:
        logger.warning("Request %s %s failed: %s", request.method, request.url.path, exc)
    return _error_response(status_code, str(exc), exc.code)


async def _validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(400, str(exc), AlertValidationError.code)


def _env_cors_origins() -> List[str]:
    # Comma-separated list of extra origins (dashboards, preview deployments).
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


# PUBLIC_INTERFACE
def create_app(config: Optional[FleetAlertsConfig] = None, mongo: Optional[MongoManager] = None) -> FastAPI:
    """Build the FastAPI app with its state, routers, error handlers and background sweeper hooks."""
    config = config or load_config()

    app = FastAPI(
        title="Fleet Alert Lifecycle API",
        description=(
            "Ingests telemetry-derived fleet alerts and drives them through OPEN → ESCALATED → "
            "AUTO_CLOSED/RESOLVED using configurable rules, an append-only event log and a periodic expiry sweeper."
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
    )

    # Initialize typed app state (config + Mongo manager + services)
    init_state(app, config, mongo)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: verify Mongo, ensure indexes, load rules and start the sweeper."""
        state = get_state(app)
        setup_logging(state.config.log_level)

        # Connect + verify early so misconfigured Mongo doesn't silently break the sweeper.
        state.mongo.connect()
        if not state.mongo.ping():
            raise RuntimeError("Mongo connectivity check failed during startup. Verify MONGO_URI.")
        state.mongo.init_indexes()

        state.rules.load()

        if state.config.sweeper_enabled:
            app.state._sweeper_shutdown = asyncio.Event()
            state.sweeper_task = asyncio.create_task(
                sweeper_loop(state.sweeper, state.config.sweep_interval_sec, app.state._sweeper_shutdown)
            )

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the sweeper between runs and close Mongo connections."""
        state = get_state(app)

        sweeper_shutdown = getattr(app.state, "_sweeper_shutdown", None)
        if sweeper_shutdown is not None:
            sweeper_shutdown.set()
        sweeper_task = state.sweeper_task
        if sweeper_task is not None:
            try:
                # An in-flight batch is allowed to finish.
                await asyncio.wait_for(sweeper_task, timeout=30.0)
            except Exception:
                logger.exception("Error stopping expiry sweeper task")

        state.mongo.close()

    app.add_exception_handler(FleetAlertsError, _fleet_alerts_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    allowed_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    allowed_origins.extend(_env_cors_origins())
    # De-dupe while preserving order
    _seen = set()
    allowed_origins = [o for o in allowed_origins if not (o in _seen or _seen.add(o))]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(rules.router)
    app.include_router(events.router)
    return app


app = create_app()
