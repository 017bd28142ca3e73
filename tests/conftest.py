from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterator
from datetime import datetime
from pathlib import Path

import httpx
import mongomock
import pytest

from src.fleet_alerts.config import FleetAlertsConfig
from src.fleet_alerts.db.mongo import MongoManager
from src.fleet_alerts.main import create_app
from src.fleet_alerts.schemas.common import utc_now
from src.fleet_alerts.services.alerts_service import AlertLifecycleManager
from src.fleet_alerts.state import AppState, build_state

TEST_RULES = {
    "overspeed": {"escalate_if_count": 3, "window_mins": 60, "escalate_to": "CRITICAL"},
    "feedback_negative": {"escalate_if_count": 2, "window_mins": 1440, "escalate_to": "CRITICAL"},
    "compliance": {"auto_close_if": "document_valid"},
}


def _write_rules(path: Path, rules) -> None:
    path.write_text(json.dumps(rules), encoding="utf-8")


@pytest.fixture
def now() -> datetime:
    """UTC now truncated to whole seconds (BSON dates keep milliseconds only)."""
    return utc_now().replace(microsecond=0)


@pytest.fixture
def write_rules():
    """Writer for rules documents: write_rules(path, rules)."""
    return _write_rules


@pytest.fixture
def rules_file(tmp_path: Path) -> Path:
    """Legacy flat-map rules file used by most tests."""
    path = tmp_path / "rules.json"
    _write_rules(path, TEST_RULES)
    return path


@pytest.fixture
def config(rules_file: Path) -> FleetAlertsConfig:
    """Deterministic config: sweeper loop off so tests drive sweeps explicitly."""
    return FleetAlertsConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name="fleet_alerts_test",
        store_timeout_ms=1000,
        rules_path=str(rules_file),
        sweep_interval_sec=1,
        sweep_batch_size=500,
        alert_expiry_hours=24,
        sweeper_enabled=False,
    )


@pytest.fixture
def mongo(config: FleetAlertsConfig) -> Iterator[MongoManager]:
    """Mongo manager backed by an in-memory mongomock client, with indexes created."""
    manager = MongoManager(
        config.mongo_uri,
        db_name=config.mongo_db_name,
        timeout_ms=config.store_timeout_ms,
        client=mongomock.MongoClient(),
    )
    manager.init_indexes()
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture
def state(config: FleetAlertsConfig, mongo: MongoManager) -> AppState:
    return build_state(config, mongo)


@pytest.fixture
def manager(state: AppState) -> AlertLifecycleManager:
    return state.alerts


@pytest.fixture
def app(config: FleetAlertsConfig, mongo: MongoManager):
    """FastAPI app wired to the mongomock-backed manager."""
    return create_app(config, mongo)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """
    Async HTTP client bound to the FastAPI ASGI app.

    ASGITransport does not run startup hooks, so rules load lazily on first use and
    the sweeper loop is never started.
    """
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def anyio_backend() -> str:
    """The service and its tests are asyncio-based; run anyio-marked tests on asyncio only."""
    return "asyncio"
