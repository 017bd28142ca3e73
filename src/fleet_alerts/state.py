from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI

from src.fleet_alerts.config import FleetAlertsConfig
from src.fleet_alerts.db.mongo import MongoManager
from src.fleet_alerts.services.alert_store import AlertStore
from src.fleet_alerts.services.alerts_service import AlertLifecycleManager
from src.fleet_alerts.services.event_log import EventLog
from src.fleet_alerts.services.expiry_sweeper import ExpirySweeper
from src.fleet_alerts.services.notifier import EventBroadcaster
from src.fleet_alerts.services.rules_loader import RuleSetLoader


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: FleetAlertsConfig
    mongo: MongoManager
    broadcaster: EventBroadcaster
    rules: RuleSetLoader
    store: AlertStore
    events: EventLog
    alerts: AlertLifecycleManager
    sweeper: ExpirySweeper
    sweeper_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles


# PUBLIC_INTERFACE
def build_state(config: FleetAlertsConfig, mongo: Optional[MongoManager] = None) -> AppState:
    """Wire the store, event log, rule loader, lifecycle manager and sweeper for one process."""
    mongo = mongo or MongoManager(config.mongo_uri, db_name=config.mongo_db_name, timeout_ms=config.store_timeout_ms)
    cols = mongo.collections()

    broadcaster = EventBroadcaster()
    rules = RuleSetLoader(config.rules_path)
    store = AlertStore(cols.alerts)
    events = EventLog(cols.event_log, broadcaster)
    manager = AlertLifecycleManager(store, events, rules)
    sweeper = ExpirySweeper(
        manager,
        store,
        batch_size=config.sweep_batch_size,
        expiry=timedelta(hours=config.alert_expiry_hours),
    )
    return AppState(
        config=config,
        mongo=mongo,
        broadcaster=broadcaster,
        rules=rules,
        store=store,
        events=events,
        alerts=manager,
        sweeper=sweeper,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: FleetAlertsConfig, mongo: Optional[MongoManager] = None) -> AppState:
    """Initialize app.state with the Mongo manager, config and services."""
    state = build_state(config, mongo)
    app.state.state = state
    return state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
