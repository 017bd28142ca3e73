"""Fleet alerts exception hierarchy.

Interactive callers (HTTP routers) map these to structured error responses;
background workers log them and move on.
"""
from __future__ import annotations


class FleetAlertsError(Exception):
    """Base class for all fleet alerts errors."""

    code = "fleet_alerts_error"


class AlertValidationError(FleetAlertsError):
    """Ingestion payload or metadata patch rejected before anything is persisted."""

    code = "validation_failed"


class AlertNotFoundError(FleetAlertsError):
    """No alert with the given alertId; no writes were performed."""

    code = "alert_not_found"

    def __init__(self, alert_id: str):
        super().__init__(f"alert not found: {alert_id}")
        self.alert_id = alert_id


class AlertConflictError(FleetAlertsError):
    """An alert with the given alertId already exists."""

    code = "alert_exists"

    def __init__(self, alert_id: str):
        super().__init__(f"alert already exists: {alert_id}")
        self.alert_id = alert_id


class RuleLoadError(FleetAlertsError):
    """Rule source unreadable or malformed. The previous ruleset stays in effect."""

    code = "rule_load_failed"


class StorageUnavailableError(FleetAlertsError):
    """Document store timed out or is unreachable."""

    code = "storage_unavailable"


__all__ = [
    "FleetAlertsError",
    "AlertValidationError",
    "AlertNotFoundError",
    "AlertConflictError",
    "RuleLoadError",
    "StorageUnavailableError",
]
