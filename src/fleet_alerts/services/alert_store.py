from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from src.fleet_alerts.db.mongo import storage_errors, to_storage_dt
from src.fleet_alerts.errors import AlertConflictError
from src.fleet_alerts.schemas.alerts import AlertsQuery
from src.fleet_alerts.schemas.common import NON_TERMINAL_STATUSES, AlertStatus, as_utc, utc_now

logger = logging.getLogger(__name__)


def _from_storage(doc: Optional[dict]) -> Optional[dict]:
    """Strip the Mongo _id and return datetimes as aware UTC."""
    if doc is None:
        return None
    out = dict(doc)
    out.pop("_id", None)
    for key in ("timestamp", "lastTransitionAt"):
        if isinstance(out.get(key), datetime):
            out[key] = as_utc(out[key])
    history = []
    for entry in out.get("history") or []:
        entry = dict(entry)
        if isinstance(entry.get("timestamp"), datetime):
            entry["timestamp"] = as_utc(entry["timestamp"])
        history.append(entry)
    out["history"] = history
    out["metadata"] = out.get("metadata") or {}
    return out


def group_filter(source_type: str, driver_id: Any = None) -> Dict[str, Any]:
    """Escalation grouping key: sourceType plus metadata.driverId when the alert carries one."""
    q: Dict[str, Any] = {"sourceType": source_type}
    if driver_id:
        q["metadata.driverId"] = driver_id
    return q


class AlertStore:
    """
    Mutable per-alert records keyed by alertId.

    Status changes go exclusively through transition(), a single conditional update filtered
    on the expected source statuses. Its modified count is the only signal callers use to
    decide whether they won the transition.
    """

    def __init__(self, collection: Collection):
        self._col = collection

    # PUBLIC_INTERFACE
    def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new alert; raises AlertConflictError on a duplicate alertId."""
        to_save = dict(doc)
        to_save["timestamp"] = to_storage_dt(to_save["timestamp"])
        if isinstance(to_save.get("lastTransitionAt"), datetime):
            to_save["lastTransitionAt"] = to_storage_dt(to_save["lastTransitionAt"])
        to_save["history"] = [
            {**h, "timestamp": to_storage_dt(h["timestamp"])} for h in to_save.get("history") or []
        ]
        with storage_errors("alerts.insert"):
            try:
                self._col.insert_one(to_save)
            except DuplicateKeyError as exc:
                raise AlertConflictError(doc["alertId"]) from exc
        return _from_storage(to_save)  # type: ignore[return-value]

    # PUBLIC_INTERFACE
    def get(self, alert_id: str) -> Optional[Dict[str, Any]]:
        """Fetch the current persisted state of one alert."""
        with storage_errors("alerts.find_one"):
            doc = self._col.find_one({"alertId": alert_id}, projection={"_id": 0})
        return _from_storage(doc)

    # PUBLIC_INTERFACE
    def list_alerts(self, filters: AlertsQuery) -> Tuple[List[Dict[str, Any]], int]:
        """List alerts newest occurrence first. Returns (page, total_matching)."""
        q: Dict[str, Any] = {}
        if filters.status:
            q["status"] = filters.status.value
        if filters.source_type:
            q["sourceType"] = filters.source_type
        if filters.driver_id:
            q["metadata.driverId"] = filters.driver_id
        with storage_errors("alerts.find"):
            total = int(self._col.count_documents(q))
            docs = list(
                self._col.find(q, projection={"_id": 0})
                .sort("timestamp", -1)
                .skip(int(filters.skip))
                .limit(int(filters.limit))
            )
        return [_from_storage(d) for d in docs], total  # type: ignore[misc]

    # PUBLIC_INTERFACE
    def count_in_window(self, key: Dict[str, Any], window_start: datetime, window_end: datetime) -> int:
        """Count alerts matching the group key with timestamp in [window_start, window_end]."""
        q = dict(key)
        q["timestamp"] = {"$gte": to_storage_dt(window_start), "$lte": to_storage_dt(window_end)}
        with storage_errors("alerts.count_documents"):
            return int(self._col.count_documents(q))

    # PUBLIC_INTERFACE
    def find_in_window(
        self,
        key: Dict[str, Any],
        window_start: datetime,
        window_end: datetime,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Alerts of a group within [window_start, window_end], oldest first."""
        q = dict(key)
        q["timestamp"] = {"$gte": to_storage_dt(window_start), "$lte": to_storage_dt(window_end)}
        if statuses is not None:
            q["status"] = {"$in": list(statuses)}
        with storage_errors("alerts.find"):
            docs = list(self._col.find(q, projection={"_id": 0}).sort("timestamp", 1))
        return [_from_storage(d) for d in docs]  # type: ignore[misc]

    # PUBLIC_INTERFACE
    def pending_batch(self, limit: int) -> List[Dict[str, Any]]:
        """A bounded batch of non-terminal alerts, oldest occurrence first."""
        with storage_errors("alerts.find"):
            docs = list(
                self._col.find({"status": {"$in": list(NON_TERMINAL_STATUSES)}}, projection={"_id": 0})
                .sort("timestamp", 1)
                .limit(int(max(1, limit)))
            )
        return [_from_storage(d) for d in docs]  # type: ignore[misc]

    # PUBLIC_INTERFACE
    def transition(
        self,
        alert_id: str,
        to_status: AlertStatus,
        reason: str,
        expected: Iterable[str] = NON_TERMINAL_STATUSES,
        extra_set: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set a status transition.

        Applies status, lastTransitionAt/Reason and a history entry only if the alert's
        current status is still in `expected`. Returns True when this call modified the
        record, False when another writer got there first (or the alert is gone).
        """
        ts = to_storage_dt(now or utc_now())
        to_value = AlertStatus(to_status).value
        update_set: Dict[str, Any] = {
            "status": to_value,
            "lastTransitionAt": ts,
            "lastTransitionReason": reason,
        }
        if extra_set:
            update_set.update(extra_set)
        with storage_errors("alerts.update_one"):
            res = self._col.update_one(
                {"alertId": alert_id, "status": {"$in": list(expected)}},
                {
                    "$set": update_set,
                    "$push": {"history": {"state": to_value, "timestamp": ts, "reason": reason}},
                },
            )
        return res.modified_count == 1

    # PUBLIC_INTERFACE
    def bump_severity(self, alert_id: str, severity: str) -> bool:
        """Set severity on a non-terminal alert if it differs. Returns True when modified."""
        with storage_errors("alerts.update_one"):
            res = self._col.update_one(
                {
                    "alertId": alert_id,
                    "status": {"$in": list(NON_TERMINAL_STATUSES)},
                    "severity": {"$ne": severity},
                },
                {"$set": {"severity": severity}},
            )
        return res.modified_count == 1

    # PUBLIC_INTERFACE
    def merge_metadata(self, alert_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Shallow-merge patch into metadata in one atomic update (patch keys win).

        Returns the updated alert, or None when the alert does not exist.
        """
        if not patch:
            return self.get(alert_id)
        update_set = {f"metadata.{k}": v for k, v in patch.items()}
        with storage_errors("alerts.find_one_and_update"):
            doc = self._col.find_one_and_update(
                {"alertId": alert_id},
                {"$set": update_set},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        return _from_storage(doc)
