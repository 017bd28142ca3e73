from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.collection import Collection

from src.fleet_alerts.db.mongo import storage_errors, to_storage_dt
from src.fleet_alerts.schemas.common import EventType, as_utc, utc_now
from src.fleet_alerts.schemas.events import EventLogOut, EventsQuery
from src.fleet_alerts.services.notifier import EventBroadcaster

logger = logging.getLogger(__name__)


def _doc_to_event_out(doc: dict) -> EventLogOut:
    return EventLogOut(
        id=str(doc.get("_id", "")),
        alertId=doc["alertId"],
        type=doc["type"],
        timestamp=as_utc(doc["ts"]),
        payload=doc.get("payload") or {},
    )


def _events_query_from_filters(q: EventsQuery) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q.alert_id:
        query["alertId"] = q.alert_id
    if q.type:
        query["type"] = q.type.value
    if q.since or q.until:
        ts: Dict[str, Any] = {}
        if q.since:
            ts["$gte"] = to_storage_dt(q.since)
        if q.until:
            ts["$lte"] = to_storage_dt(q.until)
        query["ts"] = ts
    return query


class EventLog:
    """
    Append-only record of lifecycle transitions.

    Entries are inserted once and never updated or deleted. After a successful insert the
    entry is published to the broadcaster; a publish failure never undoes the insert.
    """

    def __init__(self, collection: Collection, broadcaster: Optional[EventBroadcaster] = None):
        self._col = collection
        self._broadcaster = broadcaster

    # PUBLIC_INTERFACE
    def append(
        self,
        alert_id: str,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        ts: Optional[datetime] = None,
    ) -> EventLogOut:
        """Persist one event entry and publish it to live listeners."""
        doc = {
            "alertId": alert_id,
            "type": EventType(event_type).value,
            "ts": to_storage_dt(ts or utc_now()),
            "payload": dict(payload or {}),
        }
        with storage_errors("event_log.insert"):
            res = self._col.insert_one(doc)
        doc["_id"] = res.inserted_id
        out = _doc_to_event_out(doc)

        if self._broadcaster is not None:
            self._broadcaster.publish(
                {
                    "alertId": out.alert_id,
                    "type": out.type.value,
                    "ts": out.timestamp.isoformat(),
                    "payload": out.payload,
                }
            )
        return out

    # PUBLIC_INTERFACE
    def list_events(self, filters: EventsQuery) -> Tuple[List[EventLogOut], int]:
        """List events newest first with filters and pagination. Returns (items, total_matching)."""
        q = _events_query_from_filters(filters)
        with storage_errors("event_log.find"):
            total = int(self._col.count_documents(q))
            docs = list(
                self._col.find(q)
                .sort("ts", -1)
                .skip(int(filters.skip))
                .limit(int(filters.limit))
            )
        return ([_doc_to_event_out(d) for d in docs], total)

    # PUBLIC_INTERFACE
    def counts(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> Dict[str, int]:
        """Count entries per event type, optionally within [since, until]."""
        match: Dict[str, Any] = {}
        if since or until:
            ts: Dict[str, Any] = {}
            if since:
                ts["$gte"] = to_storage_dt(since)
            if until:
                ts["$lte"] = to_storage_dt(until)
            match["ts"] = ts
        with storage_errors("event_log.aggregate"):
            rows = list(
                self._col.aggregate(
                    [
                        {"$match": match},
                        {"$group": {"_id": "$type", "count": {"$sum": 1}}},
                    ]
                )
            )
        return {str(r["_id"]): int(r["count"]) for r in rows}
