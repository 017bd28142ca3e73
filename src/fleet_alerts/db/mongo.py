from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Iterator, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from src.fleet_alerts.errors import StorageUnavailableError

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver failures (timeouts, network, server selection) into StorageUnavailableError."""
    try:
        yield
    except PyMongoError as exc:
        raise StorageUnavailableError(f"{operation} failed: {exc}") from exc


# PUBLIC_INTERFACE
def to_storage_dt(ts: datetime) -> datetime:
    """Datetimes are persisted and queried as naive UTC (BSON dates carry no zone)."""
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    alerts: Collection
    event_log: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the service database. Every operation issued through
    the client is bounded by timeout_ms (server selection and client-side operation timeout),
    so no store call can block indefinitely.

    A prebuilt client may be injected (tests pass a mongomock client).
    """

    def __init__(
        self,
        mongo_uri: str,
        db_name: str = "fleet_alerts",
        timeout_ms: int = 5000,
        client: Optional[MongoClient] = None,
    ):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._timeout_ms = int(timeout_ms)
        self._client: Optional[MongoClient] = client
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling; it connects on first use.
            self._client = MongoClient(
                self._mongo_uri,
                connect=False,
                serverSelectionTimeoutMS=self._timeout_ms,
                timeoutMS=self._timeout_ms,
            )

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._client is None:
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except Exception:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def db(self) -> Database:
        """Return the service database handle."""
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.db()
        return MongoCollections(alerts=db["alerts"], event_log=db["event_log"])

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        # ---- Alerts ----
        # alertId is the concurrency-control key for every guarded transition.
        cols.alerts.create_index([("alertId", ASCENDING)], unique=True, name="idx_alerts_alertId")
        # Sweeper scan: non-terminal statuses, oldest first.
        cols.alerts.create_index([("status", ASCENDING), ("timestamp", ASCENDING)], name="idx_alerts_status_ts")
        # Escalation group counts: (driver, sourceType) over a time window.
        cols.alerts.create_index(
            [("metadata.driverId", ASCENDING), ("sourceType", ASCENDING), ("timestamp", DESCENDING)],
            name="idx_alerts_driver_source_ts",
        )
        cols.alerts.create_index([("sourceType", ASCENDING), ("timestamp", DESCENDING)], name="idx_alerts_source_ts")

        # ---- Event log ----
        cols.event_log.create_index([("alertId", ASCENDING), ("ts", DESCENDING)], name="idx_event_log_alert_ts")
        cols.event_log.create_index([("type", ASCENDING), ("ts", DESCENDING)], name="idx_event_log_type_ts")
