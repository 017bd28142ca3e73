from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from src.fleet_alerts.errors import AlertNotFoundError, StorageUnavailableError
from src.fleet_alerts.schemas.common import TERMINAL_STATUSES, as_utc, utc_now
from src.fleet_alerts.services.alert_store import AlertStore
from src.fleet_alerts.services.alerts_service import AlertLifecycleManager

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


@dataclass
class SweepReport:
    """Counters for one sweep."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    expired: int = 0
    evaluated: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["started_at"] = self.started_at.isoformat()
        out["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return out


class ExpirySweeper:
    """
    One sweep = one bounded batch of OPEN/ESCALATED alerts.

    Alerts older than the expiry duration are auto-closed through the guarded transition;
    the rest are re-evaluated to catch missed escalation/auto-close triggers. Overlapping
    sweeps are harmless: the compare-and-set lets only one writer log each transition.
    """

    def __init__(
        self,
        manager: AlertLifecycleManager,
        store: AlertStore,
        batch_size: int = 500,
        expiry: timedelta = timedelta(hours=24),
    ):
        self._manager = manager
        self._store = store
        self._batch_size = max(1, int(batch_size))
        self._expiry = expiry
        self.last_report: Optional[SweepReport] = None

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def expiry(self) -> timedelta:
        return self._expiry

    def _sweep_one(self, alert: Dict[str, Any], now: datetime, report: SweepReport) -> None:
        # The batch snapshot may already be stale (e.g. a concurrent resolve).
        if alert.get("status") in TERMINAL_STATUSES:
            report.skipped += 1
            return

        if now - as_utc(alert["timestamp"]) >= self._expiry:
            if self._manager.expire(alert["alertId"], timestamp=alert["timestamp"]):
                report.expired += 1
            else:
                report.skipped += 1
            return

        self._manager.evaluate(alert["alertId"], trigger="sweep")
        report.evaluated += 1

    # PUBLIC_INTERFACE
    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run a single sweep. Per-alert failures are logged and counted, never raised."""
        now = as_utc(now) if now else utc_now()
        report = SweepReport(started_at=datetime.now(timezone.utc))

        try:
            batch = self._store.pending_batch(self._batch_size)
        except StorageUnavailableError:
            logger.warning("Sweep skipped: store unavailable, retrying next cycle", exc_info=True)
            report.aborted = True
            report.finished_at = datetime.now(timezone.utc)
            self.last_report = report
            return report

        for alert in batch:
            report.scanned += 1
            alert_id = alert.get("alertId")
            try:
                self._sweep_one(alert, now, report)
            except AlertNotFoundError:
                report.skipped += 1
            except StorageUnavailableError:
                report.failed += 1
                logger.warning("Sweep: store unavailable for alertId=%s, retrying next cycle", alert_id)
            except Exception:
                report.failed += 1
                logger.exception("Sweep failed for alertId=%s", alert_id)

        report.finished_at = datetime.now(timezone.utc)
        self.last_report = report
        logger.info(
            "Sweep done scanned=%d expired=%d evaluated=%d skipped=%d failed=%d",
            report.scanned,
            report.expired,
            report.evaluated,
            report.skipped,
            report.failed,
        )
        return report


# PUBLIC_INTERFACE
async def sweeper_loop(sweeper: ExpirySweeper, interval_sec: int, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that runs one sweep every interval_sec.

    Shutdown is honoured between runs; a sweep already in flight is allowed to finish.
    """
    interval = max(1, int(interval_sec))
    logger.info(
        "Expiry sweeper started (interval=%ss, batch=%s, expiry=%s)", interval, sweeper.batch_size, sweeper.expiry
    )

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await _run_in_thread(sweeper.run_once)
        except Exception:
            logger.exception("Expiry sweeper tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Expiry sweeper stopped")
