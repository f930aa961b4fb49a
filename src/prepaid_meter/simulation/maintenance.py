"""Retention pruning and a data-freshness health check."""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete

from prepaid_meter.notify.alerts import AlertEmitter
from prepaid_meter.simulation.jobs import PeriodicJob
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.models import (
    Alert,
    HistoricalBucket,
    RealtimeSample,
    Severity,
    Transaction,
)
from prepaid_meter.storage.readings import ReadingStore

if TYPE_CHECKING:
    from prepaid_meter.config import RetentionConfig

logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(
        self,
        db: Database,
        config: "RetentionConfig",
        meter_ids: Sequence[str],
        readings: ReadingStore,
        alerts: AlertEmitter,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._db = db
        self._config = config
        self._meter_ids = list(meter_ids)
        self._readings = readings
        self._alerts = alerts
        self._clock = clock
        self._jobs = [
            PeriodicJob("cleanup", config.cleanup_interval, self.cleanup),
            PeriodicJob("health_check", config.health_check_interval, self.health_check),
        ]
        self.last_cleanup: datetime | None = None

    @property
    def is_running(self) -> bool:
        return any(job.armed for job in self._jobs)

    async def start(self) -> None:
        if self.is_running:
            logger.info("Maintenance service is already running")
            return
        for job in self._jobs:
            job.start()
        logger.info("Maintenance service started")

    async def stop(self) -> None:
        for job in self._jobs:
            await job.stop()
        for job in self._jobs:
            await job.wait_idle()

    async def cleanup(self) -> dict[str, int]:
        """Delete rows older than their retention period; return counts per table."""
        now = self._clock()
        cfg = self._config
        targets = [
            ("realtime_data", RealtimeSample, RealtimeSample.timestamp, cfg.realtime_days),
            ("historical_data", HistoricalBucket, HistoricalBucket.created_at, cfg.historical_days),
            ("transactions", Transaction, Transaction.timestamp, cfg.transaction_days),
            ("alerts", Alert, Alert.created_at, cfg.alert_days),
        ]
        deleted: dict[str, int] = {}
        async with self._db.session() as session, session.begin():
            for table, model, column, days in targets:
                cutoff = now - timedelta(days=days)
                result = await session.execute(delete(model).where(column < cutoff))
                deleted[table] = result.rowcount
        self.last_cleanup = now
        logger.info(
            "Cleanup removed %s", ", ".join(f"{count} {table}" for table, count in deleted.items())
        )
        return deleted

    async def health_check(self) -> list[str]:
        """Raise a warning for each meter with no recent sample; return their ids."""
        now = self._clock()
        since = now - timedelta(seconds=self._config.stale_after)
        stale = []
        for meter_id in self._meter_ids:
            latest = await self._readings.latest_sample(meter_id)
            if latest is None or latest.timestamp < since:
                stale.append(meter_id)
                logger.warning("No recent real-time data for %s", meter_id)
                await self._alerts.create_alert(
                    meter_id, "system", "No real-time data generation detected", Severity.WARNING
                )
        return stale
