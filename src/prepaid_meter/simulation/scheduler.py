"""The simulation and billing loop.

Three independent periodic jobs drive every configured meter:

* tick: generate a reading, integrate it into energy, store the sample,
  check alert thresholds and publish a snapshot;
* aggregate: roll the samples stored since the previous bucket into a priced
  historical bucket;
* settle: charge the energy of the samples stored since the previous
  settlement against the prepaid balance and raise low-balance alerts.

Both watermarks are sample ids, moved only once the bucket or debit is
written, so every committed sample is bucketed and billed exactly once.

Buckets and settlements are priced with the rate in force when the job runs,
not at each sample's own time, so consumption that straddles a tariff
boundary is billed entirely at the later rate.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from prepaid_meter.billing.ledger import BalanceLedger, LedgerEntry
from prepaid_meter.billing.rates import RateSchedule
from prepaid_meter.generators.base import Generator
from prepaid_meter.notify.alerts import AlertEmitter
from prepaid_meter.notify.broadcast import SnapshotHub
from prepaid_meter.notify.webhooks import WebhookDispatcher
from prepaid_meter.simulation.accumulator import EnergyAccumulator
from prepaid_meter.simulation.jobs import PeriodicJob
from prepaid_meter.storage.models import HistoricalBucket, RealtimeSample, Severity
from prepaid_meter.storage.readings import ReadingStore

if TYPE_CHECKING:
    from prepaid_meter.config import SimulationConfig

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class SimulationScheduler:
    def __init__(
        self,
        meter_ids: Sequence[str],
        config: "SimulationConfig",
        generator: Generator,
        accumulator: EnergyAccumulator,
        readings: ReadingStore,
        ledger: BalanceLedger,
        rates: RateSchedule,
        alerts: AlertEmitter,
        dispatcher: WebhookDispatcher | None = None,
        hub: SnapshotHub | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._meter_ids = list(meter_ids)
        self._historical_window = timedelta(seconds=config.historical_window)
        self._settlement_window = timedelta(seconds=config.effective_settlement_window)
        self._generator = generator
        self._accumulator = accumulator
        self._readings = readings
        self._ledger = ledger
        self._rates = rates
        self._alerts = alerts
        self._dispatcher = dispatcher
        self._hub = hub
        self._clock = clock

        self._jobs = [
            PeriodicJob("tick", config.realtime_interval, self.tick),
            PeriodicJob("aggregate", config.historical_interval, self.aggregate),
            PeriodicJob("settle", config.balance_update_interval, self.settle),
        ]
        self._state = SchedulerState.STOPPED
        self._started_at: datetime | None = None
        # per-meter id of the last sample already bucketed or billed
        self._bucketed_id: dict[str, int] = {}
        self._bucketed_until: dict[str, datetime] = {}
        self._settled_id: dict[str, int] = {}
        self._settle_floor: dict[str, datetime] = {}
        self._aggregate_lock = asyncio.Lock()
        self._settle_lock = asyncio.Lock()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs)

    async def start(self) -> None:
        if self.is_running:
            logger.info("Simulation is already running")
            return
        for job in self._jobs:
            job.start()
        self._state = SchedulerState.RUNNING
        self._started_at = self._clock()
        logger.info(
            "Simulation started (%s)",
            ", ".join(f"{job.name} every {job.interval:g}s" for job in self._jobs),
        )

    async def stop(self) -> None:
        if not self.is_running:
            logger.info("Simulation is not running")
            return
        for job in self._jobs:
            await job.stop()
        self._state = SchedulerState.STOPPED
        self._started_at = None
        logger.info("Simulation stopped")

    async def wait_idle(self) -> None:
        for job in self._jobs:
            await job.wait_idle()

    # ── tick ────────────────────────────────────────────────────────

    async def tick(self) -> list[RealtimeSample]:
        now = self._clock()
        multiplier = self._generator.load_multiplier(now)
        samples = []
        for meter_id in self._meter_ids:
            try:
                samples.append(await self.tick_meter(meter_id, now, multiplier))
            except Exception:
                logger.exception("Tick failed for %s", meter_id)
        return samples

    async def tick_meter(self, meter_id: str, now: datetime, multiplier: float) -> RealtimeSample:
        reading = self._generator.generate(now, multiplier)
        energy = self._accumulator.integrate(meter_id, reading.active_power, now)
        sample = await self._readings.add_sample(meter_id, reading, round(energy, 6), now)
        await self._alerts.evaluate(sample)

        if self._hub is not None:
            balance = await self._ledger.get_balance(meter_id)
            self._hub.publish(
                {
                    "type": "realtime_update",
                    "meter_id": meter_id,
                    "reading": sample.to_dict(),
                    "balance": balance.current_balance,
                }
            )
        logger.debug(
            "Tick %s: %.2f V, %.2f A, %.3f kW",
            meter_id,
            sample.voltage,
            sample.current,
            sample.active_power,
        )
        return sample

    # ── aggregate ───────────────────────────────────────────────────

    async def aggregate(self) -> list[HistoricalBucket]:
        now = self._clock()
        buckets = []
        async with self._aggregate_lock:
            for meter_id in self._meter_ids:
                try:
                    bucket = await self.aggregate_meter(meter_id, now)
                except Exception:
                    logger.exception("Aggregation failed for %s", meter_id)
                    continue
                if bucket is not None:
                    buckets.append(bucket)
        return buckets

    async def _bucket_window_start(self, meter_id: str, now: datetime) -> datetime:
        floor = now - self._historical_window
        start = self._bucketed_until.get(meter_id)
        if start is None:
            latest = await self._readings.latest_bucket(meter_id)
            start = latest.end_time if latest is not None else floor
        return max(start, floor)

    async def aggregate_meter(self, meter_id: str, now: datetime) -> HistoricalBucket | None:
        start = await self._bucket_window_start(meter_id, now)
        after_id = self._bucketed_id.get(meter_id)
        # until the first bucket of this run, resume by time from the stored buckets
        since = start if after_id is None else now - self._historical_window
        samples = await self._readings.samples_after(meter_id, after_id, since)
        if not samples:
            logger.debug("No samples for %s since %s, skipping bucket", meter_id, start)
            return None

        count = len(samples)
        energy = sum(s.energy_consumed for s in samples)
        rate = self._rates.rate_for(now)
        cost = energy * rate
        bucket = HistoricalBucket(
            meter_id=meter_id,
            voltage_avg=round(sum(s.voltage for s in samples) / count, 2),
            current_avg=round(sum(s.current for s in samples) / count, 2),
            power_factor_avg=round(sum(s.power_factor for s in samples) / count, 3),
            energy_consumed=round(energy, 6),
            cost=round(cost, 4),
            rate_applied=rate,
            sample_count=count,
            start_time=start,
            end_time=now,
            created_at=now,
        )
        await self._readings.add_bucket(bucket)
        self._bucketed_id[meter_id] = samples[-1].id
        self._bucketed_until[meter_id] = now
        logger.info(
            "Historical data aggregated for %s: %.4f kWh, cost ₹%.2f", meter_id, energy, cost
        )
        return bucket

    # ── settle ──────────────────────────────────────────────────────

    async def settle(self) -> list[LedgerEntry]:
        now = self._clock()
        entries = []
        async with self._settle_lock:
            for meter_id in self._meter_ids:
                try:
                    entry = await self.settle_meter(meter_id, now)
                except Exception:
                    logger.exception("Settlement failed for %s", meter_id)
                    continue
                if entry is not None:
                    entries.append(entry)
        return entries

    async def settle_meter(self, meter_id: str, now: datetime) -> LedgerEntry | None:
        after_id = self._settled_id.get(meter_id)
        since = None
        if after_id is None:
            # the first lookback stays put until something has been billed
            since = self._settle_floor.setdefault(meter_id, now - self._settlement_window)
        samples = await self._readings.samples_after(meter_id, after_id, since)
        if not samples:
            return None

        energy = sum(s.energy_consumed for s in samples)
        if energy <= 0:
            self._settled_id[meter_id] = samples[-1].id
            return None

        rate = self._rates.rate_for(now)
        cost = energy * rate
        entry = await self._ledger.deduct_consumption(
            meter_id, cost, description=f"Consumption of {energy:.4f} kWh at ₹{rate:.2f}/kWh"
        )
        self._settled_id[meter_id] = samples[-1].id
        alert = await self._alerts.evaluate_balance(meter_id, entry.balance_after)

        if self._dispatcher is not None:
            self._dispatcher.dispatch_background("balance_update", entry.to_dict(), meter_id)
            if alert is not None:
                event = (
                    "balance_critical"
                    if alert.severity == Severity.CRITICAL.value
                    else "balance_low"
                )
                self._dispatcher.dispatch_background(event, entry.to_dict(), meter_id)
        return entry

    def status(self) -> dict[str, Any]:
        uptime = 0.0
        if self._started_at is not None:
            uptime = (self._clock() - self._started_at).total_seconds()
        return {
            "state": self._state.value,
            "is_running": self.is_running,
            "active_meters": len(self._accumulator.meters),
            "uptime_seconds": uptime,
            "jobs": {
                job.name: {
                    "interval": job.interval,
                    "armed": job.armed,
                    "runs": job.runs,
                    "failures": job.failures,
                    "in_flight": job.in_flight,
                }
                for job in self._jobs
            },
        }
