"""Process-wide wiring of the simulation, billing and notification services."""

import logging
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx

from prepaid_meter.billing.ledger import BalanceLedger, LedgerEntry
from prepaid_meter.billing.rates import RateSchedule
from prepaid_meter.config import AppConfig
from prepaid_meter.errors import ValidationError
from prepaid_meter.generators import create_generator
from prepaid_meter.notify.alerts import AlertEmitter
from prepaid_meter.notify.broadcast import SnapshotHub
from prepaid_meter.notify.webhooks import WebhookDispatcher, WebhookRegistry
from prepaid_meter.simulation.accumulator import EnergyAccumulator
from prepaid_meter.simulation.maintenance import MaintenanceService
from prepaid_meter.simulation.scheduler import SimulationScheduler
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.meters import MeterStore
from prepaid_meter.storage.models import ConnectionStatus, Meter, Severity
from prepaid_meter.storage.readings import ReadingStore

logger = logging.getLogger(__name__)


class SimulationContext:
    """Owns every service and job handle for one running simulator.

    Build one per process and pass it to whatever needs it; ``open`` and
    ``close`` bracket the database and HTTP client, ``start`` and ``stop``
    arm and disarm the periodic jobs.
    """

    def __init__(
        self,
        config: AppConfig,
        clock: Callable[[], datetime] = datetime.now,
        http_client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.clock = clock
        meter_ids = [m.meter_id for m in config.meters]

        self.db = Database(config.database.url, echo=config.database.echo)
        self.meters = MeterStore(self.db, clock)
        self.readings = ReadingStore(self.db)
        self.ledger = BalanceLedger(self.db, clock)
        self.rates = RateSchedule.from_config(config.rates)
        self.webhooks = WebhookRegistry(self.db)
        self.dispatcher = WebhookDispatcher(
            self.webhooks, config.webhooks, client=http_client, clock=clock
        )
        self.alerts = AlertEmitter(self.db, config.alerts, self.dispatcher, clock)
        self.hub = SnapshotHub()
        self.accumulator = EnergyAccumulator()
        self.generator = create_generator(config.simulation.generator, config.simulation, rng)
        self.scheduler = SimulationScheduler(
            meter_ids,
            config.simulation,
            generator=self.generator,
            accumulator=self.accumulator,
            readings=self.readings,
            ledger=self.ledger,
            rates=self.rates,
            alerts=self.alerts,
            dispatcher=self.dispatcher,
            hub=self.hub,
            clock=clock,
        )
        self.maintenance = MaintenanceService(
            self.db, config.retention, meter_ids, self.readings, self.alerts, clock
        )

    @property
    def default_meter_id(self) -> str:
        return self.config.default_meter_id

    async def open(self) -> None:
        """Connect storage, provision meters and seed configured webhooks."""
        await self.db.connect()
        for meter in self.config.meters:
            created = await self.meters.provision(meter)
            if created and meter.initial_balance > 0:
                await self.ledger.recharge(meter.meter_id, meter.initial_balance, "Initial balance")
        seeded = await self.webhooks.sync_from_config(self.config.webhooks.endpoints)
        if seeded:
            logger.info("Seeded %d webhook(s) from config", seeded)

    async def start(self) -> None:
        await self.scheduler.start()
        await self.maintenance.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.maintenance.stop()

    async def close(self) -> None:
        """Stop the jobs, let in-flight work finish, then release resources."""
        await self.stop()
        await self.scheduler.wait_idle()
        await self.dispatcher.close()
        await self.db.close()

    async def recharge(
        self, meter_id: str, amount: float, description: str | None = None
    ) -> LedgerEntry:
        entry = await self.ledger.recharge(meter_id, amount, description)
        self.dispatcher.dispatch_background(
            "recharge_completed",
            {
                "meter_id": meter_id,
                "amount": amount,
                "balance_before": entry.balance_before,
                "balance_after": entry.balance_after,
                "transaction_id": entry.transaction_id,
            },
            meter_id,
        )
        return entry

    async def disconnect(self, meter_id: str, reason: str | None = None) -> Meter:
        """Mark the supply as cut off. Telemetry keeps flowing; this is bookkeeping only."""
        reason = reason or "Manual disconnect"
        meter = await self.meters.set_connection_status(meter_id, ConnectionStatus.DISCONNECTED)
        await self.alerts.create_alert(
            meter_id, "meter_disconnected", f"Meter disconnected: {reason}", Severity.WARNING
        )
        self.dispatcher.dispatch_background(
            "meter_disconnected", {"meter_id": meter_id, "reason": reason}, meter_id
        )
        return meter

    async def reconnect(self, meter_id: str, reason: str | None = None) -> Meter:
        """Restore the supply; refused while the balance is at or below the critical level."""
        reason = reason or "Manual reconnect"
        balance = await self.ledger.get_balance(meter_id)
        minimum = self.config.alerts.critical_balance_threshold
        if balance.current_balance <= minimum:
            raise ValidationError(
                f"Cannot reconnect: insufficient balance ₹{balance.current_balance:.2f}"
                f" (more than ₹{minimum:.2f} required)"
            )
        meter = await self.meters.set_connection_status(meter_id, ConnectionStatus.CONNECTED)
        await self.alerts.create_alert(
            meter_id, "meter_connected", f"Meter reconnected: {reason}", Severity.INFO
        )
        self.dispatcher.dispatch_background(
            "meter_connected",
            {"meter_id": meter_id, "reason": reason, "balance": balance.current_balance},
            meter_id,
        )
        return meter

    def status(self) -> dict[str, Any]:
        return {
            "simulation": self.scheduler.status(),
            "maintenance": {
                "is_running": self.maintenance.is_running,
                "last_cleanup": (
                    self.maintenance.last_cleanup.isoformat()
                    if self.maintenance.last_cleanup
                    else None
                ),
            },
            "websocket_subscribers": self.hub.subscriber_count,
            "meters": [m.meter_id for m in self.config.meters],
        }
