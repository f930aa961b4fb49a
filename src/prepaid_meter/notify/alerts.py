"""Threshold alerts for telemetry samples and balances.

Every evaluation that still meets a threshold raises a fresh alert; there is
no suppression of repeats across ticks.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import case, func, select, update

from prepaid_meter.errors import NotFoundError
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.models import Alert, RealtimeSample, Severity

if TYPE_CHECKING:
    from prepaid_meter.config import AlertsConfig
    from prepaid_meter.notify.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertSpec:
    alert_type: str
    message: str
    severity: Severity


class AlertEmitter:
    def __init__(
        self,
        db: Database,
        config: "AlertsConfig",
        dispatcher: "WebhookDispatcher | None" = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._db = db
        self._config = config
        self._dispatcher = dispatcher
        self._clock = clock

    def check_sample(self, sample: RealtimeSample) -> list[AlertSpec]:
        cfg = self._config
        specs: list[AlertSpec] = []
        if sample.voltage > cfg.voltage_high_threshold:
            specs.append(
                AlertSpec(
                    "high_voltage", f"High voltage detected: {sample.voltage}V", Severity.WARNING
                )
            )
        elif sample.voltage < cfg.voltage_low_threshold:
            specs.append(
                AlertSpec(
                    "low_voltage", f"Low voltage detected: {sample.voltage}V", Severity.WARNING
                )
            )
        if sample.active_power > cfg.high_consumption_threshold:
            specs.append(
                AlertSpec(
                    "high_consumption",
                    f"High power consumption: {sample.active_power}kW",
                    Severity.INFO,
                )
            )
        return specs

    def check_balance(self, balance: float) -> AlertSpec | None:
        cfg = self._config
        if balance <= cfg.critical_balance_threshold:
            return AlertSpec(
                "low_balance",
                f"Critical balance warning: ₹{balance:.2f} remaining",
                Severity.CRITICAL,
            )
        if balance <= cfg.low_balance_threshold:
            return AlertSpec(
                "low_balance", f"Low balance: ₹{balance:.2f} remaining", Severity.WARNING
            )
        return None

    async def evaluate(self, sample: RealtimeSample) -> list[Alert]:
        return [
            await self.create_alert(
                sample.meter_id, found.alert_type, found.message, found.severity
            )
            for found in self.check_sample(sample)
        ]

    async def evaluate_balance(self, meter_id: str, balance: float) -> Alert | None:
        found = self.check_balance(balance)
        if found is None:
            return None
        return await self.create_alert(meter_id, found.alert_type, found.message, found.severity)

    async def create_alert(
        self, meter_id: str, alert_type: str, message: str, severity: Severity = Severity.INFO
    ) -> Alert:
        alert = Alert(
            meter_id=meter_id,
            alert_type=alert_type,
            message=message,
            severity=severity.value,
            is_read=False,
            created_at=self._clock(),
        )
        async with self._db.session() as session, session.begin():
            session.add(alert)

        logger.info("Alert created: [%s] %s - %s", severity.value.upper(), alert_type, message)
        if self._dispatcher is not None:
            self._dispatcher.dispatch_background("alert_created", alert.to_dict(), meter_id)
        return alert

    async def list_alerts(
        self, meter_id: str, limit: int = 50, unread_only: bool = False
    ) -> Sequence[Alert]:
        stmt = select(Alert).where(Alert.meter_id == meter_id)
        if unread_only:
            stmt = stmt.where(Alert.is_read.is_(False))
        stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
        async with self._db.session() as session:
            result = await session.scalars(stmt)
            return result.all()

    async def mark_read(self, alert_id: int) -> Alert:
        async with self._db.session() as session, session.begin():
            alert = await session.get(Alert, alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id)
            alert.is_read = True
        return alert

    async def mark_all_read(self, meter_id: str) -> int:
        stmt = (
            update(Alert)
            .where(Alert.meter_id == meter_id, Alert.is_read.is_(False))
            .values(is_read=True)
        )
        async with self._db.session() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount

    async def summary(self, meter_id: str) -> dict[str, int]:
        def count_where(condition) -> object:
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        stmt = select(
            func.count(),
            count_where(Alert.is_read.is_(False)),
            count_where(Alert.severity == Severity.CRITICAL.value),
            count_where(Alert.severity == Severity.WARNING.value),
            count_where(Alert.severity == Severity.INFO.value),
        ).where(Alert.meter_id == meter_id)
        async with self._db.session() as session:
            total, unread, critical, warning, info = (await session.execute(stmt)).one()
        return {
            "total_alerts": total,
            "unread_alerts": unread,
            "critical_alerts": critical,
            "warning_alerts": warning,
            "info_alerts": info,
        }
