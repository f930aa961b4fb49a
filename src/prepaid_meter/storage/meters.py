import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy import select

from prepaid_meter.config import MeterConfig
from prepaid_meter.errors import NotFoundError
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.models import Balance, ConnectionStatus, Meter

logger = logging.getLogger(__name__)


class MeterStore:
    """Meter provisioning and connection status."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now) -> None:
        self._db = db
        self._clock = clock

    async def provision(self, config: MeterConfig) -> bool:
        """Create the meter and a zero balance row unless it already exists.

        Returns True when the meter was created by this call.
        """
        async with self._db.session() as session, session.begin():
            existing = await session.scalar(select(Meter).where(Meter.meter_id == config.meter_id))
            if existing is not None:
                return False
            now = self._clock()
            session.add(
                Meter(
                    meter_id=config.meter_id,
                    location=config.location,
                    customer_name=config.customer_name,
                    customer_id=config.customer_id,
                    connection_status=ConnectionStatus.CONNECTED.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.add(Balance(meter_id=config.meter_id, current_balance=0.0, last_updated=now))
        logger.info("Provisioned meter %s (%s)", config.meter_id, config.location)
        return True

    async def get(self, meter_id: str) -> Meter:
        async with self._db.session() as session:
            meter = await session.scalar(select(Meter).where(Meter.meter_id == meter_id))
        if meter is None:
            raise NotFoundError("Meter", meter_id)
        return meter

    async def list(self) -> Sequence[Meter]:
        async with self._db.session() as session:
            result = await session.scalars(select(Meter).order_by(Meter.id))
            return result.all()

    async def set_connection_status(self, meter_id: str, status: ConnectionStatus) -> Meter:
        async with self._db.session() as session, session.begin():
            meter = await session.scalar(select(Meter).where(Meter.meter_id == meter_id))
            if meter is None:
                raise NotFoundError("Meter", meter_id)
            meter.connection_status = status.value
            meter.updated_at = self._clock()
        logger.info("Meter %s is now %s", meter_id, status.value)
        return meter
