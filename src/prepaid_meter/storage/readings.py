from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select

from prepaid_meter.generators.base import RawReading
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.models import HistoricalBucket, RealtimeSample


class ReadingStore:
    """Realtime samples and the historical buckets built from them."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def add_sample(
        self, meter_id: str, reading: RawReading, energy_consumed: float, timestamp: datetime
    ) -> RealtimeSample:
        sample = RealtimeSample(
            meter_id=meter_id,
            timestamp=timestamp,
            voltage=reading.voltage,
            current=reading.current,
            power_factor=reading.power_factor,
            active_power=reading.active_power,
            reactive_power=reading.reactive_power,
            apparent_power=reading.apparent_power,
            frequency=reading.frequency,
            energy_consumed=energy_consumed,
        )
        async with self._db.session() as session, session.begin():
            session.add(sample)
        return sample

    async def samples_after(
        self, meter_id: str, after_id: int | None = None, since: datetime | None = None
    ) -> Sequence[RealtimeSample]:
        """Committed samples with ``id > after_id`` and ``timestamp > since``, in insert order.

        SQLite serializes writers, so ids are assigned in commit order and a
        sample still being written always gets an id above every row visible
        here.
        """
        stmt = select(RealtimeSample).where(RealtimeSample.meter_id == meter_id)
        if after_id is not None:
            stmt = stmt.where(RealtimeSample.id > after_id)
        if since is not None:
            stmt = stmt.where(RealtimeSample.timestamp > since)
        async with self._db.session() as session:
            result = await session.scalars(stmt.order_by(RealtimeSample.id))
            return result.all()

    async def latest_sample(self, meter_id: str) -> RealtimeSample | None:
        stmt = (
            select(RealtimeSample)
            .where(RealtimeSample.meter_id == meter_id)
            .order_by(RealtimeSample.timestamp.desc(), RealtimeSample.id.desc())
            .limit(1)
        )
        async with self._db.session() as session:
            return await session.scalar(stmt)

    async def count_samples(self, meter_id: str) -> int:
        stmt = select(func.count()).select_from(RealtimeSample).where(
            RealtimeSample.meter_id == meter_id
        )
        async with self._db.session() as session:
            return await session.scalar(stmt) or 0

    async def add_bucket(self, bucket: HistoricalBucket) -> HistoricalBucket:
        async with self._db.session() as session, session.begin():
            session.add(bucket)
        return bucket

    async def latest_bucket(self, meter_id: str) -> HistoricalBucket | None:
        stmt = (
            select(HistoricalBucket)
            .where(HistoricalBucket.meter_id == meter_id)
            .order_by(HistoricalBucket.end_time.desc())
            .limit(1)
        )
        async with self._db.session() as session:
            return await session.scalar(stmt)

    async def buckets_since(self, meter_id: str, since: datetime) -> Sequence[HistoricalBucket]:
        stmt = (
            select(HistoricalBucket)
            .where(HistoricalBucket.meter_id == meter_id, HistoricalBucket.start_time >= since)
            .order_by(HistoricalBucket.start_time)
        )
        async with self._db.session() as session:
            result = await session.scalars(stmt)
            return result.all()
