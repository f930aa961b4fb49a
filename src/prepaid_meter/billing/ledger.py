"""Prepaid balance with an append-only transaction log.

Every mutation goes through :meth:`BalanceLedger.credit_or_debit`, which holds
a per-meter lock around a single database transaction. The lock keeps
interleaved coroutines from reading the same ``balance_before``; the
transaction makes the balance update and the log append commit together.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select

from prepaid_meter.errors import NotFoundError, ValidationError
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.models import Balance, Transaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: str
    meter_id: str
    type: TransactionType
    amount: float
    balance_before: float
    balance_after: float
    description: str | None
    timestamp: datetime

    @classmethod
    def from_row(cls, row: Transaction) -> "LedgerEntry":
        return cls(
            transaction_id=row.transaction_id,
            meter_id=row.meter_id,
            type=TransactionType(row.type),
            amount=row.amount,
            balance_before=row.balance_before,
            balance_after=row.balance_after,
            description=row.description,
            timestamp=row.timestamp,
        )

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "meter_id": self.meter_id,
            "type": self.type.value,
            "amount": self.amount,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
        }


class BalanceLedger:
    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now) -> None:
        self._db = db
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, meter_id: str) -> asyncio.Lock:
        lock = self._locks.get(meter_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[meter_id] = lock
        return lock

    async def credit_or_debit(
        self,
        meter_id: str,
        amount: float,
        type: TransactionType,
        description: str | None = None,
    ) -> LedgerEntry:
        """Apply a signed ``amount`` to the meter's balance and log it.

        Raises NotFoundError if the meter has no balance row. The balance has
        no floor and may go negative.
        """
        async with self._lock_for(meter_id):
            async with self._db.session() as session, session.begin():
                balance = await session.scalar(select(Balance).where(Balance.meter_id == meter_id))
                if balance is None:
                    raise NotFoundError("Balance", meter_id)

                now = self._clock()
                before = balance.current_balance
                after = before + amount
                balance.current_balance = after
                balance.last_updated = now

                row = Transaction(
                    transaction_id=str(uuid.uuid4()),
                    meter_id=meter_id,
                    type=type.value,
                    amount=amount,
                    balance_before=before,
                    balance_after=after,
                    description=description,
                    timestamp=now,
                )
                session.add(row)

        logger.info(
            "Ledger %s %s: %+.4f (%.4f -> %.4f)", meter_id, type.value, amount, before, after
        )
        return LedgerEntry.from_row(row)

    async def recharge(
        self, meter_id: str, amount: float, description: str | None = None
    ) -> LedgerEntry:
        if amount <= 0:
            raise ValidationError(f"Recharge amount must be positive, got {amount}")
        description = description or f"Balance recharge of ₹{amount:.2f}"
        return await self.credit_or_debit(meter_id, amount, TransactionType.RECHARGE, description)

    async def deduct_consumption(
        self, meter_id: str, cost: float, description: str | None = None
    ) -> LedgerEntry:
        if cost < 0:
            raise ValidationError(f"Consumption cost must not be negative, got {cost}")
        return await self.credit_or_debit(meter_id, -cost, TransactionType.CONSUMPTION, description)

    async def get_balance(self, meter_id: str) -> Balance:
        async with self._db.session() as session:
            balance = await session.scalar(select(Balance).where(Balance.meter_id == meter_id))
        if balance is None:
            raise NotFoundError("Balance", meter_id)
        return balance

    async def transactions(
        self, meter_id: str, limit: int = 50, type: TransactionType | None = None
    ) -> list[LedgerEntry]:
        """Most recent transactions first."""
        stmt = select(Transaction).where(Transaction.meter_id == meter_id)
        if type is not None:
            stmt = stmt.where(Transaction.type == type.value)
        stmt = stmt.order_by(Transaction.id.desc()).limit(limit)
        async with self._db.session() as session:
            result = await session.scalars(stmt)
            return [LedgerEntry.from_row(row) for row in result]

    async def transactions_summary(self, meter_id: str, days: int = 30) -> dict:
        since = self._clock() - timedelta(days=days)
        recharge = func.sum(Transaction.amount).filter(
            Transaction.type == TransactionType.RECHARGE.value
        )
        consumption = func.sum(func.abs(Transaction.amount)).filter(
            Transaction.type == TransactionType.CONSUMPTION.value
        )
        stmt = select(func.count(), recharge, consumption).where(
            Transaction.meter_id == meter_id, Transaction.timestamp >= since
        )
        async with self._db.session() as session:
            count, total_recharges, total_consumption = (await session.execute(stmt)).one()
        return {
            "total_transactions": count,
            "total_recharges": total_recharges or 0.0,
            "total_consumption": total_consumption or 0.0,
        }
