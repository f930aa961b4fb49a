"""SQLAlchemy ORM models for meters, telemetry, billing and notifications."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MAINTENANCE = "maintenance"


class TransactionType(str, Enum):
    RECHARGE = "recharge"
    CONSUMPTION = "consumption"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Meter(Base):
    __tablename__ = "meters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    meter_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_status: Mapped[str] = mapped_column(
        String(16), default=ConnectionStatus.CONNECTED.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    def to_dict(self) -> dict:
        return {
            "meter_id": self.meter_id,
            "location": self.location,
            "customer_name": self.customer_name,
            "customer_id": self.customer_id,
            "connection_status": self.connection_status,
            "updated_at": self.updated_at.isoformat(),
        }


class RealtimeSample(Base):
    __tablename__ = "realtime_data"
    __table_args__ = (Index("ix_realtime_meter_timestamp", "meter_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    meter_id: Mapped[str] = mapped_column(ForeignKey("meters.meter_id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    voltage: Mapped[float] = mapped_column(Float, nullable=False)
    current: Mapped[float] = mapped_column(Float, nullable=False)
    power_factor: Mapped[float] = mapped_column(Float, nullable=False)
    active_power: Mapped[float] = mapped_column(Float, nullable=False)  # kW
    reactive_power: Mapped[float] = mapped_column(Float, nullable=False)  # kVAR
    apparent_power: Mapped[float] = mapped_column(Float, nullable=False)  # kVA
    frequency: Mapped[float] = mapped_column(Float, nullable=False)
    energy_consumed: Mapped[float] = mapped_column(Float, nullable=False)  # kWh since last sample

    def to_dict(self) -> dict:
        return {
            "meter_id": self.meter_id,
            "timestamp": self.timestamp.isoformat(),
            "voltage": self.voltage,
            "current": self.current,
            "power_factor": self.power_factor,
            "active_power": self.active_power,
            "reactive_power": self.reactive_power,
            "apparent_power": self.apparent_power,
            "frequency": self.frequency,
            "energy_consumed": self.energy_consumed,
        }


class HistoricalBucket(Base):
    __tablename__ = "historical_data"
    __table_args__ = (Index("ix_historical_meter_start", "meter_id", "start_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    meter_id: Mapped[str] = mapped_column(ForeignKey("meters.meter_id"), nullable=False)
    voltage_avg: Mapped[float] = mapped_column(Float, nullable=False)
    current_avg: Mapped[float] = mapped_column(Float, nullable=False)
    power_factor_avg: Mapped[float] = mapped_column(Float, nullable=False)
    energy_consumed: Mapped[float] = mapped_column(Float, nullable=False)
    cost: Mapped[float] = mapped_column(Float, nullable=False)
    rate_applied: Mapped[float] = mapped_column(Float, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    def to_dict(self) -> dict:
        return {
            "meter_id": self.meter_id,
            "voltage_avg": self.voltage_avg,
            "current_avg": self.current_avg,
            "power_factor_avg": self.power_factor_avg,
            "energy_consumed": self.energy_consumed,
            "cost": self.cost,
            "rate_applied": self.rate_applied,
            "sample_count": self.sample_count,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


class Balance(Base):
    __tablename__ = "balance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    meter_id: Mapped[str] = mapped_column(
        ForeignKey("meters.meter_id"), unique=True, nullable=False
    )
    current_balance: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_meter_timestamp", "meter_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    meter_id: Mapped[str] = mapped_column(ForeignKey("meters.meter_id"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    balance_before: Mapped[float] = mapped_column(Float, nullable=False)
    balance_after: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (Index("ix_alerts_meter_created", "meter_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    meter_id: Mapped[str] = mapped_column(ForeignKey("meters.meter_id"), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meter_id": self.meter_id,
            "alert_type": self.alert_type,
            "message": self.message,
            "severity": self.severity,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
        }


class Webhook(Base):
    __tablename__ = "webhooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    secret_key: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    def subscribes_to(self, event: str) -> bool:
        return event in self.events or "*" in self.events

    def to_dict(self) -> dict:
        # secret_key stays server-side
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "events": list(self.events),
            "is_active": self.is_active,
            "signed": bool(self.secret_key),
            "created_at": self.created_at.isoformat(),
        }
