import os
import re
from datetime import time
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from prepaid_meter.billing.rates import check_partition
from prepaid_meter.notify.webhooks import WEBHOOK_EVENTS


def _substitute_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with environment variable values."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_val = os.environ.get(var_name)
        if env_val is None:
            raise ValueError(f"Environment variable {var_name!r} is not set")
        return env_val

    return re.sub(r"\$\{([^}]+)}", replacer, value)


def _walk_and_substitute(obj: object) -> object:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_substitute(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_substitute(item) for item in obj]
    return obj


# Evening-heavy household profile, one multiplier per hour of day.
DEFAULT_LOAD_PATTERN = [
    0.3, 0.2, 0.2, 0.2, 0.2, 0.3,
    0.7, 0.9, 1.0, 0.6, 0.5, 0.6,
    0.8, 0.7, 0.6, 0.6, 0.7, 0.8,
    1.0, 1.2, 1.1, 0.9, 0.7, 0.5,
]


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class DatabaseConfig(BaseModel):
    url: str = "sqlite+aiosqlite:///./meter.db"
    echo: bool = False


class MeterConfig(BaseModel):
    meter_id: str = "METER_001"
    location: str = "Home - Living Room"
    customer_name: str = "Demo Customer"
    customer_id: str = "CUST_001"
    initial_balance: float = Field(default=100.0, ge=0)


class VoltageConfig(BaseModel):
    nominal: float = 220.0
    min: float = 198.0
    max: float = 242.0
    fluctuation: float = Field(default=2.0, ge=0)

    @model_validator(mode="after")
    def check_band(self) -> "VoltageConfig":
        if not self.min <= self.nominal <= self.max:
            raise ValueError("voltage band must satisfy min <= nominal <= max")
        return self


class CurrentConfig(BaseModel):
    min: float = Field(default=0.5, ge=0)
    max: float = 20.0
    idle: float = 1.0

    @model_validator(mode="after")
    def check_band(self) -> "CurrentConfig":
        if not self.min <= self.max or not self.idle <= self.max:
            raise ValueError("current band must satisfy min <= max and idle <= max")
        return self


class PowerFactorConfig(BaseModel):
    min: float = 0.8
    max: float = 0.95

    @model_validator(mode="after")
    def check_band(self) -> "PowerFactorConfig":
        if not 0 < self.min <= self.max <= 1:
            raise ValueError("power factor band must satisfy 0 < min <= max <= 1")
        return self


class FrequencyConfig(BaseModel):
    nominal: float = 50.0
    min: float = 49.5
    max: float = 50.5
    variation: float = Field(default=0.2, ge=0)

    @model_validator(mode="after")
    def check_band(self) -> "FrequencyConfig":
        if not self.min <= self.nominal <= self.max:
            raise ValueError("frequency band must satisfy min <= nominal <= max")
        return self


class SimulationConfig(BaseModel):
    autostart: bool = True
    generator: str = "waveform"
    realtime_interval: float = Field(default=2.0, gt=0)
    historical_interval: float = Field(default=1800.0, gt=0)
    historical_window: float = Field(default=1800.0, gt=0)
    balance_update_interval: float = Field(default=10.0, gt=0)
    settlement_window: float | None = Field(default=None, gt=0)
    voltage: VoltageConfig = Field(default_factory=VoltageConfig)
    current: CurrentConfig = Field(default_factory=CurrentConfig)
    power_factor: PowerFactorConfig = Field(default_factory=PowerFactorConfig)
    frequency: FrequencyConfig = Field(default_factory=FrequencyConfig)
    load_pattern: list[float] = Field(default_factory=lambda: list(DEFAULT_LOAD_PATTERN))

    @field_validator("load_pattern", mode="before")
    @classmethod
    def hour_mapping_to_list(cls, v: object) -> object:
        if isinstance(v, dict):
            hours = {int(k): val for k, val in v.items()}
            if sorted(hours) != list(range(24)):
                raise ValueError("load_pattern must define hours 0-23")
            return [hours[h] for h in range(24)]
        return v

    @field_validator("load_pattern")
    @classmethod
    def validate_load_pattern(cls, v: list[float]) -> list[float]:
        if len(v) != 24:
            raise ValueError("load_pattern must have exactly 24 entries")
        if any(m < 0 for m in v):
            raise ValueError("load_pattern multipliers must be non-negative")
        return v

    @property
    def effective_settlement_window(self) -> float:
        return self.settlement_window or self.balance_update_interval


class RateRule(BaseModel):
    name: str
    rate: float = Field(ge=0)
    start_time: time
    end_time: time

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def sexagesimal_minutes(cls, v: object) -> object:
        # YAML 1.1 reads an unquoted 06:00 as the base-60 integer 360
        if isinstance(v, int) and not isinstance(v, bool):
            if not 0 <= v < 24 * 60:
                raise ValueError(f"time of day out of range: {v}")
            return time(v // 60, v % 60)
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def whole_minutes(cls, v: time) -> time:
        if v.second or v.microsecond:
            raise ValueError("rate rule times must be whole minutes")
        return v.replace(tzinfo=None)


def _default_rate_rules() -> list[RateRule]:
    return [
        RateRule(name="Off-Peak", rate=4.50, start_time=time(0, 0), end_time=time(6, 0)),
        RateRule(name="Normal", rate=6.00, start_time=time(6, 0), end_time=time(18, 0)),
        RateRule(name="Peak", rate=8.50, start_time=time(18, 0), end_time=time(0, 0)),
    ]


class RatesConfig(BaseModel):
    default_rate: float = Field(default=6.00, ge=0)
    rules: list[RateRule] = Field(default_factory=_default_rate_rules)

    @model_validator(mode="after")
    def validate_partition(self) -> "RatesConfig":
        check_partition(self.rules)
        return self


class AlertsConfig(BaseModel):
    low_balance_threshold: float = 20.0
    critical_balance_threshold: float = 5.0
    high_consumption_threshold: float = 5.0
    voltage_high_threshold: float = 240.0
    voltage_low_threshold: float = 200.0

    @model_validator(mode="after")
    def check_thresholds(self) -> "AlertsConfig":
        if self.critical_balance_threshold > self.low_balance_threshold:
            raise ValueError("critical_balance_threshold must not exceed low_balance_threshold")
        if self.voltage_low_threshold >= self.voltage_high_threshold:
            raise ValueError("voltage_low_threshold must be below voltage_high_threshold")
        return self


class WebhookEndpointConfig(BaseModel):
    name: str
    url: str
    events: list[str] = Field(default_factory=lambda: ["*"])
    secret: str | None = None
    active: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return v

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        unknown = sorted(set(v) - WEBHOOK_EVENTS)
        if unknown:
            raise ValueError(f"unknown webhook events: {', '.join(unknown)}")
        if not v:
            raise ValueError("webhook must subscribe to at least one event")
        return v


class WebhooksConfig(BaseModel):
    timeout: float = Field(default=5.0, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    endpoints: list[WebhookEndpointConfig] = Field(default_factory=list)


class RetentionConfig(BaseModel):
    realtime_days: int = Field(default=1, ge=1)
    historical_days: int = Field(default=365, ge=1)
    transaction_days: int = Field(default=365, ge=1)
    alert_days: int = Field(default=30, ge=1)
    cleanup_interval: float = Field(default=24 * 3600.0, gt=0)
    health_check_interval: float = Field(default=3600.0, gt=0)
    stale_after: float = Field(default=600.0, gt=0)


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    meters: list[MeterConfig] = Field(default_factory=lambda: [MeterConfig()])
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    rates: RatesConfig = Field(default_factory=RatesConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    log_level: str = "INFO"

    @field_validator("meters")
    @classmethod
    def validate_meters(cls, v: list[MeterConfig]) -> list[MeterConfig]:
        if not v:
            raise ValueError("at least one meter must be configured")
        ids = [m.meter_id for m in v]
        if len(set(ids)) != len(ids):
            raise ValueError("meter_id values must be unique")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log_level {v!r}")
        return v

    @property
    def default_meter_id(self) -> str:
        return self.meters[0].meter_id


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    with path.open() as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    raw = _walk_and_substitute(raw)
    return AppConfig.model_validate(raw)
