from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime


@dataclass(frozen=True)
class RawReading:
    """One synthetic point reading, before energy integration."""

    voltage: float  # V
    current: float  # A
    power_factor: float
    active_power: float  # kW
    reactive_power: float  # kVAR
    apparent_power: float  # kVA
    frequency: float  # Hz

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


class Generator(ABC):
    """Abstract base class for telemetry generators."""

    @abstractmethod
    def load_multiplier(self, now: datetime) -> float:
        """Return the load shaping factor in force at ``now``."""

    @abstractmethod
    def generate(self, now: datetime, load_multiplier: float) -> RawReading:
        """Produce a reading for ``now`` under the given load multiplier."""
