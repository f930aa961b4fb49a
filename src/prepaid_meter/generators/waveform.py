import logging
import math
import random
from datetime import datetime
from typing import TYPE_CHECKING

from prepaid_meter.generators.base import Generator, RawReading

if TYPE_CHECKING:
    from prepaid_meter.config import SimulationConfig

logger = logging.getLogger(__name__)

# Multiplicative jitter applied to the load-shaped current draw
_CURRENT_JITTER = (0.8, 1.2)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class WaveformGenerator(Generator):
    """Uniform-random electrical readings shaped by an hour-of-day load table.

    Voltage and frequency wander symmetrically around nominal and are clamped
    to their bands; current follows the load multiplier with +/-20% jitter;
    the power factor is drawn uniformly from its band. Active, reactive and
    apparent power are derived from those.
    """

    def __init__(self, config: "SimulationConfig", rng: random.Random | None = None) -> None:
        self._voltage = config.voltage
        self._current = config.current
        self._pf = config.power_factor
        self._frequency = config.frequency
        self._load_pattern = list(config.load_pattern)
        self._rng = rng or random.Random()

    def load_multiplier(self, now: datetime) -> float:
        return self._load_pattern[now.hour]

    def generate(self, now: datetime, load_multiplier: float) -> RawReading:
        voltage = self._generate_voltage()
        current = self._generate_current(load_multiplier)
        pf = self._rng.uniform(self._pf.min, self._pf.max)
        frequency = self._generate_frequency()

        active_power = voltage * current * pf / 1000
        reactive_power = active_power * math.tan(math.acos(pf))
        apparent_power = voltage * current / 1000

        reading = RawReading(
            voltage=round(voltage, 2),
            current=round(current, 2),
            power_factor=round(pf, 3),
            active_power=round(active_power, 3),
            reactive_power=round(reactive_power, 3),
            apparent_power=round(apparent_power, 3),
            frequency=round(frequency, 2),
        )
        logger.debug(
            "Generated %.2f V %.2f A %.3f kW (load x%.2f at %s)",
            reading.voltage,
            reading.current,
            reading.active_power,
            load_multiplier,
            now.strftime("%H:%M"),
        )
        return reading

    def _generate_voltage(self) -> float:
        cfg = self._voltage
        value = cfg.nominal + (self._rng.random() - 0.5) * cfg.fluctuation
        return _clamp(value, cfg.min, cfg.max)

    def _generate_current(self, load_multiplier: float) -> float:
        cfg = self._current
        base = cfg.idle + (cfg.max - cfg.idle) * load_multiplier
        return max(cfg.min, base * self._rng.uniform(*_CURRENT_JITTER))

    def _generate_frequency(self) -> float:
        cfg = self._frequency
        value = cfg.nominal + (self._rng.random() - 0.5) * cfg.variation
        return _clamp(value, cfg.min, cfg.max)
