"""Running integral of active power into energy, per meter.

State lives only in memory. After a process restart the first tick for each
meter integrates to zero, so the energy drawn between the last sample before
the restart and the first one after it is never counted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)

_SECONDS_PER_HOUR = 3600.0


@dataclass
class AccumulatorState:
    last_timestamp: datetime
    cumulative_energy: float = 0.0  # kWh


class EnergyAccumulator:
    def __init__(self) -> None:
        self._states: dict[str, AccumulatorState] = {}

    @property
    def meters(self) -> list[str]:
        return list(self._states)

    def state(self, meter_id: str) -> AccumulatorState | None:
        return self._states.get(meter_id)

    def integrate(self, meter_id: str, active_power_kw: float, now: datetime) -> float:
        """Return the kWh drawn since the previous call for ``meter_id``."""
        state = self._states.get(meter_id)
        if state is None:
            self._states[meter_id] = AccumulatorState(last_timestamp=now)
            logger.info("Energy accumulator started for meter %s", meter_id)
            return 0.0

        elapsed = (now - state.last_timestamp).total_seconds()
        state.last_timestamp = now
        if elapsed < 0:
            logger.warning(
                "Clock moved backwards by %.3fs for meter %s, skipping interval", -elapsed, meter_id
            )
            return 0.0

        delta = active_power_kw * elapsed / _SECONDS_PER_HOUR
        state.cumulative_energy += delta
        return delta

    def reset(self, meter_id: str | None = None) -> None:
        if meter_id is None:
            self._states.clear()
        else:
            self._states.pop(meter_id, None)
