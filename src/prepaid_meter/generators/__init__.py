import random
from typing import TYPE_CHECKING

from prepaid_meter.generators.base import Generator, RawReading
from prepaid_meter.generators.waveform import WaveformGenerator

if TYPE_CHECKING:
    from prepaid_meter.config import SimulationConfig

_GENERATORS: dict[str, type[WaveformGenerator]] = {
    "waveform": WaveformGenerator,
}

__all__ = ["Generator", "RawReading", "WaveformGenerator", "create_generator"]


def create_generator(
    generator_type: str, config: "SimulationConfig", rng: random.Random | None = None
) -> Generator:
    """Create a generator instance by type name."""
    cls = _GENERATORS.get(generator_type)
    if cls is None:
        raise ValueError(
            f"Unknown generator type: {generator_type!r}. Available: {', '.join(_GENERATORS)}"
        )
    return cls(config, rng=rng)
