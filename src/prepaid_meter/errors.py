"""Domain exceptions shared by the simulation, billing and notification layers."""

from typing import Any


class MeterSimError(Exception):
    """Base class for prepaid meter errors."""


class NotFoundError(MeterSimError):
    """A meter, balance, alert or webhook does not exist."""

    def __init__(self, resource: str, identifier: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier!r} not found")


class ValidationError(MeterSimError, ValueError):
    """Malformed configuration or input, raised before anything is mutated."""


class TransientIOError(MeterSimError):
    """A database or webhook call failed and may succeed if retried."""
