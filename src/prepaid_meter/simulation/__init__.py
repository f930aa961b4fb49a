"""Telemetry synthesis, energy integration and the periodic billing jobs."""
