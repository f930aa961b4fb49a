"""Alerts, webhook fan-out and real-time snapshot push."""
