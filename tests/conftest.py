"""Shared test fixtures."""

import json
import random
from datetime import datetime, timedelta

import httpx
import pytest

from prepaid_meter.config import AppConfig
from prepaid_meter.context import SimulationContext
from prepaid_meter.generators.base import RawReading

METER_ID = "METER_001"
START = datetime(2024, 1, 15, 12, 0, 0)


class FakeClock:
    """A wall clock the test moves by hand."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class WebhookSink:
    """Records outgoing webhook requests and answers per URL."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses: dict[str, int] = {}
        self.errors: dict[str, Exception] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.errors:
            raise self.errors[url]
        return httpx.Response(self.statuses.get(url, 200), json={"received": True})

    def to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def events(self, url: str | None = None) -> list[str]:
        requests = self.requests if url is None else self.to(url)
        return [json.loads(r.content)["event"] for r in requests]


def _merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def make_config(tmp_path, **overrides) -> AppConfig:
    raw = {
        "database": {"url": f"sqlite+aiosqlite:///{tmp_path}/test.db"},
        "meters": [{"meter_id": METER_ID, "initial_balance": 100.0}],
        "simulation": {
            "autostart": False,
            "realtime_interval": 0.1,
            "historical_interval": 3600,
            "balance_update_interval": 10,
        },
        "webhooks": {"timeout": 1.0, "retry_attempts": 1, "retry_delay": 0},
    }
    return AppConfig.model_validate(_merge(raw, overrides))


def reading(voltage: float = 220.0, active_power: float = 1.0) -> RawReading:
    current = round(active_power * 1000 / (voltage * 0.9), 2)
    return RawReading(
        voltage=voltage,
        current=current,
        power_factor=0.9,
        active_power=active_power,
        reactive_power=round(active_power * 0.484, 3),
        apparent_power=round(active_power / 0.9, 3),
        frequency=50.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return WebhookSink()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
async def http_client(sink):
    async with httpx.AsyncClient(transport=httpx.MockTransport(sink.handler)) as client:
        yield client


@pytest.fixture
async def context(config, clock, http_client):
    """An opened context on a fresh SQLite file, with timers not started."""
    ctx = SimulationContext(config, clock=clock, http_client=http_client, rng=random.Random(42))
    await ctx.open()
    yield ctx
    await ctx.close()
