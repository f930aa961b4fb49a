"""Tests for the REST endpoints."""

import httpx
import pytest
from fastapi import FastAPI

from prepaid_meter.api import build_router, install_error_handlers
from prepaid_meter.storage.models import Severity
from tests.conftest import METER_ID, reading


@pytest.fixture
async def client(context):
    """API client against the router, without running the app lifespan."""
    app = FastAPI()
    install_error_handlers(app)
    app.include_router(build_router(context))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def test_status(client):
    resp = await client.get("/api/status")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["simulation"]["state"] == "stopped"
    assert data["meters"] == [METER_ID]
    assert data["maintenance"]["last_cleanup"] is None


async def test_start_and_stop_simulation(client):
    resp = await client.post("/api/simulation/start")
    assert resp.json()["data"]["state"] == "running"

    resp = await client.post("/api/simulation/start")
    assert resp.json()["data"]["state"] == "running"

    resp = await client.post("/api/simulation/stop")
    assert resp.json()["data"]["state"] == "stopped"


async def test_balance(client):
    resp = await client.get("/api/balance")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["meter_id"] == METER_ID
    assert body["data"]["current_balance"] == 100.0
    assert body["data"]["status"] == "active"


async def test_recharge_and_transactions(client, context):
    resp = await client.post("/api/balance/recharge", json={"amount": 50})
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Recharge completed successfully"
    assert body["data"]["balance_before"] == 100.0
    assert body["data"]["balance_after"] == 150.0
    await context.dispatcher.drain()

    resp = await client.get("/api/balance/transactions")
    body = resp.json()
    assert [t["amount"] for t in body["data"]] == [50.0, 100.0]
    assert body["summary"]["total_recharges"] == 150.0

    resp = await client.get("/api/balance/transactions", params={"type": "consumption"})
    assert resp.json()["data"] == []


async def test_recharge_rejects_non_positive_amount(client):
    resp = await client.post("/api/balance/recharge", json={"amount": -5})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert "must be positive" in resp.json()["message"]


async def test_unknown_meter_is_404(client):
    resp = await client.post("/api/balance/recharge", json={"meter_id": "NOPE", "amount": 5})
    assert resp.status_code == 404
    assert resp.json()["message"] == "Balance 'NOPE' not found"

    resp = await client.get("/api/balance", params={"meter_id": "NOPE"})
    assert resp.status_code == 404


async def test_realtime_latest(client, context, clock):
    resp = await client.get("/api/realtime/latest")
    assert resp.status_code == 404

    await context.readings.add_sample(METER_ID, reading(voltage=231.0), 0.0, clock())
    resp = await client.get("/api/realtime/latest")
    assert resp.status_code == 200
    assert resp.json()["data"]["voltage"] == 231.0


async def test_historical(client, context, clock):
    await context.readings.add_sample(METER_ID, reading(), 0.25, clock.advance(60))
    clock.advance(60)
    await context.scheduler.aggregate()

    resp = await client.get("/api/historical", params={"hours": 1})
    [bucket] = resp.json()["data"]
    assert bucket["energy_consumed"] == 0.25
    assert bucket["rate_applied"] == 6.0


async def test_alerts_endpoints(client, context):
    alert = await context.alerts.create_alert(METER_ID, "system", "hello", Severity.WARNING)
    await context.alerts.create_alert(METER_ID, "system", "again", Severity.CRITICAL)

    resp = await client.get("/api/alerts")
    assert len(resp.json()["data"]) == 2

    resp = await client.post(f"/api/alerts/{alert.id}/read")
    assert resp.json()["data"]["is_read"] is True

    resp = await client.get("/api/alerts/summary")
    assert resp.json()["data"]["unread_alerts"] == 1

    resp = await client.post("/api/alerts/read-all")
    assert resp.json()["data"]["updated"] == 1

    resp = await client.get("/api/alerts", params={"unread_only": True})
    assert resp.json()["data"] == []

    resp = await client.post("/api/alerts/9999/read")
    assert resp.status_code == 404


async def test_webhook_endpoints(client, sink):
    resp = await client.post(
        "/api/webhooks",
        json={"name": "ops", "url": "http://ops.test/hook", "events": ["alert_created"]},
    )
    assert resp.status_code == 201
    webhook = resp.json()["data"]
    assert webhook["events"] == ["alert_created"]
    assert webhook["signed"] is False

    resp = await client.get("/api/webhooks")
    assert [w["name"] for w in resp.json()["data"]] == ["ops"]

    resp = await client.post(f"/api/webhooks/{webhook['id']}/test")
    assert resp.json()["success"] is True
    assert resp.json()["data"]["attempts"] == 1
    assert sink.events() == ["test"]

    resp = await client.delete(f"/api/webhooks/{webhook['id']}")
    assert resp.status_code == 200
    resp = await client.get("/api/webhooks")
    assert resp.json()["data"] == []

    resp = await client.delete(f"/api/webhooks/{webhook['id']}")
    assert resp.status_code == 404


async def test_webhook_with_unknown_event_is_400(client):
    resp = await client.post(
        "/api/webhooks", json={"name": "bad", "url": "http://x.test/", "events": ["nope"]}
    )
    assert resp.status_code == 400
    assert "nope" in resp.json()["message"]


async def test_meters_and_device_status(client):
    resp = await client.get("/api/meters")
    [meter] = resp.json()["data"]
    assert meter["meter_id"] == METER_ID
    assert meter["connection_status"] == "connected"

    resp = await client.get("/api/device/status", params={"meter_id": "NOPE"})
    assert resp.status_code == 404
    assert resp.json()["message"] == "Meter 'NOPE' not found"


async def test_disconnect_and_reconnect(client, context, sink):
    await context.webhooks.create(
        "device", "http://device.test/", ["meter_connected", "meter_disconnected"]
    )

    resp = await client.post("/api/device/disconnect", json={"reason": "maintenance"})
    assert resp.status_code == 200
    assert resp.json()["data"]["connection_status"] == "disconnected"

    resp = await client.get("/api/device/status")
    assert resp.json()["data"]["connection_status"] == "disconnected"

    resp = await client.post("/api/device/reconnect", json={})
    assert resp.json()["data"]["connection_status"] == "connected"

    await context.dispatcher.drain()
    assert sorted(sink.events()) == ["meter_connected", "meter_disconnected"]
    messages = [a.message for a in await context.alerts.list_alerts(METER_ID)]
    assert "Meter disconnected: maintenance" in messages
    assert "Meter reconnected: Manual reconnect" in messages


async def test_reconnect_refused_on_critical_balance(client, context):
    await context.ledger.deduct_consumption(METER_ID, 96)
    await client.post("/api/device/disconnect", json={})

    resp = await client.post("/api/device/reconnect", json={})
    assert resp.status_code == 400
    assert "insufficient balance ₹4.00" in resp.json()["message"]

    meter = await context.meters.get(METER_ID)
    assert meter.connection_status == "disconnected"
