"""Tests for retention cleanup, the freshness check and the snapshot hub."""

from datetime import timedelta

from prepaid_meter.notify.broadcast import SnapshotHub
from prepaid_meter.storage.models import Severity
from tests.conftest import METER_ID, reading


async def test_cleanup_respects_retention(context, clock):
    now = clock()
    await context.readings.add_sample(METER_ID, reading(), 0.1, now - timedelta(days=2))
    await context.readings.add_sample(METER_ID, reading(), 0.1, now - timedelta(hours=1))

    clock.now = now - timedelta(days=31)
    await context.alerts.create_alert(METER_ID, "system", "old", Severity.INFO)
    clock.now = now
    await context.alerts.create_alert(METER_ID, "system", "new", Severity.INFO)

    deleted = await context.maintenance.cleanup()

    assert deleted == {"realtime_data": 1, "historical_data": 0, "transactions": 0, "alerts": 1}
    assert await context.readings.count_samples(METER_ID) == 1
    assert [a.message for a in await context.alerts.list_alerts(METER_ID)] == ["new"]
    assert context.maintenance.last_cleanup == now


async def test_health_check_flags_stale_meter(context, clock):
    assert await context.maintenance.health_check() == [METER_ID]

    [alert] = await context.alerts.list_alerts(METER_ID)
    assert alert.alert_type == "system"
    assert alert.severity == "warning"
    assert alert.message == "No real-time data generation detected"


async def test_health_check_passes_with_recent_data(context, clock):
    await context.readings.add_sample(METER_ID, reading(), 0.0, clock.advance(-60))
    clock.advance(60)

    assert await context.maintenance.health_check() == []
    assert await context.alerts.list_alerts(METER_ID) == []


async def test_maintenance_start_stop(context):
    await context.maintenance.start()
    await context.maintenance.start()
    assert context.maintenance.is_running

    await context.maintenance.stop()
    assert not context.maintenance.is_running


async def test_hub_drops_oldest_for_slow_subscriber():
    hub = SnapshotHub(queue_size=2)
    assert hub.latest is None

    async with hub.subscribe() as queue:
        for i in range(3):
            hub.publish({"n": i})
        received = [queue.get_nowait()["n"] for _ in range(queue.qsize())]

    assert received == [1, 2]
    assert hub.latest == {"n": 2}
    assert hub.subscriber_count == 0
