"""Tests for threshold alerts."""

import pytest

from prepaid_meter.errors import NotFoundError
from prepaid_meter.storage.models import Severity
from tests.conftest import METER_ID, make_config, reading


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path, meters=[{"meter_id": METER_ID, "initial_balance": 10.0}])


async def add_sample(context, clock, **kwargs):
    return await context.readings.add_sample(METER_ID, reading(**kwargs), 0.0, clock())


async def test_settlement_below_critical_raises_one_alert(context, clock):
    # 1 kWh at the 12:00 Normal rate of 6.00 takes 10.00 down to 4.00
    await context.readings.add_sample(METER_ID, reading(), 1.0, clock.advance(-1))
    clock.advance(1)

    [entry] = await context.scheduler.settle()
    assert entry.amount == pytest.approx(-6.0)
    assert entry.balance_after == pytest.approx(4.0)

    alerts = await context.alerts.list_alerts(METER_ID)
    assert len(alerts) == 1
    assert alerts[0].alert_type == "low_balance"
    assert alerts[0].severity == "critical"
    assert alerts[0].message == "Critical balance warning: ₹4.00 remaining"


async def test_balance_between_thresholds_is_a_warning(context):
    alert = await context.alerts.evaluate_balance(METER_ID, 15.0)
    assert alert.severity == "warning"
    assert alert.message == "Low balance: ₹15.00 remaining"

    assert await context.alerts.evaluate_balance(METER_ID, 20.01) is None


async def test_critical_threshold_is_inclusive(context):
    alert = await context.alerts.evaluate_balance(METER_ID, 5.0)
    assert alert.severity == "critical"


async def test_sample_thresholds(context, clock):
    assert await context.alerts.evaluate(await add_sample(context, clock)) == []

    [high] = await context.alerts.evaluate(await add_sample(context, clock, voltage=241.5))
    assert high.alert_type == "high_voltage"
    assert high.severity == "warning"
    assert high.message == "High voltage detected: 241.5V"

    [low] = await context.alerts.evaluate(await add_sample(context, clock, voltage=199.0))
    assert low.alert_type == "low_voltage"

    [heavy] = await context.alerts.evaluate(await add_sample(context, clock, active_power=5.5))
    assert heavy.alert_type == "high_consumption"
    assert heavy.severity == "info"
    assert heavy.message == "High power consumption: 5.5kW"


async def test_repeated_evaluation_repeats_alert(context, clock):
    sample = await add_sample(context, clock, voltage=245.0)
    await context.alerts.evaluate(sample)
    await context.alerts.evaluate(sample)

    assert len(await context.alerts.list_alerts(METER_ID)) == 2


async def test_read_state_and_summary(context, clock):
    first = await context.alerts.create_alert(METER_ID, "system", "one", Severity.WARNING)
    clock.advance(1)
    await context.alerts.create_alert(METER_ID, "system", "two", Severity.CRITICAL)
    clock.advance(1)
    await context.alerts.create_alert(METER_ID, "system", "three")

    newest_first = await context.alerts.list_alerts(METER_ID)
    assert [a.message for a in newest_first] == ["three", "two", "one"]

    marked = await context.alerts.mark_read(first.id)
    assert marked.is_read is True
    assert [a.message for a in await context.alerts.list_alerts(METER_ID, unread_only=True)] == [
        "three",
        "two",
    ]

    assert await context.alerts.summary(METER_ID) == {
        "total_alerts": 3,
        "unread_alerts": 2,
        "critical_alerts": 1,
        "warning_alerts": 1,
        "info_alerts": 1,
    }

    assert await context.alerts.mark_all_read(METER_ID) == 2
    assert (await context.alerts.summary(METER_ID))["unread_alerts"] == 0


async def test_mark_unknown_alert(context):
    with pytest.raises(NotFoundError):
        await context.alerts.mark_read(12345)


async def test_alert_fires_webhook(context, sink):
    await context.webhooks.create("alerts", "http://alerts.test/hook", ["alert_created"])

    await context.alerts.create_alert(METER_ID, "system", "check me", Severity.WARNING)
    await context.dispatcher.drain()

    assert sink.events() == ["alert_created"]
