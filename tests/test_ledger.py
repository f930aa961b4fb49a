"""Tests for the prepaid balance ledger."""

import asyncio

import pytest

from prepaid_meter.errors import NotFoundError, ValidationError
from prepaid_meter.storage.models import TransactionType
from tests.conftest import METER_ID


async def test_initial_balance_is_recorded_as_recharge(context):
    balance = await context.ledger.get_balance(METER_ID)
    assert balance.current_balance == 100.0

    [initial] = await context.ledger.transactions(METER_ID)
    assert initial.type == "recharge"
    assert initial.description == "Initial balance"
    assert initial.balance_before == 0.0
    assert initial.balance_after == 100.0


async def test_reopening_does_not_recharge_again(context):
    await context.open()

    balance = await context.ledger.get_balance(METER_ID)
    assert balance.current_balance == 100.0
    assert len(await context.ledger.transactions(METER_ID)) == 1


async def test_recharge_and_deduct(context):
    entry = await context.ledger.recharge(METER_ID, 50)
    assert entry.type is TransactionType.RECHARGE
    assert entry.balance_before == 100.0
    assert entry.balance_after == 150.0
    assert entry.description == "Balance recharge of ₹50.00"

    entry = await context.ledger.deduct_consumption(METER_ID, 12.5, "test usage")
    assert entry.type is TransactionType.CONSUMPTION
    assert entry.amount == -12.5
    assert entry.balance_after == 137.5

    balance = await context.ledger.get_balance(METER_ID)
    assert balance.current_balance == 137.5

    latest = (await context.ledger.transactions(METER_ID, limit=1))[0]
    assert latest == entry
    assert latest.to_dict()["type"] == "consumption"


async def test_balance_may_go_negative(context):
    entry = await context.ledger.deduct_consumption(METER_ID, 130)
    assert entry.balance_after == -30.0


async def test_chain_holds_under_concurrency(context):
    ops = []
    for i in range(15):
        ops.append(context.ledger.recharge(METER_ID, 5))
        ops.append(context.ledger.deduct_consumption(METER_ID, 1.5 + i / 10))
    await asyncio.gather(*ops)

    rows = list(reversed(await context.ledger.transactions(METER_ID, limit=100)))
    assert len(rows) == 31
    for prev, cur in zip(rows, rows[1:]):
        assert cur.balance_before == pytest.approx(prev.balance_after)
        assert cur.balance_after == pytest.approx(cur.balance_before + cur.amount)

    balance = await context.ledger.get_balance(METER_ID)
    assert balance.current_balance == pytest.approx(rows[-1].balance_after)
    assert balance.current_balance == pytest.approx(sum(r.amount for r in rows))


async def test_non_positive_recharge_rejected(context):
    with pytest.raises(ValidationError, match="must be positive"):
        await context.ledger.recharge(METER_ID, 0)
    with pytest.raises(ValidationError):
        await context.ledger.recharge(METER_ID, -10)

    assert len(await context.ledger.transactions(METER_ID)) == 1


async def test_negative_consumption_rejected(context):
    with pytest.raises(ValidationError, match="must not be negative"):
        await context.ledger.deduct_consumption(METER_ID, -1)


async def test_unknown_meter(context):
    with pytest.raises(NotFoundError, match="Balance 'NOPE' not found"):
        await context.ledger.recharge("NOPE", 10)
    with pytest.raises(NotFoundError):
        await context.ledger.get_balance("NOPE")


async def test_transactions_filter_and_summary(context):
    await context.ledger.recharge(METER_ID, 20)
    await context.ledger.deduct_consumption(METER_ID, 3)
    await context.ledger.deduct_consumption(METER_ID, 2)

    recent = await context.ledger.transactions(METER_ID, limit=2)
    assert [t.amount for t in recent] == [-2, -3]

    consumption = await context.ledger.transactions(METER_ID, type=TransactionType.CONSUMPTION)
    assert {t.type for t in consumption} == {TransactionType.CONSUMPTION}
    assert len(consumption) == 2

    summary = await context.ledger.transactions_summary(METER_ID)
    assert summary == {
        "total_transactions": 4,
        "total_recharges": 120.0,
        "total_consumption": 5.0,
    }


async def test_summary_window(context, clock):
    clock.advance(40 * 24 * 3600)
    await context.ledger.recharge(METER_ID, 10)

    summary = await context.ledger.transactions_summary(METER_ID, days=30)
    assert summary["total_transactions"] == 1
    assert summary["total_recharges"] == 10.0
    assert summary["total_consumption"] == 0.0
