import asyncio

import pytest

import banquet_tracker.core.config as config
from banquet_tracker.core.errors import InsufficientStock, NotFound, ValidationError
from banquet_tracker.core.metrics import metrics
from banquet_tracker.models import ResourceType

RT = ResourceType.VIN


async def _two_villages(engine, capacity=1000, first=100, second=20):
    player = await engine.create_player("Ana", capacity=capacity)
    a = await engine.create_site(player.id, "Nord")
    b = await engine.create_site(player.id, "Sud")
    await engine.set_manual_amount(a.id, RT, first)
    await engine.set_manual_amount(b.id, RT, second)
    return player, a, b


async def _two_players(engine, sender_stock=100, recipient_capacity=1000):
    sender = await engine.create_player("Ana", capacity=1000)
    recipient = await engine.create_player("Bruno", capacity=recipient_capacity)
    a = await engine.create_site(sender.id, "Nord")
    await engine.set_manual_amount(a.id, RT, sender_stock)
    return sender, recipient, a


def test_internal_transfer_conserves_total(engine):
    async def _run():
        _, a, b = await _two_villages(engine)
        result = await engine.transfer_internal(a.id, b.id, RT, 30)
        return result, await engine.get_current_amount(a.id, RT), await engine.get_current_amount(b.id, RT)

    result, left, right = asyncio.run(_run())
    assert (left, right) == (70, 50)
    assert left + right == 120
    assert result.source.amount == 70 and result.destination.amount == 50


def test_internal_transfer_includes_accrued_stock(engine, clock):
    async def _run():
        _, a, b = await _two_villages(engine, first=0, second=0)
        await engine.set_production_rate(a.id, RT, 240)
        clock.advance(hours=3)
        await engine.transfer_internal(a.id, b.id, RT, 30)
        clock.advance(hours=1)
        return await engine.get_current_amount(a.id, RT), await engine.get_current_amount(b.id, RT)

    # 30 accrued in 3h, all moved; source keeps producing afterwards
    assert asyncio.run(_run()) == (10, 30)


def test_internal_transfer_insufficient_changes_nothing(engine):
    async def _run():
        _, a, b = await _two_villages(engine)
        before = (await engine.storage.get_snapshot(a.id, RT), await engine.storage.get_snapshot(b.id, RT))
        with pytest.raises(InsufficientStock) as excinfo:
            await engine.transfer_internal(a.id, b.id, RT, 200)
        after = (await engine.storage.get_snapshot(a.id, RT), await engine.storage.get_snapshot(b.id, RT))
        return excinfo.value, before, after

    error, before, after = asyncio.run(_run())
    assert error.requested == 200 and error.available == 100
    assert before == after


def test_internal_transfer_destination_clamped_to_capacity(engine):
    async def _run():
        _, a, b = await _two_villages(engine, capacity=100, first=100, second=90)
        await engine.transfer_internal(a.id, b.id, RT, 30)
        return await engine.get_current_amount(a.id, RT), await engine.get_current_amount(b.id, RT)

    assert asyncio.run(_run()) == (70, 100)


def test_internal_transfer_requires_distinct_villages(engine):
    async def _run():
        _, a, _ = await _two_villages(engine)
        await engine.transfer_internal(a.id, a.id, RT, 1)

    with pytest.raises(ValidationError):
        asyncio.run(_run())


def test_internal_transfer_requires_same_player(engine):
    async def _run():
        _, recipient, a = await _two_players(engine)
        c = await engine.create_site(recipient.id, "Est")
        await engine.transfer_internal(a.id, c.id, RT, 1)

    with pytest.raises(ValidationError):
        asyncio.run(_run())


@pytest.mark.parametrize("bad", [0, -3, "beaucoup"])
def test_transfer_amount_must_be_positive_number(engine, bad):
    async def _run():
        _, a, b = await _two_villages(engine)
        await engine.transfer_internal(a.id, b.id, RT, bad)

    with pytest.raises(ValidationError):
        asyncio.run(_run())


def test_trade_moves_stock_and_records_ledger(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine)
        c = await engine.create_site(recipient.id, "Est")
        result = await engine.execute_trade(sender.id, recipient.id, a.id, RT, 40, to_site_id=c.id)
        return (
            result,
            await engine.get_current_amount(a.id, RT),
            await engine.get_current_amount(c.id, RT),
            await engine.list_trades(),
        )

    result, left, right, trades = asyncio.run(_run())
    assert result.delivered is True
    assert (left, right) == (60, 40)
    assert len(trades) == 1
    assert trades[0].from_player_name == "Ana" and trades[0].to_player_name == "Bruno"
    assert trades[0].amount == 40 and trades[0].resource_type is RT


def test_trade_defaults_to_recipients_first_village(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine)
        first = await engine.create_site(recipient.id, "Premier")
        second = await engine.create_site(recipient.id, "Second")
        result = await engine.execute_trade(sender.id, recipient.id, a.id, RT, 10)
        return result, first, await engine.get_current_amount(first.id, RT), await engine.get_current_amount(second.id, RT)

    result, first, credited, untouched = asyncio.run(_run())
    assert result.to_site_id == first.id
    assert (credited, untouched) == (10, 0)


def test_trade_to_player_without_village_keeps_ledger_row(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine)
        result = await engine.execute_trade(sender.id, recipient.id, a.id, RT, 25)
        return result, await engine.get_current_amount(a.id, RT), await engine.list_trades()

    result, left, trades = asyncio.run(_run())
    assert result.delivered is False
    assert result.destination is None
    assert left == 75
    assert len(trades) == 1


def test_trade_credit_clamped_to_recipient_capacity(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine, recipient_capacity=50)
        c = await engine.create_site(recipient.id, "Est")
        await engine.set_manual_amount(c.id, RT, 40)
        await engine.execute_trade(sender.id, recipient.id, a.id, RT, 30, to_site_id=c.id)
        return await engine.get_current_amount(c.id, RT)

    assert asyncio.run(_run()) == 50


def test_trade_overdraw_rejected_by_default(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine, sender_stock=10)
        await engine.create_site(recipient.id, "Est")
        with pytest.raises(InsufficientStock):
            await engine.execute_trade(sender.id, recipient.id, a.id, RT, 50)
        return await engine.list_trades(), await engine.get_current_amount(a.id, RT)

    trades, left = asyncio.run(_run())
    assert trades == []
    assert left == 10


def test_trade_overdraw_allowed_floors_at_zero(engine, monkeypatch):
    monkeypatch.setattr(config, "TRADE_ALLOW_OVERDRAW", True)

    async def _run():
        sender, recipient, a = await _two_players(engine, sender_stock=10)
        c = await engine.create_site(recipient.id, "Est")
        result = await engine.execute_trade(sender.id, recipient.id, a.id, RT, 50)
        return result, await engine.get_current_amount(a.id, RT), await engine.get_current_amount(c.id, RT)

    result, left, right = asyncio.run(_run())
    assert result.trade.amount == 50
    assert left == 0
    assert right == 50


def test_trade_validations(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine)
        other = await engine.create_player("Chloe")
        foreign = await engine.create_site(other.id, "Ailleurs")
        errors = []
        for kwargs in (
            dict(from_player_id=sender.id, to_player_id=sender.id, from_site_id=a.id),
            dict(from_player_id=recipient.id, to_player_id=sender.id, from_site_id=a.id),
            dict(from_player_id=sender.id, to_player_id=recipient.id, from_site_id=a.id, to_site_id=foreign.id),
        ):
            try:
                await engine.execute_trade(resource_type=RT, amount=5, **kwargs)
            except ValidationError as exc:
                errors.append(exc)
        return errors, await engine.list_trades()

    errors, trades = asyncio.run(_run())
    assert len(errors) == 3
    assert trades == []


def test_trade_with_unknown_player(engine):
    async def _run():
        sender, _, a = await _two_players(engine)
        await engine.execute_trade(sender.id, 999, a.id, RT, 5)

    with pytest.raises(NotFound):
        asyncio.run(_run())


def test_trade_history_order_limit_and_filter(engine, clock):
    async def _run():
        sender, recipient, a = await _two_players(engine, sender_stock=500)
        third = await engine.create_player("Chloe")
        await engine.create_site(recipient.id, "Est")
        await engine.create_site(third.id, "Ouest")
        await engine.execute_trade(sender.id, recipient.id, a.id, RT, 1)
        clock.advance(minutes=1)
        await engine.execute_trade(sender.id, third.id, a.id, RT, 2)
        clock.advance(minutes=1)
        await engine.execute_trade(sender.id, recipient.id, a.id, RT, 3)
        return (
            await engine.list_trades(),
            await engine.list_trades(limit=2),
            await engine.list_trades(player_id=third.id),
        )

    everything, limited, filtered = asyncio.run(_run())
    assert [t.amount for t in everything] == [3, 2, 1]
    assert [t.amount for t in limited] == [3, 2]
    assert [t.amount for t in filtered] == [2]


def test_ledger_survives_player_deletion(engine):
    async def _run():
        sender, recipient, a = await _two_players(engine)
        await engine.execute_trade(sender.id, recipient.id, a.id, RT, 5)
        await engine.delete_player(recipient.id)
        return await engine.list_trades()

    trades = asyncio.run(_run())
    assert len(trades) == 1
    assert trades[0].to_player_name is None


def test_trade_metrics_recorded(engine):
    baseline = metrics.event_count("trade.recorded")

    async def _run():
        sender, recipient, a = await _two_players(engine)
        await engine.execute_trade(sender.id, recipient.id, a.id, RT, 5)

    asyncio.run(_run())
    assert metrics.event_count("trade.recorded") == baseline + 1


def test_internal_transfer_accepts_fractional_amount(engine):
    async def _run():
        _, a, b = await _two_villages(engine)
        result = await engine.transfer_internal(a.id, b.id, RT, 2.5)
        return result, await engine.get_current_amount(a.id, RT), await engine.get_current_amount(b.id, RT)

    result, left, right = asyncio.run(_run())
    assert result.amount == 2.5
    assert left == 97.5
    assert right == 22.5
