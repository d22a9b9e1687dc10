import asyncio

import pytest

pytest.importorskip("aiosqlite")

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from banquet_tracker.core.engine import BanquetEngine
from banquet_tracker.core.errors import ConcurrentUpdate, NotFound
from banquet_tracker.models import ResourceType
from banquet_tracker.models.database import Base, Card, Production, Stock, Village
from banquet_tracker.storage import SqlStorage

RT = ResourceType.TUNIQUE


def _run_with_sql(tmp_path, clock, scenario):
    async def _main():
        db = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'banquet.db'}", poolclass=NullPool)
        async with db.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        engine = BanquetEngine(SqlStorage(async_sessionmaker(db, expire_on_commit=False)), clock=clock)
        try:
            return await scenario(engine)
        finally:
            await db.dispose()

    return asyncio.run(_main())


def test_schema_constraints_declared():
    assert "uq_stocks_village_type" in {c.name for c in Stock.__table__.constraints}
    assert "uq_production_village_type" in {c.name for c in Production.__table__.constraints}
    assert "ix_villages_player_id" in {ix.name for ix in Village.__table__.indexes}
    assert "ix_cards_player_type" in {ix.name for ix in Card.__table__.indexes}


def test_boost_transition_on_sql_backend(tmp_path, clock):
    async def scenario(engine):
        player = await engine.create_player("Ana", capacity=1000)
        site = await engine.create_site(player.id, "Nord")
        await engine.set_production_rate(site.id, RT, 24)
        clock.advance(hours=12)
        await engine.activate_boost(player.id, RT, 5)
        clock.advance(hours=12)
        return await engine.get_current_amount(site.id, RT)

    assert _run_with_sql(tmp_path, clock, scenario) == 72


def test_snapshot_version_guard(tmp_path, clock):
    async def scenario(engine):
        player = await engine.create_player("Ana")
        site = await engine.create_site(player.id, "Nord")
        snap = await engine.storage.get_snapshot(site.id, RT)
        await engine.storage.upsert_snapshot(site.id, RT, 5, clock(), expected_version=snap.version)
        with pytest.raises(ConcurrentUpdate):
            await engine.storage.upsert_snapshot(site.id, RT, 9, clock(), expected_version=snap.version)
        return await engine.storage.get_snapshot(site.id, RT), snap.version

    stored, original_version = _run_with_sql(tmp_path, clock, scenario)
    assert stored.amount == 5
    assert stored.version == original_version + 1
    assert stored.as_of.tzinfo is not None


def test_trades_keep_names_and_survive_deletion(tmp_path, clock):
    async def scenario(engine):
        ana = await engine.create_player("Ana")
        bruno = await engine.create_player("Bruno")
        a = await engine.create_site(ana.id, "Nord")
        c = await engine.create_site(bruno.id, "Est")
        await engine.set_manual_amount(a.id, RT, 100)
        await engine.execute_trade(ana.id, bruno.id, a.id, RT, 30, to_site_id=c.id)
        clock.advance(minutes=5)
        await engine.execute_trade(ana.id, bruno.id, a.id, RT, 10)
        named = await engine.list_trades()
        await engine.delete_player(bruno.id)
        after = await engine.list_trades()
        return named, after, await engine.get_current_amount(a.id, RT)

    named, after, left = _run_with_sql(tmp_path, clock, scenario)
    assert [t.amount for t in named] == [10, 30]
    assert named[0].to_player_name == "Bruno"
    assert len(after) == 2 and after[0].to_player_name is None
    assert left == 60


def test_cascade_and_not_found(tmp_path, clock):
    async def scenario(engine):
        player = await engine.create_player("Ana")
        site = await engine.create_site(player.id, "Nord")
        await engine.activate_boost(player.id, RT, 2)
        await engine.delete_player(player.id)
        leftovers = (
            await engine.storage.list_rates([site.id]),
            await engine.storage.list_snapshots([site.id]),
            await engine.storage.list_boosts(player.id),
        )
        with pytest.raises(NotFound):
            await engine.storage.upsert_rate(site.id, RT, 3)
        return leftovers

    assert _run_with_sql(tmp_path, clock, scenario) == ([], [], [])


def test_backfill_creates_missing_rows(tmp_path, clock):
    async def scenario(engine):
        player = await engine.create_player("Ana")
        site = await engine.storage.create_site(player.id, "Brut", clock())
        created = await engine.backfill_rows()
        again = await engine.backfill_rows()
        rates = await engine.storage.list_rates([site.id])
        return created, again, len(rates)

    created, again, rate_count = _run_with_sql(tmp_path, clock, scenario)
    assert created == 2 * len(ResourceType)
    assert again == 0
    assert rate_count == len(ResourceType)
