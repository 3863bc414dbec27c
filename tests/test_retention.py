"""Retention job: archived mirror rows purged after the retention window."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update

from models import EquipmentArchive, EquipmentRecord, Lifecycle
from services.retention import RetentionJob

from conftest import DOWN, READY, make_record


async def _mirror_count(session_factory):
    async with session_factory() as session:
        return (
            await session.execute(select(func.count()).select_from(EquipmentRecord))
        ).scalar_one()


async def _age_archived_rows(session_factory, days):
    old = datetime.now(timezone.utc) - timedelta(days=days)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(EquipmentRecord)
                .where(EquipmentRecord.lifecycle == Lifecycle.archived)
                .values(updated_at=old)
            )


async def test_purges_only_old_archived_rows(sync_engine, source, session_factory):
    source.records = [make_record(1, DOWN), make_record(2, DOWN)]
    await sync_engine.run_cycle()
    source.records = [make_record(1, READY), make_record(2, DOWN)]
    await sync_engine.run_cycle()
    await _age_archived_rows(session_factory, days=10)

    job = RetentionJob(session_factory, retention_days=7)
    assert await job.purge() == 1
    assert await _mirror_count(session_factory) == 1

    # архив и история не чистятся
    async with session_factory() as session:
        archived = (
            await session.execute(select(func.count()).select_from(EquipmentArchive))
        ).scalar_one()
    assert archived == 1


async def test_recent_archived_rows_are_kept(sync_engine, source, session_factory):
    source.records = [make_record(1, DOWN)]
    await sync_engine.run_cycle()
    source.records = [make_record(1, READY)]
    await sync_engine.run_cycle()

    job = RetentionJob(session_factory, retention_days=7)
    assert await job.purge() == 0
    assert await _mirror_count(session_factory) == 1


async def test_purge_runs_in_batches(sync_engine, source, session_factory):
    source.records = [make_record(i, DOWN) for i in range(1, 6)]
    await sync_engine.run_cycle()
    source.records = [make_record(i, READY) for i in range(1, 6)]
    await sync_engine.run_cycle()
    await _age_archived_rows(session_factory, days=30)

    job = RetentionJob(session_factory, retention_days=7, batch_size=2)
    assert await job.purge() == 5
    assert await _mirror_count(session_factory) == 0
