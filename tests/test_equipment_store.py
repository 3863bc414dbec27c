"""Operator writes on the mirror and the launch path: roles, history, errors."""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from core.errors import Conflict, InvalidState, NotFound
from models import (
    ArchiveReason,
    EquipmentArchive,
    EquipmentHistory,
    EquipmentRecord,
    EquipmentStatus,
    Lifecycle,
)
from services import equipment_store
from services.archive_store import archive_stats, launch, list_archive, list_history, record_history


async def _create(session_factory, equipment_id="EQ-100", **data):
    payload = {"id": equipment_id, "equipment_type": "Экскаватор", **data}
    return await equipment_store.create_equipment(session_factory, payload, user_id=1)


async def _actions(session_factory, equipment_id):
    async with session_factory() as session:
        result = await session.execute(
            select(EquipmentHistory.action)
            .where(EquipmentHistory.equipment_id == equipment_id)
            .order_by(EquipmentHistory.history_id)
        )
        return list(result.scalars().all())


async def test_create_and_conflict(session_factory):
    row = await _create(session_factory, status=EquipmentStatus.Down)
    assert row.is_active
    assert row.manually_edited is False
    assert await _actions(session_factory, "EQ-100") == ["create"]

    with pytest.raises(Conflict):
        await _create(session_factory)


async def test_admin_status_change_sets_manual_flag(session_factory):
    await _create(session_factory, status=EquipmentStatus.Down, malfunction="Двигатель")
    row = await equipment_store.update_equipment(
        session_factory, "EQ-100",
        {"status": EquipmentStatus.Ready, "mechanic_name": "Петров"},
        user_id=1, role="admin",
    )
    assert row.status == EquipmentStatus.Ready
    assert row.manually_edited is True
    assert await _actions(session_factory, "EQ-100") == [
        "create", "update_status", "update_mechanic_name",
    ]


async def test_unchanged_values_write_no_history(session_factory):
    await _create(session_factory, mechanic_name="Петров")
    await equipment_store.update_equipment(
        session_factory, "EQ-100", {"mechanic_name": "Петров"}, user_id=1, role="admin",
    )
    assert await _actions(session_factory, "EQ-100") == ["create"]


async def test_dispatcher_limited_to_plan_and_mechanic(session_factory):
    await _create(session_factory, status=EquipmentStatus.Down)
    row = await equipment_store.update_equipment(
        session_factory, "EQ-100",
        {"status": EquipmentStatus.Ready, "planned_hours": 4.5, "mechanic_name": "Сидоров"},
        user_id=2, role="dispatcher",
    )
    assert row.status == EquipmentStatus.Down
    assert row.planned_hours == 4.5
    assert row.mechanic_name == "Сидоров"
    assert row.manually_edited is False


async def test_update_missing_raises_not_found(session_factory):
    with pytest.raises(NotFound):
        await equipment_store.update_equipment(
            session_factory, "EQ-404", {"mechanic_name": "x"}, user_id=1, role="admin",
        )


async def test_clear_manual_edit(session_factory):
    await _create(session_factory)
    await equipment_store.update_equipment(
        session_factory, "EQ-100", {"malfunction": "Ручная правка"}, user_id=1, role="admin",
    )
    row = await equipment_store.clear_manual_edit(session_factory, "EQ-100", user_id=1)
    assert row.manually_edited is False
    assert (await _actions(session_factory, "EQ-100"))[-1] == "clear_manual_edit"


async def test_delete_is_hard(session_factory):
    await _create(session_factory)
    await equipment_store.delete_equipment(session_factory, "EQ-100", user_id=1)
    async with session_factory() as session:
        assert await equipment_store.get_active_row(session, "EQ-100") is None
    assert (await _actions(session_factory, "EQ-100"))[-1] == "delete"
    with pytest.raises(NotFound):
        await equipment_store.delete_equipment(session_factory, "EQ-100", user_id=1)


def test_delay_hours_derived():
    row = EquipmentRecord(
        id="EQ-1",
        equipment_type="Грузовик",
        actual_start=datetime.now(timezone.utc) - timedelta(hours=10),
        planned_hours=4.0,
    )
    assert 5.9 <= row.delay_hours <= 6.1
    row.planned_hours = 20.0
    assert row.delay_hours == 0.0


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("status", [EquipmentStatus.Ready, EquipmentStatus.Standby])
async def test_launch_ready_unit(session_factory, users, status):
    await _create(session_factory, status=status, mechanic_name="Петров")
    archive_id = await launch(session_factory, "EQ-100", user_id=2)

    async with session_factory() as session:
        entry = await session.get(EquipmentArchive, archive_id)
        assert entry.archive_reason == ArchiveReason.launched
        assert entry.completion_user_id == 2
        assert entry.status == status
        assert entry.mechanic_name == "Петров"
        assert await equipment_store.get_active_row(session, "EQ-100") is None
        history = await list_history(session, "EQ-100")

    assert history[0]["action"] == "launch"
    assert history[0]["username"] == "disp"
    assert history[0]["old_value"] == status.value


async def test_launch_down_unit_rejected(session_factory):
    await _create(session_factory, status=EquipmentStatus.Down)
    with pytest.raises(InvalidState):
        await launch(session_factory, "EQ-100", user_id=1)

    async with session_factory() as session:
        archived = (await session.execute(select(EquipmentArchive))).scalars().all()
        row = await equipment_store.get_active_row(session, "EQ-100")
    assert archived == []
    assert row.lifecycle == Lifecycle.active


async def test_launch_unknown_unit_not_found(session_factory):
    with pytest.raises(NotFound):
        await launch(session_factory, "EQ-404", user_id=1)


async def test_launch_with_custom_reason(session_factory):
    await _create(session_factory, status=EquipmentStatus.Ready)
    archive_id = await launch(
        session_factory, "EQ-100", user_id=1, reason=ArchiveReason.cancelled
    )
    async with session_factory() as session:
        entry = await session.get(EquipmentArchive, archive_id)
    assert entry.archive_reason == ArchiveReason.cancelled


async def test_history_limit_and_order(session_factory):
    for i in range(60):
        await record_history(session_factory, "EQ-7", "update_mechanic_name", new_value=str(i))
    async with session_factory() as session:
        history = await list_history(session, "EQ-7", limit=50)
    assert len(history) == 50
    assert history[0]["new_value"] == "59"


async def test_history_failure_does_not_raise():
    from sqlalchemy.exc import OperationalError

    def broken_factory():
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    assert await record_history(broken_factory, "EQ-1", "launch") is False


async def test_archive_date_filter_uses_site_day(session_factory):
    # 22:00 UTC 17-го = 03:00 18-го по Алматы
    async with session_factory() as session:
        async with session.begin():
            session.add(EquipmentArchive(
                id="EQ-5",
                equipment_type="Экскаватор",
                section="гусеничные техники",
                status=EquipmentStatus.Down,
                completed_date=datetime(2026, 10, 17, 22, 0, tzinfo=timezone.utc),
                archive_reason=ArchiveReason.auto_ready,
            ))

    day = date(2026, 10, 18)
    async with session_factory() as session:
        page = await list_archive(session, date_from=day, date_to=day)
        previous = await list_archive(
            session, date_from=day - timedelta(days=1), date_to=day - timedelta(days=1)
        )
        stats = await archive_stats(session, date_from=day, date_to=day)

    assert [item["archive"].id for item in page["items"]] == ["EQ-5"]
    assert previous["items"] == []
    assert stats["summary"]["auto_ready"] == 1
