"""Equipment Mirror Store: access to equipment_master.

Two kinds of writers touch the mirror:
- the reconciliation engine (``upsert`` / ``mark_inactive``), which never
  overwrites status/malfunction on a manually edited row and never clears
  the flag;
- operators through the write API (``update_equipment`` and friends), whose
  status/malfunction changes set ``manually_edited``.

Every write runs in its own short transaction scoped to one row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import Conflict, NotFound
from models.equipment import (
    EquipmentRecord,
    EquipmentStatus,
    Lifecycle,
    Priority,
)
from services.archive_store import record_history
from services.source_feed import ExternalRecord
from services.status_mapper import MappedStatus

logger = logging.getLogger("equipment.store")

# Поля, которые оператор может менять через PUT
FULL_EDIT_FIELDS = (
    "equipment_type",
    "model",
    "section",
    "status",
    "priority",
    "malfunction",
    "mechanic_name",
    "planned_start",
    "planned_end",
    "actual_start",
    "actual_end",
    "planned_hours",
)
DISPATCHER_EDIT_FIELDS = ("planned_hours", "mechanic_name")
FULL_EDIT_ROLES = {"admin", "programmer"}

# Изменение этих полей человеком блокирует их перезапись синхронизацией
MANUAL_LOCK_FIELDS = {"status", "malfunction"}


@dataclass(frozen=True)
class SnapshotEntry:
    status: EquipmentStatus
    manually_edited: bool


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_active_row(
    session: AsyncSession,
    equipment_id: str,
    *,
    for_update: bool = False,
) -> EquipmentRecord | None:
    stmt = select(EquipmentRecord).where(
        EquipmentRecord.id == equipment_id,
        EquipmentRecord.lifecycle == Lifecycle.active,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_snapshot(session: AsyncSession) -> dict[str, SnapshotEntry]:
    stmt = select(
        EquipmentRecord.id,
        EquipmentRecord.status,
        EquipmentRecord.manually_edited,
    ).where(EquipmentRecord.lifecycle == Lifecycle.active)
    result = await session.execute(stmt)
    return {
        row.id: SnapshotEntry(status=row.status, manually_edited=row.manually_edited)
        for row in result.all()
    }


# ---------------------------------------------------------------------------
# Sync writes
# ---------------------------------------------------------------------------

async def upsert(
    session: AsyncSession,
    record: ExternalRecord,
    mapped: MappedStatus,
    *,
    preserve_manual_fields: bool,
    now: datetime | None = None,
) -> tuple[EquipmentRecord, bool, bool]:
    """Insert or refresh the active mirror row for ``record``.

    Returns ``(row, created, changed)``; ``changed`` is True when status,
    malfunction or section differ from what was stored. With
    ``preserve_manual_fields`` (or when the stored row turns out to be
    manually edited) status and malfunction are left alone; type, section,
    model, actual_start and provenance are refreshed either way.
    mechanic_name and planned_* belong to operators and are never touched
    here.
    """
    now = now or datetime.now(timezone.utc)
    row = await get_active_row(session, record.mirror_id, for_update=True)

    if row is None:
        row = EquipmentRecord(
            id=record.mirror_id,
            equipment_name=record.equipment_name or None,
            equipment_type=mapped.equipment_type,
            model=record.model,
            section=mapped.section,
            status=mapped.status,
            priority=Priority.high,
            malfunction=mapped.malfunction,
            mechanic_name="",
            actual_start=record.started_at,
            planned_hours=0.0,
            mssql_equipment_id=record.equipment_id,
            mssql_type=record.equipment_type,
            mssql_status_id=record.status_id,
            mssql_reason=record.reason_text or record.reason_code,
            last_sync_time=now,
            lifecycle=Lifecycle.active,
            manually_edited=False,
        )
        session.add(row)
        await session.flush()
        return row, True, True

    before = (row.status, row.malfunction, row.section)
    preserve = preserve_manual_fields or row.manually_edited
    if not preserve:
        row.status = mapped.status
        row.malfunction = mapped.malfunction

    row.equipment_name = record.equipment_name or row.equipment_name
    row.equipment_type = mapped.equipment_type
    row.section = mapped.section
    if record.model:
        row.model = record.model
    if record.started_at is not None:
        row.actual_start = record.started_at
    row.mssql_equipment_id = record.equipment_id
    row.mssql_type = record.equipment_type
    row.mssql_status_id = record.status_id
    row.mssql_reason = record.reason_text or record.reason_code
    row.last_sync_time = now
    await session.flush()
    return row, False, (row.status, row.malfunction, row.section) != before


def mark_inactive(row: EquipmentRecord) -> bool:
    """Move the row to the archived lifecycle. Returns False if it already was."""
    if row.lifecycle == Lifecycle.archived:
        return False
    row.lifecycle = Lifecycle.archived
    return True


# ---------------------------------------------------------------------------
# Operator writes
# ---------------------------------------------------------------------------

def _history_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def _same(old: Any, new: Any) -> bool:
    if isinstance(old, datetime) and isinstance(new, datetime):
        # SQLite отдаёт naive datetime, сравниваем как UTC
        if old.tzinfo is None:
            old = old.replace(tzinfo=timezone.utc)
        if new.tzinfo is None:
            new = new.replace(tzinfo=timezone.utc)
    return old == new


async def update_equipment(
    session_factory: async_sessionmaker[AsyncSession],
    equipment_id: str,
    changes: dict[str, Any],
    *,
    user_id: int | None,
    role: str,
) -> EquipmentRecord:
    allowed = FULL_EDIT_FIELDS if role in FULL_EDIT_ROLES else DISPATCHER_EDIT_FIELDS
    ignored = set(changes) - set(allowed)
    if ignored:
        logger.info(
            "Role %s cannot edit %s on %s, ignored",
            role, ", ".join(sorted(ignored)), equipment_id,
        )

    history: list[tuple[str, str, str]] = []
    async with session_factory() as session:
        async with session.begin():
            row = await get_active_row(session, equipment_id, for_update=True)
            if row is None:
                raise NotFound(f"Equipment {equipment_id} not found", equipment_id=equipment_id)

            for field in allowed:
                if field not in changes:
                    continue
                new = changes[field]
                old = getattr(row, field)
                if _same(old, new):
                    continue
                setattr(row, field, new)
                history.append((f"update_{field}", _history_value(old), _history_value(new)))
                if field in MANUAL_LOCK_FIELDS:
                    row.manually_edited = True

    for action, old_value, new_value in history:
        await record_history(
            session_factory, equipment_id, action,
            user_id=user_id, old_value=old_value, new_value=new_value,
        )
    if history:
        logger.info(
            "Equipment %s updated by user=%s (%s): %d field(s)",
            equipment_id, user_id, role, len(history),
        )
    return row


async def create_equipment(
    session_factory: async_sessionmaker[AsyncSession],
    data: dict[str, Any],
    *,
    user_id: int | None,
) -> EquipmentRecord:
    equipment_id = data["id"]
    try:
        async with session_factory() as session:
            async with session.begin():
                if await get_active_row(session, equipment_id) is not None:
                    raise Conflict(
                        f"Equipment {equipment_id} already exists",
                        equipment_id=equipment_id,
                    )
                row = EquipmentRecord(lifecycle=Lifecycle.active, manually_edited=False, **data)
                session.add(row)
    except IntegrityError as exc:
        # параллельный sync успел вставить активную строку с тем же id
        raise Conflict(
            f"Equipment {equipment_id} already exists", equipment_id=equipment_id
        ) from exc

    await record_history(
        session_factory, equipment_id, "create",
        user_id=user_id, new_value=_history_value(row.status),
    )
    logger.info("Equipment %s created by user=%s", equipment_id, user_id)
    return row


async def delete_equipment(
    session_factory: async_sessionmaker[AsyncSession],
    equipment_id: str,
    *,
    user_id: int | None,
) -> None:
    async with session_factory() as session:
        async with session.begin():
            row = await get_active_row(session, equipment_id, for_update=True)
            if row is None:
                raise NotFound(f"Equipment {equipment_id} not found", equipment_id=equipment_id)
            old_status = row.status
            await session.delete(row)

    await record_history(
        session_factory, equipment_id, "delete",
        user_id=user_id, old_value=_history_value(old_status),
    )
    logger.warning("Equipment %s hard-deleted by user=%s", equipment_id, user_id)


async def clear_manual_edit(
    session_factory: async_sessionmaker[AsyncSession],
    equipment_id: str,
    *,
    user_id: int | None,
) -> EquipmentRecord:
    async with session_factory() as session:
        async with session.begin():
            row = await get_active_row(session, equipment_id, for_update=True)
            if row is None:
                raise NotFound(f"Equipment {equipment_id} not found", equipment_id=equipment_id)
            was_edited = row.manually_edited
            row.manually_edited = False

    if was_edited:
        await record_history(
            session_factory, equipment_id, "clear_manual_edit",
            user_id=user_id, old_value="1", new_value="0",
        )
        logger.info("Manual edit lock cleared on %s by user=%s", equipment_id, user_id)
    return row
