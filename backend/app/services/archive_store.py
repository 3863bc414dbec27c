"""Archive Store & History Log.

archive + mark_inactive always run in ONE transaction (``archive_active``):
a row that is archived but still active, or inactive without an archive
row, must never be visible.

History is best-effort audit: ``record_history`` writes in its own
transaction after the main change committed and never raises.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from math import ceil
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.errors import HistoryWriteFailed, InvalidState, NotFound
from models.archive import ArchiveReason, EquipmentArchive
from models.equipment import LAUNCHABLE_STATUSES, EquipmentRecord, EquipmentStatus
from models.history import EquipmentHistory
from models.user import User

logger = logging.getLogger("equipment.archive")


async def archive(
    session: AsyncSession,
    row: EquipmentRecord,
    reason: ArchiveReason,
    *,
    completion_user_id: int | None = None,
    exit_status: EquipmentStatus | None = None,
    now: datetime | None = None,
) -> int:
    """Copy the mirror row into equipment_archive. Returns archive_id.

    Must be called inside the caller's transaction together with
    ``equipment_store.mark_inactive``.
    """
    entry = EquipmentArchive(
        id=row.id,
        equipment_name=row.equipment_name,
        equipment_type=row.equipment_type,
        model=row.model or "",
        section=row.section,
        status=row.status,
        exit_status=exit_status,
        priority=row.priority.value if row.priority else "normal",
        malfunction=row.malfunction or "",
        mechanic_name=row.mechanic_name or "",
        planned_start=row.planned_start,
        planned_end=row.planned_end,
        actual_start=row.actual_start,
        actual_end=row.actual_end,
        planned_hours=row.planned_hours or 0.0,
        delay_hours=row.delay_hours,
        mssql_equipment_id=row.mssql_equipment_id,
        mssql_status_id=row.mssql_status_id,
        mssql_reason=row.mssql_reason,
        last_sync_time=row.last_sync_time,
        created_at=row.created_at,
        completed_date=now or datetime.now(timezone.utc),
        completion_user_id=completion_user_id,
        archive_reason=reason,
    )
    session.add(entry)
    await session.flush()
    return entry.archive_id


async def archive_active(
    session_factory: async_sessionmaker[AsyncSession],
    equipment_id: str,
    reason: ArchiveReason,
    *,
    completion_user_id: int | None = None,
    exit_status: EquipmentStatus | None = None,
    require_statuses: set[EquipmentStatus] | None = None,
) -> tuple[int, EquipmentStatus]:
    """Archive + deactivate the active row of ``equipment_id`` atomically.

    The active row is re-read inside the transaction, so two writers racing
    on the same unit (sync auto-archive vs. operator launch) cannot both
    archive it: the second one gets NotFound.

    Returns ``(archive_id, status_at_archival)``.
    """
    # локальный импорт: equipment_store сам пишет историю через этот модуль
    from services.equipment_store import get_active_row, mark_inactive

    async with session_factory() as session:
        async with session.begin():
            row = await get_active_row(session, equipment_id, for_update=True)
            if row is None:
                raise NotFound(
                    f"No active equipment {equipment_id}", equipment_id=equipment_id
                )
            if require_statuses is not None and row.status not in require_statuses:
                allowed = ", ".join(sorted(s.value for s in require_statuses))
                raise InvalidState(
                    f"Equipment {equipment_id} is {row.status.value}; "
                    f"only {allowed} can be archived this way",
                    equipment_id=equipment_id,
                )
            status = row.status
            archive_id = await archive(
                session, row, reason,
                completion_user_id=completion_user_id,
                exit_status=exit_status or status,
            )
            mark_inactive(row)

    logger.info(
        "Archived %s (reason=%s, status=%s, archive_id=%d)",
        equipment_id, reason.value, status.value, archive_id,
    )
    return archive_id, status


async def record_history(
    session_factory: async_sessionmaker[AsyncSession],
    equipment_id: str,
    action: str,
    *,
    user_id: int | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
) -> bool:
    """Append one history entry. Returns False (and logs) on failure."""
    try:
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    EquipmentHistory(
                        equipment_id=equipment_id,
                        user_id=user_id,
                        action=action,
                        old_value=old_value,
                        new_value=new_value,
                        timestamp=datetime.now(timezone.utc),
                    )
                )
    except SQLAlchemyError as exc:
        err = HistoryWriteFailed(
            f"History write failed for {equipment_id} ({action}): {exc}",
            equipment_id=equipment_id,
        )
        logger.error("%s", err, exc_info=True)
        return False
    return True


async def launch(
    session_factory: async_sessionmaker[AsyncSession],
    equipment_id: str,
    *,
    user_id: int | None,
    reason: ArchiveReason = ArchiveReason.launched,
) -> int:
    """Operator launch: archive a Ready/Standby unit. Returns archive_id.

    Raises NotFound when there is no active row, InvalidState when the unit
    is not in a launchable status.
    """
    archive_id, status = await archive_active(
        session_factory,
        equipment_id,
        reason,
        completion_user_id=user_id,
        require_statuses=LAUNCHABLE_STATUSES,
    )
    await record_history(
        session_factory, equipment_id, "launch",
        user_id=user_id,
        old_value=status.value,
        new_value=f"Техника запущена в работу ({reason.value})",
    )
    return archive_id


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _site_midnight(day: date) -> datetime:
    """Start of ``day`` in the site timezone, as UTC."""
    tz = ZoneInfo(settings.SOURCE_TIMEZONE)
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def _date_bounds(date_from: date | None, date_to: date | None) -> list:
    """Filters on completed_date; days are site-local, date_to is inclusive."""
    clauses = []
    if date_from is not None:
        clauses.append(EquipmentArchive.completed_date >= _site_midnight(date_from))
    if date_to is not None:
        clauses.append(
            EquipmentArchive.completed_date < _site_midnight(date_to + timedelta(days=1))
        )
    return clauses


async def list_archive(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 50,
    equipment_type: str | None = None,
    mechanic: str | None = None,
    archive_reason: ArchiveReason | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict:
    """Archive page, newest first, with the completing user joined in."""
    filters = _date_bounds(date_from, date_to)
    if equipment_type:
        filters.append(EquipmentArchive.equipment_type == equipment_type)
    if mechanic:
        filters.append(EquipmentArchive.mechanic_name.ilike(f"%{mechanic}%"))
    if archive_reason is not None:
        filters.append(EquipmentArchive.archive_reason == archive_reason)

    total = (
        await session.execute(
            select(func.count()).select_from(EquipmentArchive).where(*filters)
        )
    ).scalar_one()

    result = await session.execute(
        select(EquipmentArchive, User.username, User.full_name)
        .outerjoin(User, EquipmentArchive.completion_user_id == User.id)
        .where(*filters)
        .order_by(EquipmentArchive.completed_date.desc(), EquipmentArchive.archive_id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    items = [
        {"archive": entry, "completion_username": username, "completion_full_name": full_name}
        for entry, username, full_name in result.all()
    ]
    return {
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": ceil(total / limit) if limit else 0,
        },
    }


async def archive_stats(
    session: AsyncSession,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict:
    filters = _date_bounds(date_from, date_to)

    grouped = await session.execute(
        select(
            EquipmentArchive.archive_reason,
            EquipmentArchive.equipment_type,
            func.count().label("count"),
        )
        .where(*filters)
        .group_by(EquipmentArchive.archive_reason, EquipmentArchive.equipment_type)
        .order_by(func.count().desc())
    )
    detailed = [
        {"archive_reason": reason.value, "equipment_type": eq_type, "count": count}
        for reason, eq_type, count in grouped.all()
    ]

    def _count(reason: ArchiveReason):
        return func.count(case((EquipmentArchive.archive_reason == reason, 1)))

    summary_row = (
        await session.execute(
            select(
                func.count().label("total_archived"),
                *[_count(r).label(r.value) for r in ArchiveReason],
            ).where(*filters)
        )
    ).one()
    return {"detailed_stats": detailed, "summary": dict(summary_row._mapping)}


async def list_history(
    session: AsyncSession, equipment_id: str, *, limit: int = 50
) -> list[dict]:
    """History of one unit, newest first, with user names."""
    result = await session.execute(
        select(EquipmentHistory, User.username, User.full_name)
        .outerjoin(User, EquipmentHistory.user_id == User.id)
        .where(EquipmentHistory.equipment_id == equipment_id)
        .order_by(EquipmentHistory.timestamp.desc(), EquipmentHistory.history_id.desc())
        .limit(limit)
    )
    return [
        {
            "history_id": entry.history_id,
            "equipment_id": entry.equipment_id,
            "user_id": entry.user_id,
            "username": username,
            "full_name": full_name,
            "action": entry.action,
            "old_value": entry.old_value,
            "new_value": entry.new_value,
            "timestamp": entry.timestamp,
        }
        for entry, username, full_name in result.all()
    ]


async def count_archived_since(session: AsyncSession, since: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(EquipmentArchive)
        .where(EquipmentArchive.completed_date >= since)
    )
    return result.scalar_one()
