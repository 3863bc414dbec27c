"""Dashboard counters: current downtime, units returned to work today, total."""

from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import EquipmentRecord, EquipmentStatus, Lifecycle, get_session
from services.archive_store import count_archived_since

router = APIRouter(prefix="/api/stats", tags=["stats"])


def site_day_start(now: datetime | None = None) -> datetime:
    """Midnight of the current site-local day, as UTC."""
    tz = ZoneInfo(settings.SOURCE_TIMEZONE)
    local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
    return datetime.combine(local_now.date(), time.min, tzinfo=tz).astimezone(timezone.utc)


@router.get("/dashboard")
async def dashboard_stats(session: AsyncSession = Depends(get_session)):
    down = (
        await session.execute(
            select(func.count())
            .select_from(EquipmentRecord)
            .where(
                EquipmentRecord.lifecycle == Lifecycle.active,
                EquipmentRecord.status == EquipmentStatus.Down,
            )
        )
    ).scalar_one()
    total = (
        await session.execute(
            select(func.count())
            .select_from(EquipmentRecord)
            .where(EquipmentRecord.lifecycle == Lifecycle.active)
        )
    ).scalar_one()

    day_start = site_day_start()
    ready_today = await count_archived_since(session, day_start)

    return {
        "down": down,
        "ready_today": ready_today,
        "total": total,
        "date": day_start.astimezone(ZoneInfo(settings.SOURCE_TIMEZONE)).date().isoformat(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
