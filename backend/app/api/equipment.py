"""Equipment API: active mirror rows, stats, history, operator edits, manual sync."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.security import CurrentUser, require_roles
from models import (
    DEFAULT_SECTION,
    EquipmentRecord,
    EquipmentStatus,
    Lifecycle,
    Priority,
    get_session,
    get_session_factory,
)
from services import equipment_store
from services.archive_store import list_history
from services.events import publish_equipment_event

router = APIRouter(prefix="/api/equipment", tags=["equipment"])
logger = logging.getLogger("equipment.api")

# Только эти поля можно явно очистить (null) через PUT
CLEARABLE_FIELDS = {"planned_start", "planned_end", "actual_start", "actual_end"}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class EquipmentOut(BaseModel):
    id: str
    equipment_name: str | None
    equipment_type: str
    model: str
    section: str
    status: EquipmentStatus
    priority: Priority
    malfunction: str
    mechanic_name: str
    planned_start: datetime | None
    planned_end: datetime | None
    actual_start: datetime | None
    actual_end: datetime | None
    planned_hours: float
    delay_hours: float
    mssql_equipment_id: int | None
    mssql_type: str | None
    mssql_status_id: int | None
    mssql_reason: str | None
    last_sync_time: datetime | None
    is_active: bool
    manually_edited: bool
    created_at: datetime | None
    updated_at: datetime | None
    model_config = {"from_attributes": True}


class EquipmentUpdate(BaseModel):
    equipment_type: str | None = None
    model: str | None = None
    section: str | None = None
    status: EquipmentStatus | None = None
    priority: Priority | None = None
    malfunction: str | None = None
    mechanic_name: str | None = None
    planned_start: datetime | None = None
    planned_end: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    planned_hours: float | None = Field(None, ge=0)


class EquipmentCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=50)
    equipment_name: str | None = None
    equipment_type: str
    model: str = ""
    section: str = DEFAULT_SECTION
    status: EquipmentStatus = EquipmentStatus.Down
    priority: Priority = Priority.normal
    malfunction: str = ""
    mechanic_name: str = ""
    planned_start: datetime | None = None
    planned_end: datetime | None = None
    actual_start: datetime | None = None
    planned_hours: float = Field(0.0, ge=0)


class HistoryOut(BaseModel):
    history_id: int
    equipment_id: str
    user_id: int | None
    username: str | None
    full_name: str | None
    action: str
    old_value: str | None
    new_value: str | None
    timestamp: datetime


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get("", response_model=list[EquipmentOut])
async def list_equipment(
    status: EquipmentStatus | None = None,
    section: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    stmt = select(EquipmentRecord).where(EquipmentRecord.lifecycle == Lifecycle.active)
    if status is not None:
        stmt = stmt.where(EquipmentRecord.status == status)
    if section:
        stmt = stmt.where(EquipmentRecord.section == section)
    stmt = stmt.order_by(EquipmentRecord.section, EquipmentRecord.id)
    result = await session.execute(stmt)
    return result.scalars().all()


@router.get("/stats")
async def equipment_stats(session: AsyncSession = Depends(get_session)):
    """Active rows grouped by status, overall and per section."""
    result = await session.execute(
        select(EquipmentRecord.status, EquipmentRecord.section, func.count())
        .where(EquipmentRecord.lifecycle == Lifecycle.active)
        .group_by(EquipmentRecord.status, EquipmentRecord.section)
    )

    def _empty() -> dict:
        return {**{s.value: 0 for s in EquipmentStatus}, "total": 0}

    stats = {**_empty(), "by_section": {}}
    for status, section, count in result.all():
        stats[status.value] += count
        stats["total"] += count
        bucket = stats["by_section"].setdefault(section, _empty())
        bucket[status.value] += count
        bucket["total"] += count
    return stats


@router.get("/sections")
async def equipment_sections(session: AsyncSession = Depends(get_session)):
    down = func.count().filter(EquipmentRecord.status == EquipmentStatus.Down)
    result = await session.execute(
        select(EquipmentRecord.section, func.count(), down)
        .where(EquipmentRecord.lifecycle == Lifecycle.active)
        .group_by(EquipmentRecord.section)
        .order_by(EquipmentRecord.section)
    )
    return [
        {"section": section, "total": total, "down": down_count}
        for section, total, down_count in result.all()
    ]


@router.get("/sync/status")
async def sync_status(request: Request):
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        return {"enabled": False}
    return {"enabled": True, **engine.status()}


@router.get("/{equipment_id}", response_model=EquipmentOut)
async def get_equipment(equipment_id: str, session: AsyncSession = Depends(get_session)):
    row = await equipment_store.get_active_row(session, equipment_id)
    if row is None:
        raise HTTPException(404, f"Equipment {equipment_id} not found")
    return row


@router.get("/{equipment_id}/history", response_model=list[HistoryOut])
async def get_equipment_history(
    equipment_id: str,
    limit: int = Query(settings.HISTORY_LIMIT, ge=1, le=settings.HISTORY_LIMIT),
    session: AsyncSession = Depends(get_session),
):
    return await list_history(session, equipment_id, limit=limit)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

@router.post("/sync")
async def trigger_sync(
    request: Request,
    user: CurrentUser = Depends(require_roles("admin", "programmer")),
):
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(503, "Синхронизация отключена")
    logger.info("Manual sync requested by %s", user.username)
    result = await engine.run_cycle()
    if result is None:
        raise HTTPException(409, "Синхронизация уже выполняется")
    return {**asdict(result), "changed": result.changed}


@router.post("", response_model=EquipmentOut, status_code=201)
async def create_equipment(
    body: EquipmentCreate,
    request: Request,
    user: CurrentUser = Depends(require_roles("admin", "programmer")),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    row = await equipment_store.create_equipment(
        session_factory, body.model_dump(exclude_none=True), user_id=user.id
    )
    await publish_equipment_event(
        getattr(request.app.state, "redis", None), "equipment_created", {"id": row.id}
    )
    return row


@router.put("/{equipment_id}", response_model=EquipmentOut)
async def update_equipment(
    equipment_id: str,
    body: EquipmentUpdate,
    request: Request,
    user: CurrentUser = Depends(require_roles("admin", "dispatcher", "programmer")),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    row = await equipment_store.update_equipment(
        session_factory,
        equipment_id,
        {
            k: v for k, v in body.model_dump(exclude_unset=True).items()
            if v is not None or k in CLEARABLE_FIELDS
        },
        user_id=user.id,
        role=user.role,
    )
    await publish_equipment_event(
        getattr(request.app.state, "redis", None), "equipment_updated", {"id": equipment_id}
    )
    return row


@router.delete("/{equipment_id}")
async def delete_equipment(
    equipment_id: str,
    request: Request,
    user: CurrentUser = Depends(require_roles("admin")),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    await equipment_store.delete_equipment(session_factory, equipment_id, user_id=user.id)
    await publish_equipment_event(
        getattr(request.app.state, "redis", None), "equipment_deleted", {"id": equipment_id}
    )
    return {"status": "deleted", "id": equipment_id}


@router.post("/{equipment_id}/clear-manual-edit", response_model=EquipmentOut)
async def clear_manual_edit(
    equipment_id: str,
    user: CurrentUser = Depends(require_roles("admin")),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    return await equipment_store.clear_manual_edit(
        session_factory, equipment_id, user_id=user.id
    )
