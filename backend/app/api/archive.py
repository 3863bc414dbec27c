"""Archive API: archived equipment list, stats, operator launch."""

from __future__ import annotations

import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.security import CurrentUser, require_roles
from models import ArchiveReason, EquipmentStatus, get_session, get_session_factory
from services import archive_store
from services.events import publish_equipment_event

router = APIRouter(prefix="/api/archive", tags=["archive"])
logger = logging.getLogger("equipment.api")


class ArchiveOut(BaseModel):
    archive_id: int
    id: str
    equipment_name: str | None
    equipment_type: str
    model: str
    section: str
    status: EquipmentStatus
    exit_status: EquipmentStatus | None
    priority: str
    malfunction: str
    mechanic_name: str
    planned_start: datetime | None
    planned_end: datetime | None
    actual_start: datetime | None
    actual_end: datetime | None
    planned_hours: float
    delay_hours: float
    mssql_equipment_id: int | None
    mssql_status_id: int | None
    mssql_reason: str | None
    created_at: datetime | None
    completed_date: datetime
    completion_user_id: int | None
    archive_reason: ArchiveReason
    model_config = {"from_attributes": True}


class ArchiveItemOut(ArchiveOut):
    completion_username: str | None = None
    completion_full_name: str | None = None


class PaginationOut(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ArchivePageOut(BaseModel):
    archives: list[ArchiveItemOut]
    pagination: PaginationOut


class LaunchRequest(BaseModel):
    completion_reason: ArchiveReason = ArchiveReason.launched


@router.get("", response_model=ArchivePageOut)
async def list_archive(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.ARCHIVE_PAGE_LIMIT, ge=1, le=500),
    equipment_type: str | None = None,
    mechanic: str | None = None,
    archive_reason: ArchiveReason | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    session: AsyncSession = Depends(get_session),
):
    result = await archive_store.list_archive(
        session,
        page=page,
        limit=limit,
        equipment_type=equipment_type,
        mechanic=mechanic,
        archive_reason=archive_reason,
        date_from=date_from,
        date_to=date_to,
    )
    archives = [
        ArchiveItemOut(
            **ArchiveOut.model_validate(item["archive"]).model_dump(),
            completion_username=item["completion_username"],
            completion_full_name=item["completion_full_name"],
        )
        for item in result["items"]
    ]
    return ArchivePageOut(archives=archives, pagination=result["pagination"])


@router.get("/stats")
async def get_archive_stats(
    date_from: date | None = None,
    date_to: date | None = None,
    session: AsyncSession = Depends(get_session),
):
    return await archive_store.archive_stats(session, date_from=date_from, date_to=date_to)


@router.post("/launch/{equipment_id}")
async def launch_equipment(
    equipment_id: str,
    request: Request,
    body: LaunchRequest | None = None,
    user: CurrentUser = Depends(require_roles("admin", "dispatcher")),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    reason = body.completion_reason if body else ArchiveReason.launched
    archive_id = await archive_store.launch(
        session_factory, equipment_id, user_id=user.id, reason=reason
    )
    logger.info("Equipment %s launched by %s (archive_id=%d)", equipment_id, user.username, archive_id)
    await publish_equipment_event(
        getattr(request.app.state, "redis", None),
        "equipment_launched",
        {"id": equipment_id, "archive_id": archive_id, "reason": reason.value},
    )
    return {
        "message": "Техника запущена в работу и перемещена в архив",
        "archive_id": archive_id,
        "equipment_id": equipment_id,
        "completion_reason": reason.value,
    }
