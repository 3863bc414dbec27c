"""Archive of equipment that left active tracking. Rows are immutable."""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base
from models.equipment import EquipmentStatus


class ArchiveReason(str, enum.Enum):
    launched = "launched"
    completed = "completed"
    cancelled = "cancelled"
    auto_ready = "auto_ready"
    status_changed = "status_changed"


class EquipmentArchive(Base):
    __tablename__ = "equipment_archive"
    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("ix_equipment_archive_completed", "completed_date"),
        Index("ix_equipment_archive_equipment", "id"),
    )

    archive_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(50))
    equipment_name: Mapped[str | None] = mapped_column(String(100), default=None)
    equipment_type: Mapped[str] = mapped_column(String(100))
    model: Mapped[str] = mapped_column(String(100), default="")
    section: Mapped[str] = mapped_column(String(100))
    status: Mapped[EquipmentStatus]                      # снапшот на момент архивации
    exit_status: Mapped[EquipmentStatus | None] = mapped_column(default=None)
    priority: Mapped[str] = mapped_column(String(20), default="normal")
    malfunction: Mapped[str] = mapped_column(Text, default="")
    mechanic_name: Mapped[str] = mapped_column(String(100), default="")

    planned_start: Mapped[datetime | None] = mapped_column(default=None)
    planned_end: Mapped[datetime | None] = mapped_column(default=None)
    actual_start: Mapped[datetime | None] = mapped_column(default=None)
    actual_end: Mapped[datetime | None] = mapped_column(default=None)
    planned_hours: Mapped[float] = mapped_column(default=0.0)
    delay_hours: Mapped[float] = mapped_column(default=0.0)

    mssql_equipment_id: Mapped[int | None] = mapped_column(default=None)
    mssql_status_id: Mapped[int | None] = mapped_column(default=None)
    mssql_reason: Mapped[str | None] = mapped_column(String(200), default=None)
    last_sync_time: Mapped[datetime | None] = mapped_column(default=None)

    created_at: Mapped[datetime | None] = mapped_column(default=None)  # created_at исходной строки
    completed_date: Mapped[datetime] = mapped_column(server_default=func.now())
    completion_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    archive_reason: Mapped[ArchiveReason]

    def __repr__(self) -> str:
        return f"<EquipmentArchive {self.id} {self.archive_reason.value}>"
