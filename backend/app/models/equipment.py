"""Equipment mirror: one row per active tracking cycle of a unit."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class EquipmentStatus(str, enum.Enum):
    Down = "Down"
    Ready = "Ready"
    Standby = "Standby"
    Delay = "Delay"
    Shiftchange = "Shiftchange"


# Статусы, из которых оператор может "запустить" технику
LAUNCHABLE_STATUSES = {EquipmentStatus.Ready, EquipmentStatus.Standby}


class Lifecycle(str, enum.Enum):
    active = "active"
    archived = "archived"


class Priority(str, enum.Enum):
    normal = "normal"
    high = "high"


DEFAULT_SECTION = "колесные техники"


class EquipmentRecord(TimestampMixin, Base):
    __tablename__ = "equipment_master"

    __table_args__ = (
        # не больше одной активной строки на единицу техники
        Index(
            "uq_equipment_master_active_id",
            "id",
            unique=True,
            postgresql_where=text("lifecycle = 'active'"),
            sqlite_where=text("lifecycle = 'active'"),
        ),
        Index("ix_equipment_master_status", "status"),
        Index("ix_equipment_master_lifecycle", "lifecycle"),
    )

    row_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(50))                 # "EQ-42"
    equipment_name: Mapped[str | None] = mapped_column(String(100), default=None)  # "EX207"

    equipment_type: Mapped[str] = mapped_column(String(100))
    model: Mapped[str] = mapped_column(String(100), default="")
    section: Mapped[str] = mapped_column(String(100), default=DEFAULT_SECTION)

    status: Mapped[EquipmentStatus] = mapped_column(default=EquipmentStatus.Ready)
    priority: Mapped[Priority] = mapped_column(default=Priority.normal)
    malfunction: Mapped[str] = mapped_column(Text, default="")
    mechanic_name: Mapped[str] = mapped_column(String(100), default="")

    planned_start: Mapped[datetime | None] = mapped_column(default=None)
    planned_end: Mapped[datetime | None] = mapped_column(default=None)
    actual_start: Mapped[datetime | None] = mapped_column(default=None)
    actual_end: Mapped[datetime | None] = mapped_column(default=None)
    planned_hours: Mapped[float] = mapped_column(default=0.0)

    # Связь с MSSQL (provenance)
    mssql_equipment_id: Mapped[int | None] = mapped_column(default=None)
    mssql_type: Mapped[str | None] = mapped_column(String(50), default=None)
    mssql_status_id: Mapped[int | None] = mapped_column(default=None)
    mssql_reason: Mapped[str | None] = mapped_column(String(200), default=None)
    last_sync_time: Mapped[datetime | None] = mapped_column(default=None)

    lifecycle: Mapped[Lifecycle] = mapped_column(default=Lifecycle.active)
    manually_edited: Mapped[bool] = mapped_column(default=False)

    @property
    def is_active(self) -> bool:
        return self.lifecycle == Lifecycle.active

    @property
    def delay_hours(self) -> float:
        """Hours past the planned repair duration, 0 while within plan."""
        if self.actual_start is None or not self.planned_hours:
            return 0.0
        start = self.actual_start
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        end = self.actual_end or datetime.now(timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        elapsed = (end - start).total_seconds() / 3600
        return round(max(0.0, elapsed - self.planned_hours), 1)

    def __repr__(self) -> str:
        return f"<EquipmentRecord {self.id} {self.status.value} ({self.lifecycle.value})>"
