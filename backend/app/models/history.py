"""Append-only audit trail of equipment changes."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class EquipmentHistory(Base):
    __tablename__ = "equipment_history"
    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("ix_equipment_history_equipment_ts", "equipment_id", "timestamp"),
    )

    history_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    equipment_id: Mapped[str] = mapped_column(String(50))
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    action: Mapped[str] = mapped_column(String(50))    # "update_status", "auto_archive", "launch"
    old_value: Mapped[str | None] = mapped_column(Text, default=None)
    new_value: Mapped[str | None] = mapped_column(Text, default=None)
    timestamp: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<EquipmentHistory {self.equipment_id} {self.action}>"
