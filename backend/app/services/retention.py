"""RetentionJob: purges archived mirror rows from equipment_master.

Archived rows stay in the mirror for MIRROR_RETENTION_DAYS (the dashboard
can still show "recently launched"), then are deleted in batches.
Only rows whose unit has at least one equipment_archive row are touched;
equipment_archive and equipment_history are NEVER cleaned.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.archive import EquipmentArchive
from models.equipment import EquipmentRecord, Lifecycle

logger = logging.getLogger("equipment.retention")


class RetentionJob:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        check_interval: int = 3600,
        retention_days: int = 7,
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.check_interval = check_interval
        self.retention_days = retention_days
        self.batch_size = batch_size
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "RetentionJob started (check every %ds, keep archived rows %d days)",
            self.check_interval, self.retention_days,
        )
        while self._running:
            try:
                await self.purge()
            except Exception as exc:
                logger.error("RetentionJob error: %s", exc, exc_info=True)
            await asyncio.sleep(self.check_interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("RetentionJob stopped")

    # ------------------------------------------------------------------
    async def purge(self, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)
        total = 0
        while True:
            deleted = await self._delete_batch(cutoff)
            total += deleted
            if deleted < self.batch_size:
                break
        if total:
            logger.info("Purged %d archived mirror rows older than %s", total, cutoff.date())
        return total

    async def _delete_batch(self, cutoff: datetime) -> int:
        has_archive = exists().where(EquipmentArchive.id == EquipmentRecord.id)
        async with self.session_factory() as session:
            async with session.begin():
                ids = (
                    await session.execute(
                        select(EquipmentRecord.row_id)
                        .where(
                            EquipmentRecord.lifecycle == Lifecycle.archived,
                            EquipmentRecord.updated_at < cutoff,
                            has_archive,
                        )
                        .limit(self.batch_size)
                    )
                ).scalars().all()
                if not ids:
                    return 0
                await session.execute(
                    delete(EquipmentRecord).where(EquipmentRecord.row_id.in_(ids))
                )
        return len(ids)
