"""Reconciliation Engine: MSSQL downtime feed → equipment mirror + archive.

Background task that runs every SYNC_INTERVAL seconds:
1. Snapshot of active mirror statuses (taken BEFORE the fetch)
2. Fetch open intervals from the Source Feed Adapter
3. Map every record; Down → upsert into the mirror (manual edits preserved)
4. Previously Down, now anything else → archive queue
5. Archive queued ids (reason auto_ready) + history entry, one id at a time
6. Update SyncEngineState, publish a 'sync_cycle' event

Single-flight: a cycle requested while another runs is dropped, not queued.
A source or local-store outage aborts the cycle before any write; per-record failures are
counted and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import NotFound, RecordWriteFailed, SourceUnavailable
from models.archive import ArchiveReason
from models.equipment import EquipmentStatus
from services.archive_store import archive_active, record_history
from services.equipment_store import SnapshotEntry, get_active_snapshot, upsert
from services.events import publish_equipment_event
from services.source_feed import ExternalRecord, SourceFeedAdapter
from services.status_mapper import MappedStatus, map_external_record

logger = logging.getLogger("equipment.sync")

RECENT_ERRORS_KEPT = 5


@dataclass
class CycleResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    modified: int = 0       # updates that changed status, malfunction or section
    archived: int = 0
    errors: int = 0
    mapping_defaults: int = 0
    aborted: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.created or self.modified or self.archived)


@dataclass
class SyncEngineState:
    """Counters and flags of one engine instance (no module-level state)."""

    is_running: bool = False
    cycles: int = 0
    skipped: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    archived: int = 0
    errors: int = 0
    mapping_defaults: int = 0
    last_sync_time: datetime | None = None
    last_duration_ms: int | None = None
    last_error: str | None = None
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=RECENT_ERRORS_KEPT))

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.last_error = message
        self.recent_errors.append(
            {"time": datetime.now(timezone.utc).isoformat(), "error": message}
        )

    def apply(self, result: CycleResult) -> None:
        self.processed += result.processed
        self.created += result.created
        self.updated += result.updated
        self.archived += result.archived
        self.mapping_defaults += result.mapping_defaults

    def as_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "cycles": self.cycles,
            "skipped": self.skipped,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "archived": self.archived,
            "errors": self.errors,
            "mapping_defaults": self.mapping_defaults,
            "last_sync_time": self.last_sync_time,
            "last_duration_ms": self.last_duration_ms,
            "last_error": self.last_error,
            "recent_errors": list(self.recent_errors),
        }


class ReconciliationEngine:
    """Background task: mirrors JMineOps downtime into equipment_master."""

    def __init__(
        self,
        source: SourceFeedAdapter,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        redis: Redis | None = None,
        interval: float = 30.0,
        archive_missing: bool = False,
    ):
        self.source = source
        self.session_factory = session_factory
        self.redis = redis
        self.interval = interval
        self.archive_missing = archive_missing
        self.state = SyncEngineState()
        self._lock = asyncio.Lock()
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "ReconciliationEngine started (every %.0fs, archive_missing=%s)",
            self.interval, self.archive_missing,
        )
        while self._running:
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.error("ReconciliationEngine cycle error: %s", exc, exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("ReconciliationEngine stopped")

    def status(self) -> dict:
        return {**self.state.as_dict(), "interval": self.interval}

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult | None:
        """Run one cycle now. Returns None if another cycle is in progress."""
        if self._lock.locked():
            self.state.skipped += 1
            logger.warning("Sync already running, skipping this tick")
            return None

        async with self._lock:
            self.state.is_running = True
            try:
                return await self._cycle()
            finally:
                self.state.is_running = False

    async def _cycle(self) -> CycleResult:
        started = time.monotonic()
        result = CycleResult()
        self.state.cycles += 1

        try:
            async with self.session_factory() as session:
                snapshot = await get_active_snapshot(session)
        except SQLAlchemyError as exc:
            result.aborted = True
            self.state.record_error(f"local store unavailable: {exc}")
            logger.error("Sync cycle aborted, snapshot read failed: %s", exc)
            return result

        try:
            records = await self.source.fetch_active_downtime_records()
        except SourceUnavailable as exc:
            result.aborted = True
            self.state.record_error(str(exc))
            logger.error("Sync cycle aborted, source unavailable: %s", exc)
            return result

        archive_queue: dict[str, EquipmentStatus | None] = {}
        seen: set[str] = set()

        for record in records:
            result.processed += 1
            seen.add(record.mirror_id)
            try:
                exit_status = await self._process_record(record, snapshot, result)
            except Exception as exc:
                err = RecordWriteFailed(
                    f"{record.mirror_id}: {exc}", equipment_id=record.mirror_id
                )
                result.errors += 1
                self.state.record_error(str(err))
                logger.error("Sync record failed: %s", err, exc_info=True)
                continue
            if exit_status is not None:
                archive_queue[record.mirror_id] = exit_status

        if self.archive_missing:
            for equipment_id, entry in snapshot.items():
                if equipment_id not in seen and entry.status == EquipmentStatus.Down:
                    archive_queue.setdefault(equipment_id, None)

        for equipment_id, exit_status in archive_queue.items():
            try:
                await self._auto_archive(equipment_id, exit_status)
            except NotFound:
                # оператор успел запустить/удалить технику между снапшотом и архивацией
                logger.info("Skip auto-archive of %s: no longer active", equipment_id)
                continue
            except Exception as exc:
                err = RecordWriteFailed(
                    f"{equipment_id}: archive failed: {exc}", equipment_id=equipment_id
                )
                result.errors += 1
                self.state.record_error(str(err))
                logger.error("Auto-archive failed: %s", err, exc_info=True)
                continue
            result.archived += 1

        duration_ms = int((time.monotonic() - started) * 1000)
        self.state.apply(result)
        self.state.last_sync_time = datetime.now(timezone.utc)
        self.state.last_duration_ms = duration_ms

        logger.info(
            "Sync done: processed=%d created=%d updated=%d archived=%d "
            "errors=%d defaults=%d (%dms)",
            result.processed, result.created, result.updated, result.archived,
            result.errors, result.mapping_defaults, duration_ms,
        )

        if result.changed:
            await publish_equipment_event(self.redis, "sync_cycle", {
                "created": result.created,
                "updated": result.updated,
                "modified": result.modified,
                "archived": result.archived,
                "archived_ids": list(archive_queue),
            })
        return result

    async def _process_record(
        self,
        record: ExternalRecord,
        snapshot: dict[str, SnapshotEntry],
        result: CycleResult,
    ) -> EquipmentStatus | None:
        """Apply one external record. Returns the exit status if it must be archived."""
        mapped: MappedStatus = map_external_record(record)
        if mapped.used_default:
            result.mapping_defaults += 1
            logger.debug(
                "Default mapping for %s (status_id=%s, reason=%s)",
                record.mirror_id, record.status_id, record.reason_code,
            )

        previous = snapshot.get(record.mirror_id)

        if mapped.status == EquipmentStatus.Down:
            async with self.session_factory() as session:
                async with session.begin():
                    _, created, modified = await upsert(
                        session,
                        record,
                        mapped,
                        preserve_manual_fields=bool(previous and previous.manually_edited),
                    )
            if created:
                result.created += 1
                logger.info(
                    "New downtime: %s %s (%s)",
                    record.mirror_id, record.equipment_name, mapped.malfunction,
                )
            else:
                result.updated += 1
                if modified:
                    result.modified += 1
            return None

        if previous is not None and previous.status == EquipmentStatus.Down:
            return mapped.status
        return None

    async def _auto_archive(
        self, equipment_id: str, exit_status: EquipmentStatus | None
    ) -> None:
        _, old_status = await archive_active(
            self.session_factory,
            equipment_id,
            ArchiveReason.auto_ready,
            exit_status=exit_status,
        )
        await record_history(
            self.session_factory,
            equipment_id,
            "auto_archive",
            old_value=old_status.value,
            new_value=exit_status.value if exit_status else "absent",
        )
