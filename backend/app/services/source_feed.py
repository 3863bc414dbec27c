"""Source Feed Adapter: reads open state intervals from JMineOps (MSSQL).

Responsibilities:
- one read-only query per call, bounded by SOURCE_TIMEOUT
- soft-delete filter of the source (deleted_at / enabled)
- only open intervals (end_time IS NULL), latest per equipment
- timestamp format detection (the ONLY place in the pipeline that does it)

Does NOT retry: the reconciliation timer is the retry mechanism.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from core.errors import SourceUnavailable

logger = logging.getLogger("equipment.source")

MIRROR_ID_PREFIX = "EQ-"

# Последний открытый интервал состояния по каждой технике
OPEN_INTERVALS_QUERY = text("""
    WITH LastState AS (
        SELECT
            ss.equipment_id,
            ss.status_id,
            ss.reason_id,
            ss.time AS start_time,
            ss.comment,
            ROW_NUMBER() OVER (
                PARTITION BY ss.equipment_id
                ORDER BY ss.time DESC
            ) AS rn
        FROM dbo.shift_states ss
        WHERE ss.end_time IS NULL
          AND ss.deleted_at IS NULL
    )
    SELECT
        e.id            AS mssql_equipment_id,
        e.name          AS equipment_name,
        e.type          AS mssql_type,
        ISNULL(et.name, '') AS equipment_model,
        ls.status_id,
        r.code          AS reason_code,
        r.descrip       AS reason_name,
        ls.start_time,
        ls.comment
    FROM LastState ls
    INNER JOIN dbo.equipment e
        ON ls.equipment_id = e.id
    LEFT JOIN dbo.reasons r
        ON ls.reason_id = r.id
    LEFT JOIN dbo.enum_tables et
        ON e.equipment_type_id = et.id
    WHERE ls.rn = 1
      AND e.deleted_at IS NULL
      AND e.enabled = 1
      AND e.type IN :types
    ORDER BY e.name
""").bindparams(bindparam("types", expanding=True))

_LOCALE_FORMATS = ("%d.%m.%Y %H:%M:%S", "%d.%m.%Y %H:%M", "%d.%m.%Y")
_TIME_ONLY = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class ExternalRecord:
    equipment_id: int
    equipment_name: str
    equipment_type: str | None
    model: str
    status_id: int | None
    reason_code: str | None = None
    reason_text: str | None = None
    started_at: datetime | None = None
    comment: str | None = None

    @property
    def mirror_id(self) -> str:
        return f"{MIRROR_ID_PREFIX}{self.equipment_id}"


def parse_source_timestamp(
    value,
    tz: ZoneInfo,
    *,
    now: datetime | None = None,
) -> datetime | None:
    """Normalize a JMineOps timestamp to an aware UTC datetime.

    Accepts datetime objects (naive ones are site-local), ISO 8601 strings,
    "DD.MM.YYYY HH:mm[:ss]" locale strings and bare "HH:mm" (today, site
    time). Anything else yields None.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=tz)
        return dt.astimezone(timezone.utc)

    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()

    for fmt in _LOCALE_FORMATS:
        try:
            dt = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return dt.replace(tzinfo=tz).astimezone(timezone.utc)

    m = _TIME_ONLY.match(raw)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
        if hour > 23 or minute > 59:
            return None
        local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
        dt = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return dt.astimezone(timezone.utc)

    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable source timestamp: %r", raw)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


class SourceFeedAdapter:
    """Read-only access to the external operations database."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        timezone_name: str = "UTC",
        equipment_types: list[str] | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.tz = ZoneInfo(timezone_name)
        self.equipment_types = list(equipment_types or [])
        self._engine: AsyncEngine | None = None

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.url,
                pool_pre_ping=True,
                pool_size=2,
                max_overflow=0,
            )
        return self._engine

    async def fetch_active_downtime_records(self) -> list[ExternalRecord]:
        try:
            rows = await asyncio.wait_for(self._query(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise SourceUnavailable(
                f"MSSQL query timed out after {self.timeout:.0f}s"
            ) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise SourceUnavailable(f"MSSQL unavailable: {exc}") from exc

        records: list[ExternalRecord] = []
        for row in rows:
            record = self._to_record(row)
            if record is not None:
                records.append(record)
        logger.debug("Fetched %d open intervals from MSSQL", len(records))
        return records

    async def _query(self) -> list:
        async with self._get_engine().connect() as conn:
            result = await conn.execute(
                OPEN_INTERVALS_QUERY, {"types": self.equipment_types}
            )
            return list(result.mappings().all())

    def _to_record(self, row) -> ExternalRecord | None:
        raw_id = row.get("mssql_equipment_id")
        try:
            equipment_id = int(raw_id)
        except (TypeError, ValueError):
            logger.warning("Skipping source row without equipment id: %r", dict(row))
            return None

        status_id = row.get("status_id")
        try:
            status_id = int(status_id) if status_id is not None else None
        except (TypeError, ValueError):
            status_id = None

        return ExternalRecord(
            equipment_id=equipment_id,
            equipment_name=(row.get("equipment_name") or "").strip(),
            equipment_type=row.get("mssql_type"),
            model=(row.get("equipment_model") or "").strip(),
            status_id=status_id,
            reason_code=row.get("reason_code"),
            reason_text=row.get("reason_name"),
            started_at=parse_source_timestamp(row.get("start_time"), self.tz),
            comment=row.get("comment"),
        )

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
