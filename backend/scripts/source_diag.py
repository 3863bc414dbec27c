"""
Диагностика подключения к JMineOps (MSSQL) и проверка маппинга.
Запуск: python backend/scripts/source_diag.py
"""
import asyncio
import socket
import sys

sys.path.insert(0, "backend/app")

from sqlalchemy.engine import make_url  # noqa: E402

from config import settings  # noqa: E402
from core.errors import SourceUnavailable  # noqa: E402
from services.source_feed import SourceFeedAdapter  # noqa: E402
from services.status_mapper import map_external_record  # noqa: E402


def check_tcp(host: str, port: int) -> bool:
    try:
        sock = socket.create_connection((host, port), timeout=3)
        sock.close()
    except OSError as e:
        print(f"[TCP {host}:{port}] FAIL: {e}")
        return False
    print(f"[TCP {host}:{port}] Connected OK")
    return True


async def main() -> int:
    url = make_url(settings.MSSQL_URL)
    print(f"{'='*60}")
    print(f"  JMineOps: {url.host}:{url.port or 1433}/{url.database}")
    print(f"{'='*60}")

    if not check_tcp(url.host, url.port or 1433):
        return 1

    adapter = SourceFeedAdapter(
        settings.MSSQL_URL,
        timeout=settings.SOURCE_TIMEOUT,
        timezone_name=settings.SOURCE_TIMEZONE,
        equipment_types=settings.SOURCE_EQUIPMENT_TYPES,
    )
    try:
        records = await adapter.fetch_active_downtime_records()
    except SourceUnavailable as e:
        print(f"[QUERY] FAIL: {e}")
        return 1
    finally:
        await adapter.close()

    print(f"[QUERY] {len(records)} open intervals\n")
    defaults = 0
    for rec in records:
        mapped = map_external_record(rec)
        defaults += mapped.used_default
        flag = " (default)" if mapped.used_default else ""
        started = rec.started_at.isoformat() if rec.started_at else "-"
        print(
            f"  {rec.mirror_id:<10} {rec.equipment_name:<10} {mapped.status.value:<11} "
            f"{mapped.section:<24} {mapped.malfunction or '-'}  [{started}]{flag}"
        )
    print(f"\nDefault mappings: {defaults}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
