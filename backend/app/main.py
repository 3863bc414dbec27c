import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine
from api.equipment import router as equipment_router
from api.archive import router as archive_router
from api.stats import router as stats_router
from core.errors import register_error_handlers
from core.websocket import router as ws_router, equipment_events_bridge
from services.reconciliation import ReconciliationEngine
from services.retention import RetentionJob
from services.source_feed import SourceFeedAdapter

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("equipment.main")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Equipment Backend starting... DEBUG=%s", settings.DEBUG)

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    tasks: list[asyncio.Task] = []
    stoppables = []

    # Redis → WebSocket bridge
    tasks.append(asyncio.create_task(equipment_events_bridge(redis)))

    # Reconciliation engine (JMineOps → equipment_master)
    source = None
    app.state.sync_engine = None
    if settings.SYNC_ENABLED:
        source = SourceFeedAdapter(
            settings.MSSQL_URL,
            timeout=settings.SOURCE_TIMEOUT,
            timezone_name=settings.SOURCE_TIMEZONE,
            equipment_types=settings.SOURCE_EQUIPMENT_TYPES,
        )
        sync_engine = ReconciliationEngine(
            source,
            async_session,
            redis=redis,
            interval=settings.SYNC_INTERVAL,
            archive_missing=settings.SYNC_ARCHIVE_MISSING,
        )
        app.state.sync_engine = sync_engine
        stoppables.append(sync_engine)
        tasks.append(asyncio.create_task(sync_engine.start()))
    else:
        logger.info("Reconciliation engine DISABLED (SYNC_ENABLED=false)")

    # Retention of archived mirror rows
    if settings.RETENTION_ENABLED:
        retention = RetentionJob(
            async_session,
            check_interval=settings.RETENTION_CHECK_INTERVAL,
            retention_days=settings.MIRROR_RETENTION_DAYS,
        )
        app.state.retention_job = retention
        stoppables.append(retention)
        tasks.append(asyncio.create_task(retention.start()))

    yield

    # Shutdown
    logger.info("Equipment Backend shutting down...")
    for service in stoppables:
        await service.stop()
    for t in tasks:
        t.cancel()
    for t in tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    if source is not None:
        await source.close()
    await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Equipment Downtime API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(equipment_router)
app.include_router(archive_router)
app.include_router(stats_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}
