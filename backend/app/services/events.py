"""Equipment events → Redis PubSub 'equipment:events' (dashboard live push)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("equipment.events")

EVENTS_CHANNEL = "equipment:events"


async def publish_equipment_event(
    redis: Redis | None, event_type: str, payload: dict
) -> None:
    if redis is None:
        return
    message = {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **payload,
    }
    try:
        await redis.publish(EVENTS_CHANNEL, json.dumps(message, default=str))
    except RedisError as exc:
        # дашборд просто получит обновление при следующем опросе
        logger.warning("Failed to publish %s event: %s", event_type, exc)
