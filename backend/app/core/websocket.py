"""
WebSocket endpoint + Redis PubSub bridge for the equipment dashboard.

WS /ws/equipment: snapshot of active equipment on connect, then live events
equipment_events_bridge: background task: Redis 'equipment:events' → broadcast
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis
from sqlalchemy import select

from models import EquipmentRecord, Lifecycle, async_session
from services.events import EVENTS_CHANNEL

logger = logging.getLogger("equipment.websocket")

router = APIRouter()


# ---------------------------------------------------------------------------
# Connection Manager
# ---------------------------------------------------------------------------

class ConnectionManager:
    """Manages active WebSocket connections and broadcasts messages."""

    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.append(ws)
        logger.info("WS client connected (%d total)", len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self.connections:
            self.connections.remove(ws)
        logger.info("WS client disconnected (%d remaining)", len(self.connections))

    async def broadcast(self, message: str) -> None:
        dead: list[WebSocket] = []
        for ws in self.connections:
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            if ws in self.connections:
                self.connections.remove(ws)
        if dead:
            logger.debug("Removed %d dead WS connections", len(dead))


manager = ConnectionManager()


async def active_equipment_snapshot() -> list[dict]:
    async with async_session() as session:
        result = await session.execute(
            select(EquipmentRecord)
            .where(EquipmentRecord.lifecycle == Lifecycle.active)
            .order_by(EquipmentRecord.section, EquipmentRecord.id)
        )
        return [
            {
                "id": row.id,
                "equipment_type": row.equipment_type,
                "section": row.section,
                "status": row.status.value,
                "malfunction": row.malfunction,
                "mechanic_name": row.mechanic_name,
                "last_sync_time": row.last_sync_time,
            }
            for row in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/equipment")
async def ws_equipment(websocket: WebSocket) -> None:
    await manager.connect(websocket)
    try:
        snapshot = await active_equipment_snapshot()
        await websocket.send_text(
            json.dumps({"type": "snapshot", "data": snapshot}, default=str)
        )

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as exc:
        logger.debug("WS error: %s", exc)
        manager.disconnect(websocket)


# ---------------------------------------------------------------------------
# Redis → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def equipment_events_bridge(redis: Redis) -> None:
    """Subscribe to Redis PubSub 'equipment:events' and broadcast to all WS clients."""
    logger.info("Redis→WS bridge started, subscribing to %s", EVENTS_CHANNEL)
    pubsub = redis.pubsub()
    await pubsub.subscribe(EVENTS_CHANNEL)

    try:
        async for message in pubsub.listen():
            if message["type"] == "message":
                payload = message["data"]
                if isinstance(payload, bytes):
                    payload = payload.decode("utf-8")
                await manager.broadcast(payload)
    except Exception as exc:
        logger.error("Redis→WS bridge error: %s", exc)
    finally:
        await pubsub.unsubscribe(EVENTS_CHANNEL)
        await pubsub.close()
