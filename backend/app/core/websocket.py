"""
WebSocket endpoint + Redis PubSub bridge for manifold snapshots.

WS /ws/manifolds/{manifold_id}: full snapshot on join, then every newer version
snapshots_to_ws_bridge: background task: Redis 'valves:snapshots' → SnapshotHub.deliver
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis

from services.fanout import SNAPSHOT_CHANNEL, SnapshotHub, Subscription

logger = logging.getLogger("irrigation.websocket")

router = APIRouter()


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        snapshot = await sub.get()
        await websocket.send_json(snapshot)


@router.websocket("/ws/manifolds/{manifold_id}")
async def ws_manifold(websocket: WebSocket, manifold_id: int) -> None:
    engine = getattr(websocket.app.state, "engine", None)
    hub: SnapshotHub | None = getattr(websocket.app.state, "hub", None)
    if engine is None or hub is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    sub = await hub.subscribe(manifold_id, engine.fanout.current)
    if sub.queue.empty():
        await websocket.send_json({"type": "error", "detail": f"Manifold {manifold_id} not found"})
        hub.unsubscribe(sub)
        await websocket.close(code=1008)
        return

    sender = asyncio.create_task(_pump(websocket, sub))
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.debug("WS error: %s", exc)
    finally:
        sender.cancel()
        hub.unsubscribe(sub)


# ---------------------------------------------------------------------------
# Redis → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def snapshots_to_ws_bridge(redis: Redis, hub: SnapshotHub) -> None:
    """Subscribe to Redis PubSub 'valves:snapshots' and hand snapshots to the hub."""
    logger.info("Redis→WS bridge started, subscribing to %s", SNAPSHOT_CHANNEL)
    pubsub = redis.pubsub()
    await pubsub.subscribe(SNAPSHOT_CHANNEL)

    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            payload = message["data"]
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            try:
                snapshot = json.loads(payload)
            except json.JSONDecodeError:
                continue
            hub.deliver(snapshot)
    except Exception as exc:
        logger.error("Redis→WS bridge error: %s", exc)
    finally:
        await pubsub.unsubscribe(SNAPSHOT_CHANNEL)
        await pubsub.close()
