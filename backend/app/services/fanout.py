"""Snapshot fan-out.

SnapshotFanout turns "manifold N changed" notifications into versioned
snapshots: one publisher task per manifold coalesces bursts, stamps each
snapshot with a per-manifold version (Redis INCR), caches it under
manifold:{id}:snapshot and publishes it on 'valves:snapshots'.

SnapshotHub is the in-process side: each websocket subscriber gets a
bounded queue. Versions only move forward per subscriber, and a slow
subscriber loses its oldest queued snapshot instead of stalling anyone.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from config import settings

logger = logging.getLogger("irrigation.fanout")

SNAPSHOT_CHANNEL = "valves:snapshots"

SnapshotBuilder = Callable[[int], Awaitable[dict | None]]


def version_key(manifold_id: int) -> str:
    return f"manifold:{manifold_id}:version"


def snapshot_key(manifold_id: int) -> str:
    return f"manifold:{manifold_id}:snapshot"


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------

class SnapshotFanout:

    def __init__(self, redis: Redis, builder: SnapshotBuilder):
        self.redis = redis
        self.builder = builder
        self._dirty: set[int] = set()
        self._tasks: dict[int, asyncio.Task] = {}

    def notify(self, manifold_id: int) -> None:
        """Non-blocking: schedule a snapshot publish for the manifold."""
        self._dirty.add(manifold_id)
        task = self._tasks.get(manifold_id)
        if task is None or task.done():
            self._tasks[manifold_id] = asyncio.create_task(self._publish_loop(manifold_id))

    async def _publish_loop(self, manifold_id: int) -> None:
        while manifold_id in self._dirty:
            self._dirty.discard(manifold_id)
            try:
                snapshot = await self.builder(manifold_id)
                if snapshot is not None:
                    await self.publish(snapshot)
            except Exception as exc:
                logger.error("Snapshot publish for manifold %s failed: %s", manifold_id, exc)

    async def publish(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        manifold_id = snapshot["manifold_id"]
        snapshot["version"] = await self.redis.incr(version_key(manifold_id))
        data = json.dumps(snapshot, default=str)
        await self.redis.set(snapshot_key(manifold_id), data)
        await self.redis.publish(SNAPSHOT_CHANNEL, data)
        return snapshot

    async def current(self, manifold_id: int) -> dict[str, Any] | None:
        """Latest published snapshot; builds and publishes one if none is cached."""
        raw = await self.redis.get(snapshot_key(manifold_id))
        if raw:
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Corrupt cached snapshot for manifold %s", manifold_id)
        snapshot = await self.builder(manifold_id)
        if snapshot is None:
            return None
        return await self.publish(snapshot)

    async def retire(self, manifold_id: int) -> None:
        """Tell subscribers the manifold is gone and drop its cached snapshot."""
        self._dirty.discard(manifold_id)
        await self.publish({"type": "deleted", "manifold_id": manifold_id, "valves": []})
        await self.redis.delete(snapshot_key(manifold_id))

    async def drain(self) -> None:
        """Wait until every pending notification has been published."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        self._dirty.clear()


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

class Subscription:

    def __init__(self, manifold_id: int, maxsize: int):
        self.manifold_id = manifold_id
        self.queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=maxsize)
        self.last_version = 0
        self.dropped = 0

    def offer(self, snapshot: dict) -> bool:
        version = snapshot.get("version", 0)
        if version <= self.last_version:
            return False
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(snapshot)
        self.last_version = version
        return True

    def prime(self, initial: dict) -> None:
        """Put the full snapshot first; keep only newer buffered updates behind it."""
        buffered = []
        while not self.queue.empty():
            buffered.append(self.queue.get_nowait())
        self.last_version = 0
        self.offer(initial)
        for snapshot in buffered:
            self.offer(snapshot)

    async def get(self) -> dict:
        return await self.queue.get()


class SnapshotHub:
    """Per-manifold websocket subscriptions."""

    def __init__(self, maxsize: int | None = None):
        self.maxsize = maxsize or settings.FANOUT_QUEUE_SIZE
        self._subs: dict[int, set[Subscription]] = defaultdict(set)

    async def subscribe(self, manifold_id: int, loader: SnapshotBuilder) -> Subscription:
        # Register before loading so nothing published in between is missed.
        sub = Subscription(manifold_id, self.maxsize)
        self._subs[manifold_id].add(sub)
        initial = await loader(manifold_id)
        if initial is not None:
            sub.prime(initial)
        logger.info("Subscriber joined manifold %s (%d total)", manifold_id, len(self._subs[manifold_id]))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.manifold_id)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                del self._subs[sub.manifold_id]
        logger.info("Subscriber left manifold %s", sub.manifold_id)

    def deliver(self, snapshot: dict) -> int:
        delivered = 0
        for sub in list(self._subs.get(snapshot.get("manifold_id"), ())):
            if sub.offer(snapshot):
                delivered += 1
        return delivered

    def subscriber_count(self, manifold_id: int | None = None) -> int:
        if manifold_id is None:
            return sum(len(s) for s in self._subs.values())
        return len(self._subs.get(manifold_id, ()))
