"""Snapshot fan-out: versioning, coalescing, bounded subscriber queues."""

import asyncio
import json

import pytest

from conftest import FakeRedis, settle
from core.clock import utcnow
from models import ValveStatus
from services.fanout import (
    SNAPSHOT_CHANNEL,
    SnapshotFanout,
    SnapshotHub,
    Subscription,
    snapshot_key,
    version_key,
)


def snap(version, manifold_id=1):
    return {"manifold_id": manifold_id, "version": version, "valves": []}


def test_subscription_versions_only_move_forward():
    sub = Subscription(1, maxsize=10)

    assert sub.offer(snap(2)) is True
    assert sub.offer(snap(1)) is False
    assert sub.offer(snap(2)) is False
    assert sub.offer(snap(3)) is True
    assert [sub.queue.get_nowait()["version"] for _ in range(2)] == [2, 3]


def test_slow_subscriber_loses_oldest():
    sub = Subscription(1, maxsize=3)
    for version in range(1, 6):
        sub.offer(snap(version))

    assert sub.dropped == 2
    assert [sub.queue.get_nowait()["version"] for _ in range(3)] == [3, 4, 5]


def test_prime_puts_initial_snapshot_first():
    sub = Subscription(1, maxsize=10)
    sub.offer(snap(4))
    sub.offer(snap(6))

    sub.prime(snap(5))

    assert [sub.queue.get_nowait()["version"] for _ in range(2)] == [5, 6]
    assert sub.last_version == 6


@pytest.mark.asyncio
async def test_hub_delivers_to_matching_manifold_only():
    hub = SnapshotHub(maxsize=4)

    async def loader(manifold_id):
        return snap(1, manifold_id)

    first = await hub.subscribe(1, loader)
    other = await hub.subscribe(2, loader)
    assert (await first.get())["version"] == 1

    assert hub.deliver(snap(2, 1)) == 1
    assert (await first.get())["version"] == 2
    assert other.queue.qsize() == 1

    hub.unsubscribe(first)
    assert hub.subscriber_count(1) == 0
    assert hub.subscriber_count() == 1
    assert hub.deliver(snap(3, 1)) == 0


@pytest.mark.asyncio
async def test_update_published_while_joining_is_not_lost():
    hub = SnapshotHub(maxsize=4)

    async def slow_loader(manifold_id):
        # A newer snapshot lands while the initial one is being loaded.
        hub.deliver(snap(8, manifold_id))
        return snap(7, manifold_id)

    sub = await hub.subscribe(1, slow_loader)

    assert (await sub.get())["version"] == 7
    assert (await sub.get())["version"] == 8


@pytest.mark.asyncio
async def test_notify_bursts_coalesce():
    redis = FakeRedis()
    builds = []

    async def builder(manifold_id):
        builds.append(manifold_id)
        await asyncio.sleep(0)
        return snap(0, manifold_id)

    fanout = SnapshotFanout(redis, builder)
    for _ in range(5):
        fanout.notify(1)
    await fanout.drain()

    assert builds == [1]
    (published,) = redis.messages(SNAPSHOT_CHANNEL)
    assert published["version"] == 1
    assert json.loads(redis.data[snapshot_key(1)])["version"] == 1
    assert redis.data[version_key(1)] == 1


@pytest.mark.asyncio
async def test_engine_snapshot_tracks_pending_and_confirmed(engine, fake_redis, manifold, valve_ids):
    engine.gateway.ack_timeout = 2.0
    await settle(engine)
    before = fake_redis.messages(SNAPSHOT_CHANNEL)

    result = await engine.send_valve_command(valve_ids[0], "ON")
    await engine.fanout.drain()
    pending = fake_redis.messages(SNAPSHOT_CHANNEL)[-1]
    entry = pending["valves"][0]
    assert entry["current_status"] == "OFF"
    assert entry["state"]["kind"] == "pending"
    assert entry["state"]["command"]["command_id"] == result.command_id

    await engine.state_machine.apply_device_report(valve_ids[0], ValveStatus.ON, utcnow())
    await settle(engine)
    snapshots = fake_redis.messages(SNAPSHOT_CHANNEL)
    latest = snapshots[-1]
    assert latest["valves"][0]["state"] == {"kind": "confirmed", "status": "ON"}
    assert latest["total_cycles"] == 1

    versions = [s["version"] for s in snapshots]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)
    assert len(snapshots) > len(before)


@pytest.mark.asyncio
async def test_current_snapshot_is_cached(engine, fake_redis, manifold):
    await settle(engine)

    snapshot = await engine.fanout.current(manifold.id)

    assert snapshot["code"] == "MANIFOLD-001"
    assert len(snapshot["valves"]) == 4
    assert snapshot["version"] == fake_redis.data[version_key(manifold.id)]


@pytest.mark.asyncio
async def test_deleted_manifold_announces_tombstone(engine, fake_redis, manifold):
    await settle(engine)

    await engine.delete_manifold(manifold.id)

    tombstone = fake_redis.messages(SNAPSHOT_CHANNEL)[-1]
    assert tombstone["type"] == "deleted"
    assert tombstone["manifold_id"] == manifold.id
    assert snapshot_key(manifold.id) not in fake_redis.data
