"""Command gateway: wire format, inbound routing, presence."""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import pytest

from conftest import settle
from core.clock import parse_timestamp, utcnow
from models import AlarmMetric, ManifoldStatus, ValveStatus
from services.gateway import _decode, command_topic


@pytest.mark.asyncio
async def test_command_payload_and_topic(engine, channel, controller, valve_ids):
    result = await engine.send_valve_command(valve_ids[2], "OFF")
    await settle(engine)

    (sent,) = channel.sent
    topic, payload = sent
    assert topic == command_topic("MANIFOLD-001") == "manifolds/MANIFOLD-001/command"
    assert payload["commandId"] == result.command_id
    assert payload["valveNumber"] == 3
    assert payload["action"] == "OFF"
    assert payload["duration"] == 0
    assert payload["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_on_command_carries_auto_off_duration(engine, channel, controller, valve_ids):
    await engine.update_valve_timer(valve_ids[0], 300)
    await engine.send_valve_command(valve_ids[0], "ON")
    await settle(engine)

    assert channel.commands()[0]["duration"] == 300


@pytest.mark.asyncio
async def test_multi_valve_status_report(engine, manifold, valve_ids):
    message = {
        "valves": [
            {"valveNumber": 1, "status": "ON"},
            {"valveNumber": 2, "status": "on"},
            {"valveNumber": 4, "status": "FAULT"},
        ],
        "timestamp": int(time.time() * 1000),
    }
    await engine.gateway.handle_message("manifolds/MANIFOLD-001/status", json.dumps(message))

    sm = engine.state_machine
    assert (await sm.get_view(valve_ids[0])).current_status == ValveStatus.ON
    assert (await sm.get_view(valve_ids[1])).current_status == ValveStatus.ON
    assert (await sm.get_view(valve_ids[2])).current_status == ValveStatus.OFF
    assert (await sm.get_view(valve_ids[3])).current_status == ValveStatus.FAULT

    stored = await engine.store.get_manifold(manifold.id)
    assert stored.total_cycles == 2
    assert engine.gateway.is_online(manifold.id)


@pytest.mark.asyncio
async def test_telemetry_routed_to_alarm_engine(engine, valve_ids):
    engine.gateway.alarms = AsyncMock()
    message = {
        "samples": [
            {"valveNumber": 1, "metric": "pressure", "value": 85.5},
            {"valveNumber": 2, "metric": "flow", "value": "12"},
            {"valveNumber": 9, "metric": "flow", "value": 1},
        ],
    }

    await engine.gateway.handle_message("manifolds/MANIFOLD-001/telemetry", json.dumps(message).encode())

    calls = engine.gateway.alarms.ingest_telemetry.await_args_list
    assert [c.args for c in calls] == [
        (valve_ids[0], AlarmMetric.pressure, 85.5),
        (valve_ids[1], AlarmMetric.flow, 12.0),
    ]


@pytest.mark.asyncio
async def test_unknown_manifold_is_ignored(engine, manifold):
    engine.state_machine.apply_device_report = AsyncMock()

    await engine.gateway.handle_message(
        "manifolds/NOPE/status", json.dumps({"valveNumber": 1, "status": "ON"}),
    )
    await engine.gateway.handle_message("irrigation/MANIFOLD-001/status", "{}")

    engine.state_machine.apply_device_report.assert_not_awaited()


@pytest.mark.asyncio
async def test_presence_follows_heartbeats(engine, manifold):
    gateway = engine.gateway
    assert gateway.is_online(manifold.id) is False

    await gateway.handle_message("manifolds/MANIFOLD-001/online", "true")
    assert gateway.is_online(manifold.id)
    assert (await engine.store.get_manifold(manifold.id)).status == ManifoldStatus.ACTIVE

    assert await gateway.check_presence() == []
    went = await gateway.check_presence(now=time.monotonic() + gateway.heartbeat_timeout + 1)
    assert went == [manifold.id]
    assert gateway.is_online(manifold.id) is False
    assert (await engine.store.get_manifold(manifold.id)).status == ManifoldStatus.OFFLINE

    await gateway.handle_message("manifolds/MANIFOLD-001/ack", json.dumps({"commandId": "unknown"}))
    assert gateway.is_online(manifold.id)


@pytest.mark.asyncio
async def test_explicit_offline_message(engine, manifold):
    await engine.gateway.handle_message("manifolds/MANIFOLD-001/online", "true")
    await engine.gateway.handle_message("manifolds/MANIFOLD-001/online", b"false")

    assert engine.gateway.is_online(manifold.id) is False


@pytest.mark.asyncio
async def test_presence_restore_clears_unreachable(engine, channel, valve_ids):
    await engine.send_valve_command(valve_ids[0], "ON")
    await settle(engine)
    view = await engine.state_machine.get_view(valve_ids[0])
    assert view.unreachable is True

    await engine.gateway.handle_message("manifolds/MANIFOLD-001/online", "true")

    assert view.unreachable is False


@pytest.mark.asyncio
async def test_publish_failure_reported_as_reason(engine, channel, valve_ids):
    channel.fail = True

    result = await engine.send_valve_command(valve_ids[0], "ON")
    await settle(engine)

    command = await engine.store.get_command(result.command_id)
    assert command.error_message.startswith("publish failed")
    view = await engine.state_machine.get_view(valve_ids[0])
    assert view.unreachable is True
    assert view.current_status == ValveStatus.OFF


@pytest.mark.asyncio
async def test_late_ack_during_backoff_counts(engine, channel, valve_ids):
    engine.gateway.retry_delay = 0.5
    acks = []

    async def ack_later(command_id):
        await asyncio.sleep(0.1)
        await engine.gateway.handle_message(
            "manifolds/MANIFOLD-001/ack", json.dumps({"commandId": command_id}),
        )

    async def respond(topic, payload):
        acks.append(asyncio.create_task(ack_later(payload["commandId"])))

    channel.responder = respond
    await engine.send_valve_command(valve_ids[0], "ON")
    await settle(engine)
    await asyncio.gather(*acks)

    assert len(channel.commands()) == 1
    view = await engine.state_machine.get_view(valve_ids[0])
    assert view.current_status == ValveStatus.ON
    assert view.unreachable is False


def test_decode_accepts_bytes_json_and_plain_text():
    assert _decode(b'{"a": 1}') == {"a": 1}
    assert _decode("true") is True
    assert _decode("offline") == "offline"
    assert _decode(42) == 42


def test_parse_timestamp_out_of_range_is_none():
    assert parse_timestamp(1e20) is None
    assert parse_timestamp("1e20") is None
    assert parse_timestamp(-1e20) is None
    assert parse_timestamp(1_700_000_000) == parse_timestamp(1_700_000_000_000)


@pytest.mark.asyncio
async def test_out_of_range_timestamp_uses_receipt_time(engine, valve_ids):
    before = utcnow()
    message = {"valveNumber": 1, "status": "ON", "timestamp": 1e20}

    await engine.gateway.handle_message("manifolds/MANIFOLD-001/status", json.dumps(message))

    view = await engine.state_machine.get_view(valve_ids[0])
    assert view.current_status == ValveStatus.ON
    assert view.last_report_at >= before
