"""Valve state machine: mode guard, pending/confirmed, cycles, timers, dispatch failure."""

import asyncio
import json
from datetime import timedelta

import pytest

from conftest import settle
from core.clock import utcnow
from core.errors import StaleReport
from models import CommandStatus, ValveMode, ValveStatus
from services.state_machine import AUTO_OFF, PULSE_OFF


def status_msg(valve_number, status, ts=None):
    payload = {"valveNumber": valve_number, "status": status}
    if ts is not None:
        payload["timestamp"] = ts.isoformat() + "Z"
    return json.dumps(payload)


@pytest.mark.asyncio
async def test_operator_command_rejected_in_auto(engine, channel, valve_ids):
    valve_id = valve_ids[0]
    await engine.update_valve_mode(valve_id, ValveMode.AUTO)

    result = await engine.send_valve_command(valve_id, "ON")

    assert result.accepted is False
    assert result.error == "ModeConflict"
    await settle(engine)
    assert channel.commands() == []
    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.OFF
    assert view.pending is None


@pytest.mark.asyncio
async def test_command_stays_pending_until_device_reports(engine, channel, manifold, valve_ids):
    valve_id = valve_ids[0]
    engine.gateway.ack_timeout = 2.0

    result = await engine.send_valve_command(valve_id, "ON")
    assert result.accepted is True

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.OFF
    assert view.state()["kind"] == "pending"
    assert view.state()["command"]["command_id"] == result.command_id

    await asyncio.sleep(0)
    await engine.gateway.handle_message("manifolds/MANIFOLD-001/status", status_msg(1, "ON", utcnow()))
    await settle(engine)

    assert view.current_status == ValveStatus.ON
    assert view.state() == {"kind": "confirmed", "status": "ON"}
    assert view.cycle_count == 1

    sent = channel.commands()
    assert len(sent) == 1
    assert sent[0]["commandId"] == result.command_id
    assert sent[0]["valveNumber"] == 1
    assert sent[0]["action"] == "ON"

    command = await engine.store.get_command(result.command_id)
    assert command.status == CommandStatus.ACKNOWLEDGED
    stored = await engine.store.get_manifold(manifold.id)
    assert stored.total_cycles == 1


@pytest.mark.asyncio
async def test_ack_confirms_commanded_status(engine, controller, valve_ids):
    valve_id = valve_ids[1]

    await engine.send_valve_command(valve_id, "ON")
    await settle(engine)

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.ON
    assert view.pending is None
    assert view.unreachable is False

    valve = await engine.store.get_valve(valve_id)
    assert valve.current_status == ValveStatus.ON
    assert valve.cycle_count == 1


@pytest.mark.asyncio
async def test_repeated_on_reports_count_one_cycle(engine, valve_ids):
    valve_id = valve_ids[0]
    sm = engine.state_machine
    t0 = utcnow()

    await sm.apply_device_report(valve_id, ValveStatus.ON, t0)
    await sm.apply_device_report(valve_id, ValveStatus.ON, t0 + timedelta(seconds=1))
    await sm.apply_device_report(valve_id, ValveStatus.OFF, t0 + timedelta(seconds=2))
    await sm.apply_device_report(valve_id, ValveStatus.ON, t0 + timedelta(seconds=3))

    view = await sm.get_view(valve_id)
    assert view.cycle_count == 2
    assert view.total_runtime_sec >= 0
    valve = await engine.store.get_valve(valve_id)
    assert valve.cycle_count == 2


@pytest.mark.asyncio
async def test_stale_report_is_discarded(engine, valve_ids):
    valve_id = valve_ids[0]
    sm = engine.state_machine
    t0 = utcnow()

    await sm.apply_device_report(valve_id, ValveStatus.ON, t0)
    with pytest.raises(StaleReport):
        await sm.apply_device_report(valve_id, ValveStatus.OFF, t0 - timedelta(seconds=5))

    # Through the gateway the stale report is only logged.
    await engine.gateway.handle_message(
        "manifolds/MANIFOLD-001/status", status_msg(1, "OFF", t0 - timedelta(seconds=5)),
    )
    view = await sm.get_view(valve_id)
    assert view.current_status == ValveStatus.ON
    assert view.last_report_at == t0


@pytest.mark.asyncio
async def test_dispatch_failure_keeps_status_and_flags_unreachable(engine, channel, valve_ids):
    valve_id = valve_ids[0]

    result = await engine.send_valve_command(valve_id, "ON")
    await settle(engine)

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.OFF
    assert view.pending is None
    assert view.unreachable is True
    assert view.last_error.startswith("DispatchFailed")

    sent = channel.commands()
    assert len(sent) == 3
    assert {c["commandId"] for c in sent} == {result.command_id}

    command = await engine.store.get_command(result.command_id)
    assert command.status == CommandStatus.FAILED
    assert command.attempts == 3
    assert view.last_error == f"DispatchFailed: {command.error_message}"

    # Any report from the device clears the unreachable flag.
    await engine.state_machine.apply_device_report(valve_id, ValveStatus.OFF, utcnow())
    assert view.unreachable is False


@pytest.mark.asyncio
async def test_fault_blocks_on_until_cleared(engine, controller, valve_ids):
    valve_id = valve_ids[2]
    await engine.state_machine.apply_device_report(valve_id, ValveStatus.FAULT, utcnow())

    rejected = await engine.send_valve_command(valve_id, "ON")
    assert rejected.accepted is False
    assert rejected.error == "ValveFaulted"

    cleared = await engine.clear_fault(valve_id)
    assert cleared["current_status"] == "OFF"

    accepted = await engine.send_valve_command(valve_id, "ON")
    assert accepted.accepted is True
    await settle(engine)
    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.ON


@pytest.mark.asyncio
async def test_pulse_switches_back_off(engine, controller, channel, valve_ids):
    valve_id = valve_ids[0]
    engine.state_machine.pulse_duration = 0.5

    result = await engine.send_valve_command(valve_id, "PULSE")
    assert result.accepted is True
    await settle(engine)

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.ON
    assert engine.state_machine.has_timer(valve_id, PULSE_OFF)

    await asyncio.sleep(0.8)
    await settle(engine)

    assert view.current_status == ValveStatus.OFF
    assert [c["action"] for c in channel.commands()] == ["ON", "OFF"]
    assert view.cycle_count == 1


@pytest.mark.asyncio
async def test_auto_off_timer_expires(engine, controller, valve_ids):
    valve_id = valve_ids[0]
    await engine.update_valve_timer(valve_id, 1)

    await engine.send_valve_command(valve_id, "ON")
    await settle(engine)
    assert engine.state_machine.has_timer(valve_id, AUTO_OFF)

    await asyncio.sleep(1.2)
    await settle(engine)

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.OFF
    assert view.last_command_origin == "SYSTEM"
    assert not engine.state_machine.has_timer(valve_id, AUTO_OFF)


@pytest.mark.asyncio
async def test_switching_to_auto_cancels_auto_off(engine, controller, valve_ids):
    valve_id = valve_ids[0]
    await engine.update_valve_timer(valve_id, 60)
    await engine.send_valve_command(valve_id, "ON")
    await settle(engine)
    assert engine.state_machine.has_timer(valve_id, AUTO_OFF)

    await engine.update_valve_mode(valve_id, "AUTO")

    assert not engine.state_machine.has_timer(valve_id, AUTO_OFF)


@pytest.mark.asyncio
async def test_zero_duration_disarms_timer(engine, controller, valve_ids):
    valve_id = valve_ids[0]
    await engine.update_valve_timer(valve_id, 60)
    await engine.send_valve_command(valve_id, "ON")
    await settle(engine)

    await engine.update_valve_timer(valve_id, 0)

    assert not engine.state_machine.has_timer(valve_id, AUTO_OFF)


@pytest.mark.asyncio
async def test_concurrent_commands_apply_in_issue_order(engine, channel, valve_ids):
    valve_id = valve_ids[3]
    engine.gateway.ack_timeout = 2.0

    first, second = await asyncio.gather(
        engine.send_valve_command(valve_id, "ON"),
        engine.send_valve_command(valve_id, "OFF"),
    )
    assert first.accepted and second.accepted
    await asyncio.sleep(0)

    sent = channel.commands()
    assert [c["commandId"] for c in sent[:2]] == [first.command_id, second.command_id]

    view = await engine.state_machine.get_view(valve_id)
    assert view.pending.command_id == second.command_id

    for payload in sent[:2]:
        await engine.gateway.handle_message(
            "manifolds/MANIFOLD-001/ack", json.dumps({"commandId": payload["commandId"]}),
        )
    await settle(engine)

    assert view.current_status == ValveStatus.OFF
    assert view.pending is None
    assert view.last_command_action == "OFF"


@pytest.mark.asyncio
async def test_valves_do_not_block_each_other(engine, valve_ids):
    sm = engine.state_machine
    async with sm.locks(valve_ids[0]):
        await asyncio.wait_for(
            sm.apply_device_report(valve_ids[1], ValveStatus.ON, utcnow()), timeout=2,
        )
    view = await sm.get_view(valve_ids[1])
    assert view.current_status == ValveStatus.ON


@pytest.mark.asyncio
async def test_replayed_ack_does_not_reopen_valve(engine, controller, valve_ids):
    valve_id = valve_ids[0]
    first = await engine.send_valve_command(valve_id, "ON")
    await settle(engine)
    await engine.send_valve_command(valve_id, "OFF")
    await settle(engine)

    # At-least-once delivery: the controller repeats the ack of the old ON.
    await engine.gateway.handle_message(
        "manifolds/MANIFOLD-001/ack", json.dumps({"commandId": first.command_id}),
    )
    await settle(engine)

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.OFF
    assert view.cycle_count == 1
    valve = await engine.store.get_valve(valve_id)
    assert valve.current_status == ValveStatus.OFF
    assert valve.cycle_count == 1


@pytest.mark.asyncio
async def test_ack_after_dispatch_failure_keeps_failed(engine, channel, valve_ids):
    valve_id = valve_ids[1]
    result = await engine.send_valve_command(valve_id, "ON")
    await settle(engine)

    await engine.gateway.handle_message(
        "manifolds/MANIFOLD-001/ack", json.dumps({"commandId": result.command_id}),
    )
    await settle(engine)

    command = await engine.store.get_command(result.command_id)
    assert command.status == CommandStatus.FAILED
    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.OFF
    assert view.cycle_count == 0


@pytest.mark.asyncio
async def test_pulse_on_open_valve_still_switches_off(engine, controller, channel, valve_ids):
    valve_id = valve_ids[0]
    engine.state_machine.pulse_duration = 0.5
    await engine.send_valve_command(valve_id, "ON")
    await settle(engine)

    result = await engine.send_valve_command(valve_id, "PULSE")
    assert result.accepted is True
    await settle(engine)

    view = await engine.state_machine.get_view(valve_id)
    assert view.current_status == ValveStatus.ON
    assert view.pulse_command_id is None
    assert engine.state_machine.has_timer(valve_id, PULSE_OFF)

    await asyncio.sleep(0.8)
    await settle(engine)

    assert view.current_status == ValveStatus.OFF
    assert [c["action"] for c in channel.commands()] == ["ON", "ON", "OFF"]
    assert view.cycle_count == 1


@pytest.mark.asyncio
async def test_deleted_valve_drops_its_timers(engine, controller, valve_ids):
    valve_id = valve_ids[2]
    await engine.update_valve_timer(valve_id, 60)
    await engine.send_valve_command(valve_id, "ON")
    await settle(engine)
    assert engine.state_machine.has_timer(valve_id, AUTO_OFF)

    await engine.delete_valve(valve_id)

    assert not engine.state_machine.has_timer(valve_id, AUTO_OFF)
    assert engine.state_machine.cached_view(valve_id) is None
    assert await engine.store.get_valve(valve_id) is None
