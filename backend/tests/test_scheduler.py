"""Valve scheduler: windows, cron slots, conflicts, idempotent ticks."""

from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import settle
from core.clock import utcnow
from core.errors import InvalidSchedule
from models import ValveMode, ValveStatus
from services.scheduler import validate_schedule


def future_base():
    """A whole five-minute mark a day ahead, clear of the real clock."""
    base = (utcnow() + timedelta(days=1)).replace(second=0, microsecond=0)
    return base.replace(minute=base.minute - base.minute % 5)


@pytest_asyncio.fixture
async def auto_valve(engine, controller, valve_ids):
    await engine.update_valve_mode(valve_ids[0], ValveMode.AUTO)
    return valve_ids[0]


def test_validate_schedule_rejects_bad_definitions():
    start = utcnow()
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="PULSE", start_at=start)
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="ON")
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="ON", start_at=start, end_at=start)
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="ON", cron_expression="*/5 * * * *", start_at=start)
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="ON", cron_expression="every five minutes")
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="ON", cron_expression="61 * * * *")
    with pytest.raises(InvalidSchedule):
        validate_schedule(action="OFF", duration=-1, start_at=start)


def test_validate_schedule_normalises():
    fields = validate_schedule(action="on", cron_expression="  0 6 * * *  ")
    assert fields["action"] == "ON"
    assert fields["cron_expression"] == "0 6 * * *"
    assert fields["start_at"] is None


@pytest.mark.asyncio
async def test_window_turns_valve_on_then_off(engine, channel, auto_valve):
    t0 = future_base()
    schedule = await engine.create_schedule(
        auto_valve, action="ON", start_at=t0, end_at=t0 + timedelta(minutes=10),
    )

    assert await engine.scheduler.tick(t0 - timedelta(minutes=1)) == []

    (started,) = await engine.scheduler.tick(t0)
    assert started.schedule_id == schedule.schedule_id
    assert started.action == ValveStatus.ON
    assert started.reason == "start"
    assert started.dispatched is True
    await settle(engine)
    view = await engine.state_machine.get_view(auto_valve)
    assert view.current_status == ValveStatus.ON
    assert view.last_command_origin == "SCHEDULER"

    # Same instant again: nothing new.
    assert await engine.scheduler.tick(t0) == []
    assert await engine.scheduler.tick(t0 + timedelta(minutes=5)) == []

    (ended,) = await engine.scheduler.tick(t0 + timedelta(minutes=10))
    assert ended.action == ValveStatus.OFF
    assert ended.reason == "end"
    await settle(engine)
    assert view.current_status == ValveStatus.OFF

    assert await engine.scheduler.tick(t0 + timedelta(minutes=10)) == []
    assert [c["action"] for c in channel.commands()] == ["ON", "OFF"]


@pytest.mark.asyncio
async def test_duration_closes_window(engine, auto_valve):
    t0 = future_base()
    await engine.create_schedule(auto_valve, action="ON", duration=120, start_at=t0)

    await engine.scheduler.tick(t0)
    assert await engine.scheduler.tick(t0 + timedelta(seconds=60)) == []
    (ended,) = await engine.scheduler.tick(t0 + timedelta(seconds=120))
    assert ended.action == ValveStatus.OFF


@pytest.mark.asyncio
async def test_late_first_tick_keeps_window_end(engine, auto_valve):
    t0 = future_base()
    await engine.create_schedule(auto_valve, action="ON", duration=120, start_at=t0)

    (started,) = await engine.scheduler.tick(t0 + timedelta(seconds=30))
    assert started.reason == "start"
    (ended,) = await engine.scheduler.tick(t0 + timedelta(seconds=120))
    assert ended.action == ValveStatus.OFF
    assert ended.reason == "end"


@pytest.mark.asyncio
async def test_manual_valve_schedule_consumed_without_dispatch(engine, channel, valve_ids):
    valve_id = valve_ids[1]
    t0 = future_base()
    schedule = await engine.create_schedule(
        valve_id, action="ON", start_at=t0, end_at=t0 + timedelta(minutes=10),
    )

    (action,) = await engine.scheduler.tick(t0)
    assert action.dispatched is False
    await settle(engine)
    assert channel.commands() == []

    stored = await engine.store.get_schedule(valve_id, schedule.schedule_id)
    assert stored.last_fired_at == t0
    assert await engine.scheduler.tick(t0 + timedelta(minutes=1)) == []


@pytest.mark.asyncio
async def test_missed_window_is_consumed(engine, channel, auto_valve):
    t0 = future_base()
    schedule = await engine.create_schedule(
        auto_valve, action="ON", start_at=t0, end_at=t0 + timedelta(minutes=10),
    )
    late = t0 + timedelta(minutes=15)

    assert await engine.scheduler.tick(late) == []
    await settle(engine)
    assert channel.commands() == []

    stored = await engine.store.get_schedule(auto_valve, schedule.schedule_id)
    assert stored.last_fired_at == late
    assert stored.last_ended_at == late
    assert await engine.scheduler.tick(late + timedelta(minutes=1)) == []


@pytest.mark.asyncio
async def test_cron_missed_slots_collapse_into_one(engine, channel, auto_valve):
    base = future_base()
    await engine.create_schedule(auto_valve, action="ON", cron_expression="*/5 * * * *")

    # Hours of slots since creation fire once.
    (fired,) = await engine.scheduler.tick(base + timedelta(minutes=1))
    assert fired.reason == "start"
    assert await engine.scheduler.tick(base + timedelta(minutes=2)) == []
    await settle(engine)
    assert len(channel.commands()) == 1

    (again,) = await engine.scheduler.tick(base + timedelta(minutes=6))
    assert again.action == ValveStatus.ON
    assert await engine.scheduler.tick(base + timedelta(minutes=6)) == []


@pytest.mark.asyncio
async def test_cron_with_duration_switches_back(engine, auto_valve):
    base = future_base()
    await engine.create_schedule(
        auto_valve, action="ON", duration=60, cron_expression="*/5 * * * *",
    )
    await engine.scheduler.tick(base - timedelta(minutes=5))
    await engine.scheduler.tick(base)

    assert await engine.scheduler.tick(base + timedelta(seconds=30)) == []
    (ended,) = await engine.scheduler.tick(base + timedelta(seconds=60))
    assert ended.action == ValveStatus.OFF
    assert ended.reason == "end"


@pytest.mark.asyncio
async def test_latest_starting_window_wins_and_older_resumes(engine, channel, auto_valve):
    t0 = future_base()
    long_on = await engine.create_schedule(
        auto_valve, action="ON", start_at=t0, end_at=t0 + timedelta(minutes=20),
    )
    short_off = await engine.create_schedule(
        auto_valve,
        action="OFF",
        start_at=t0 + timedelta(minutes=5),
        end_at=t0 + timedelta(minutes=10),
    )

    steps = []
    for minutes in (0, 5, 10, 20):
        for action in await engine.scheduler.tick(t0 + timedelta(minutes=minutes)):
            steps.append((action.schedule_id, action.action.value, action.reason))
        await settle(engine)

    assert steps == [
        (long_on.schedule_id, "ON", "start"),
        (short_off.schedule_id, "OFF", "start"),
        (long_on.schedule_id, "ON", "resume"),
        (long_on.schedule_id, "OFF", "end"),
    ]
    assert [c["action"] for c in channel.commands()] == ["ON", "OFF", "ON", "OFF"]


@pytest.mark.asyncio
async def test_disabled_schedule_never_fires(engine, auto_valve):
    t0 = future_base()
    schedule = await engine.create_schedule(
        auto_valve, action="ON", start_at=t0, end_at=t0 + timedelta(minutes=10), enabled=False,
    )
    assert await engine.scheduler.tick(t0) == []

    await engine.update_schedule(auto_valve, schedule.schedule_id, {"enabled": True})
    (started,) = await engine.scheduler.tick(t0 + timedelta(minutes=1))
    assert started.action == ValveStatus.ON


@pytest.mark.asyncio
async def test_timing_edit_resets_bookkeeping(engine, auto_valve):
    t0 = future_base()
    schedule = await engine.create_schedule(
        auto_valve, action="ON", start_at=t0, end_at=t0 + timedelta(minutes=10),
    )
    await engine.scheduler.tick(t0)

    updated = await engine.update_schedule(
        auto_valve, schedule.schedule_id, {"start_at": t0 + timedelta(hours=1), "end_at": None},
    )

    assert updated.last_fired_at is None
    assert updated.start_at == t0 + timedelta(hours=1)
    assert updated.end_at is None
