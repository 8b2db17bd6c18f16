"""Valve Scheduler: drives AUTO valves from their schedules.

Background task that runs every SCHEDULER_TICK_INTERVAL seconds:
1. Loads every enabled schedule of a non-deleted valve
2. Works out which windows start and which end at this tick
3. Resolves overlapping windows on the same valve (latest start wins)
4. Issues the resulting ON/OFF as a SCHEDULER command through the state machine

Bookkeeping (last_fired_at / last_ended_at) makes a tick idempotent: running
it twice for the same instant issues nothing the second time. Windows missed
entirely while the engine was down are consumed without firing; missed cron
slots collapse into one firing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

from config import settings
from core.clock import to_naive_utc, utcnow
from core.errors import InvalidSchedule, ValveEngineError
from models import CommandOrigin, ValveMode, ValveSchedule, ValveStatus
from services.state_machine import ValveStateMachine
from services.valve_store import ValveStore

logger = logging.getLogger("irrigation.scheduler")

SCHEDULE_ACTIONS = (ValveStatus.ON.value, ValveStatus.OFF.value)


# ---------------------------------------------------------------------------
# Validation + cron helpers
# ---------------------------------------------------------------------------

def compile_cron(expression: str, tz: str | None = None) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=tz or settings.SCHEDULE_TIMEZONE)
    except (ValueError, TypeError, KeyError) as exc:
        raise InvalidSchedule(f"Invalid cron expression '{expression}': {exc}")


def next_cron_fire(trigger: CronTrigger, after: datetime) -> datetime | None:
    """First slot strictly after `after` (naive UTC in, naive UTC out)."""
    aware = after.replace(tzinfo=timezone.utc)
    nxt = trigger.get_next_fire_time(aware, aware)
    return to_naive_utc(nxt) if nxt is not None else None


def validate_schedule(
    *,
    action: str,
    duration: int = 0,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    cron_expression: str | None = None,
) -> dict:
    """Normalise a schedule definition or raise InvalidSchedule."""
    action = str(action or "").upper()
    if action not in SCHEDULE_ACTIONS:
        raise InvalidSchedule(f"Schedule action must be ON or OFF, got '{action}'")
    if duration is None or duration < 0:
        raise InvalidSchedule("Duration must be >= 0")

    cron_expression = (cron_expression or "").strip() or None
    start_at = to_naive_utc(start_at) if start_at is not None else None
    end_at = to_naive_utc(end_at) if end_at is not None else None

    if cron_expression:
        if start_at is not None or end_at is not None:
            raise InvalidSchedule("A schedule is either a cron expression or a start/end window, not both")
        compile_cron(cron_expression)
    else:
        if start_at is None:
            raise InvalidSchedule("Either a cron expression or start_at is required")
        if end_at is not None and end_at <= start_at:
            raise InvalidSchedule("end_at must be after start_at")

    return {
        "action": action,
        "duration": int(duration),
        "start_at": start_at,
        "end_at": end_at,
        "cron_expression": cron_expression,
    }


def inverse_action(action: str) -> ValveStatus:
    return ValveStatus.OFF if action == ValveStatus.ON.value else ValveStatus.ON


@dataclass
class _Window:
    schedule: ValveSchedule
    start: datetime


@dataclass
class ScheduledAction:
    valve_id: int
    schedule_id: str
    action: ValveStatus
    reason: str               # start / end / resume
    dispatched: bool


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class ValveScheduler:
    """Background task: fires schedule windows and cron slots for AUTO valves."""

    def __init__(
        self,
        store: ValveStore,
        state_machine: ValveStateMachine,
        *,
        tick_interval: float | None = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.tick_interval = tick_interval or settings.SCHEDULER_TICK_INTERVAL
        self._running = False
        self._triggers: dict[str, CronTrigger] = {}

    async def start(self) -> None:
        self._running = True
        logger.info("ValveScheduler started (tick every %.0fs)", self.tick_interval)
        while self._running:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Scheduler tick error: %s", exc, exc_info=True)
            await asyncio.sleep(self.tick_interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("ValveScheduler stopped")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[ScheduledAction]:
        now = now or utcnow()
        by_valve: dict[int, list[ValveSchedule]] = defaultdict(list)
        for schedule in await self.store.list_active_schedules():
            by_valve[schedule.valve_id].append(schedule)

        results: list[ScheduledAction] = []
        for valve_id, schedules in by_valve.items():
            try:
                results.extend(await self._tick_valve(valve_id, schedules, now))
            except ValveEngineError as exc:
                logger.error("Scheduler: valve %s skipped: %s", valve_id, exc)
        return results

    def _trigger(self, expression: str) -> CronTrigger:
        trigger = self._triggers.get(expression)
        if trigger is None:
            trigger = self._triggers[expression] = compile_cron(expression)
        return trigger

    def _latest_slot(self, schedule: ValveSchedule, now: datetime) -> datetime | None:
        """Most recent cron slot in (reference, now], or None."""
        trigger = self._trigger(schedule.cron_expression)
        marks = [t for t in (schedule.last_fired_at, schedule.anchor_at) if t is not None]
        reference = max(marks) if marks else (schedule.created_at or now)
        slot = next_cron_fire(trigger, reference)
        if slot is None or slot > now:
            return None
        while True:
            following = next_cron_fire(trigger, slot)
            if following is None or following > now:
                return slot
            slot = following

    @staticmethod
    def _window_end(schedule: ValveSchedule, start: datetime) -> datetime | None:
        ends = []
        if schedule.end_at is not None:
            ends.append(schedule.end_at)
        if schedule.duration > 0:
            ends.append(start + timedelta(seconds=schedule.duration))
        return min(ends) if ends else None

    async def _tick_valve(
        self, valve_id: int, schedules: list[ValveSchedule], now: datetime
    ) -> list[ScheduledAction]:
        starts: list[_Window] = []
        ends: list[_Window] = []
        active: list[_Window] = []

        for schedule in schedules:
            if schedule.is_cron:
                await self._plan_cron(schedule, now, starts, ends, active)
            else:
                await self._plan_window(schedule, now, starts, ends, active)

        if not starts and not ends:
            return []

        view = await self.state_machine.get_view(valve_id)
        drive = view.mode == ValveMode.AUTO

        restarted = {w.schedule.id for w in starts}
        for window in ends:
            # A cron firing replaced by its next slot stays open under the new firing.
            if window.schedule.id not in restarted:
                await self.store.update_schedule(window.schedule.id, {"last_ended_at": now})
        for window in starts:
            await self.store.update_schedule(window.schedule.id, {"last_fired_at": now})

        current = active + starts
        winner = max(current, key=lambda w: (w.start, w.schedule.id)) if current else None

        target: ValveStatus | None = None
        source: _Window | None = None
        reason = ""
        if starts:
            newest = max(starts, key=lambda w: (w.start, w.schedule.id))
            if winner is newest:
                target, source, reason = ValveStatus(newest.schedule.action), newest, "start"
        else:
            controller = max(ends, key=lambda w: (w.start, w.schedule.id))
            if winner is None:
                target, source, reason = inverse_action(controller.schedule.action), controller, "end"
            elif (controller.start, controller.schedule.id) > (winner.start, winner.schedule.id):
                target, source, reason = ValveStatus(winner.schedule.action), winner, "resume"

        if target is None or source is None:
            return []

        if not drive:
            logger.info(
                "Schedule %s %s on MANUAL valve %s consumed without dispatch",
                source.schedule.schedule_id, reason, view.valve_id,
            )
            return [ScheduledAction(valve_id, source.schedule.schedule_id, target, reason, False)]

        logger.info(
            "Schedule %s %s: valve %s -> %s",
            source.schedule.schedule_id, reason, view.valve_id, target.value,
        )
        result = await self.state_machine.system_command(
            valve_id, target, origin=CommandOrigin.SCHEDULER,
        )
        return [ScheduledAction(valve_id, source.schedule.schedule_id, target, reason, result.accepted)]

    async def _plan_cron(self, schedule, now, starts, ends, active) -> None:
        slot = self._latest_slot(schedule, now)
        last = schedule.last_fired_at
        if last is not None and (schedule.last_ended_at is None or schedule.last_ended_at < last):
            end = last + timedelta(seconds=schedule.duration) if schedule.duration > 0 else None
            if end is not None and now >= end:
                ends.append(_Window(schedule, last))
            elif slot is None:
                active.append(_Window(schedule, last))
        if slot is None:
            return
        if schedule.duration > 0 and now >= slot + timedelta(seconds=schedule.duration):
            logger.info("Schedule %s cron slot %s missed entirely, consumed", schedule.schedule_id, slot)
            await self.store.update_schedule(schedule.id, {"last_fired_at": now, "last_ended_at": now})
            return
        starts.append(_Window(schedule, now))

    async def _plan_window(self, schedule, now, starts, ends, active) -> None:
        start_at = schedule.start_at
        if start_at is None:
            return
        last = schedule.last_fired_at
        if last is None or last < start_at:
            if now < start_at:
                return
            end = self._window_end(schedule, start_at)
            if end is not None and now >= end:
                logger.info("Schedule %s window missed entirely, consumed", schedule.schedule_id)
                await self.store.update_schedule(schedule.id, {"last_fired_at": now, "last_ended_at": now})
                return
            starts.append(_Window(schedule, start_at))
            return

        if schedule.last_ended_at is not None and schedule.last_ended_at >= last:
            return
        end = self._window_end(schedule, start_at)
        if end is not None and now >= end:
            ends.append(_Window(schedule, start_at))
        else:
            active.append(_Window(schedule, start_at))
