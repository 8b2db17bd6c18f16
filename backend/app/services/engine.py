"""ValveEngine: wires the store, state machine, alarm engine, scheduler,
gateway and fan-out together and exposes the operations the HTTP routes use.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.clock import utcnow
from core.errors import (
    ModeConflict,
    UnknownManifold,
    UnknownSchedule,
    UnknownValve,
)
from models import (
    CommandAction,
    Manifold,
    Valve,
    ValveAlarm,
    ValveAlarmConfig,
    ValveCommand,
    ValveMode,
    ValveSchedule,
)
from services.alarm_engine import AlarmEngine
from services.fanout import SnapshotFanout
from services.gateway import CommandGateway, DeviceChannel
from services.scheduler import ValveScheduler, validate_schedule
from services.state_machine import CommandResult, ValveLocks, ValveStateMachine, ValveView
from services.valve_store import ValveStore

logger = logging.getLogger("irrigation.engine")

SCHEDULE_TIMING_FIELDS = ("action", "duration", "start_at", "end_at", "cron_expression")
VALVE_EDITABLE_FIELDS = ("pin_number", "zone", "flow_order", "specifications")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def alarm_to_dict(alarm: ValveAlarm) -> dict[str, Any]:
    return {
        "alarm_id": alarm.alarm_id,
        "rule_key": alarm.rule_key,
        "rule_type": alarm.rule_type.value,
        "severity": alarm.severity.value,
        "message": alarm.message,
        "value": alarm.value,
        "timestamp": _iso(alarm.timestamp),
        "acknowledged": alarm.acknowledged,
        "resolved": alarm.resolved,
    }


def schedule_to_dict(schedule: ValveSchedule) -> dict[str, Any]:
    return {
        "schedule_id": schedule.schedule_id,
        "enabled": schedule.enabled,
        "action": schedule.action,
        "duration": schedule.duration,
        "start_at": _iso(schedule.start_at),
        "end_at": _iso(schedule.end_at),
        "cron_expression": schedule.cron_expression,
        "last_fired_at": _iso(schedule.last_fired_at),
    }


class ValveEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        channel: DeviceChannel,
        *,
        pulse_duration: float | None = None,
        tick_interval: float | None = None,
        max_attempts: int | None = None,
        ack_timeout: float | None = None,
        retry_delay: float | None = None,
        heartbeat_timeout: float | None = None,
        presence_interval: float | None = None,
        store_retry_delay: float | None = None,
    ):
        self.redis = redis
        self.locks = ValveLocks()
        self.store = ValveStore(session_factory, retry_delay=store_retry_delay)
        self.state_machine = ValveStateMachine(self.store, locks=self.locks, pulse_duration=pulse_duration)
        self.alarms = AlarmEngine(self.store, self.locks, redis=redis)
        self.gateway = CommandGateway(
            channel,
            self.store,
            max_attempts=max_attempts,
            ack_timeout=ack_timeout,
            retry_delay=retry_delay,
            heartbeat_timeout=heartbeat_timeout,
            presence_interval=presence_interval,
        )
        self.scheduler = ValveScheduler(self.store, self.state_machine, tick_interval=tick_interval)
        self.fanout = SnapshotFanout(redis, self.build_snapshot)

        self.state_machine.gateway = self.gateway
        self.state_machine.alarms = self.alarms
        self.state_machine.fanout = self.fanout
        self.alarms.fanout = self.fanout
        self.gateway.state_machine = self.state_machine
        self.gateway.alarms = self.alarms

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.gateway.stop()
        await self.state_machine.shutdown()
        await self.fanout.stop()

    # ------------------------------------------------------------------
    # Manifolds
    # ------------------------------------------------------------------

    async def create_manifold(
        self,
        code: str,
        name: str,
        location: str | None = None,
        valves: list[dict[str, Any]] | None = None,
    ) -> Manifold:
        if valves is None:
            pins = settings.DEFAULT_VALVE_PINS
            valves = [
                {"valve_number": n, "pin_number": pins[(n - 1) % len(pins)]}
                for n in range(1, settings.VALVES_PER_MANIFOLD + 1)
            ]
        numbers = [v["valve_number"] for v in valves]
        if len(set(numbers)) != len(numbers):
            raise ValueError("Valve numbers must be unique within a manifold")

        manifold = await self.store.create_manifold(code=code, name=name, location=location, valves=valves)
        logger.info("Manifold %s created with %d valves", code, len(valves))
        await self.store.add_event(
            manifold_id=manifold.id,
            category="OPERATOR",
            event_code="manifold_created",
            message=f"Manifold {code} created",
        )
        self.fanout.notify(manifold.id)
        return manifold

    async def list_manifolds(self) -> list[Manifold]:
        return await self.store.list_manifolds()

    async def get_manifold(self, manifold_id: int) -> Manifold:
        manifold = await self.store.get_manifold(manifold_id)
        if manifold is None:
            raise UnknownManifold(f"Manifold {manifold_id} not found")
        return manifold

    async def delete_manifold(self, manifold_id: int) -> None:
        """Soft delete: valves go with it, schedules stop, open alarms resolve."""
        manifold = await self.get_manifold(manifold_id)
        valve_ids = await self.store.soft_delete_manifold(manifold_id)
        self.state_machine.forget_valves(valve_ids)
        self.alarms.forget_valves(valve_ids)
        self.gateway.forget_manifold(manifold_id)
        logger.info("Manifold %s deleted (%d valves)", manifold.code, len(valve_ids))
        await self.store.add_event(
            manifold_id=manifold_id,
            category="OPERATOR",
            event_code="manifold_deleted",
            message=f"Manifold {manifold.code} deleted",
        )
        await self.fanout.retire(manifold_id)

    async def get_manifold_snapshot(self, manifold_id: int) -> dict[str, Any]:
        snapshot = await self.build_snapshot(manifold_id)
        if snapshot is None:
            raise UnknownManifold(f"Manifold {manifold_id} not found")
        return snapshot

    async def build_snapshot(self, manifold_id: int) -> dict[str, Any] | None:
        detail = await self.store.load_manifold_detail(manifold_id)
        if detail is None:
            return None
        manifold, valves, alarms, schedules = detail
        return {
            "type": "snapshot",
            "manifold_id": manifold.id,
            "code": manifold.code,
            "name": manifold.name,
            "location": manifold.location,
            "status": manifold.status.value,
            "online": self.gateway.is_online(manifold.id),
            "total_cycles": manifold.total_cycles,
            "last_seen_at": _iso(manifold.last_seen_at),
            "timestamp": utcnow().isoformat(),
            "valves": [
                self._valve_entry(valve, alarms.get(valve.id, []), schedules.get(valve.id, []))
                for valve in valves
            ],
        }

    def _valve_entry(
        self, valve: Valve, alarms: list[ValveAlarm], schedules: list[ValveSchedule]
    ) -> dict[str, Any]:
        view = self.state_machine.cached_view(valve.id)
        if view is None:
            view = ValveView.from_row(valve, "")
        entry = self.view_to_dict(view)
        entry.update({
            "pin_number": valve.pin_number,
            "zone": valve.zone,
            "flow_order": valve.flow_order,
            "specifications": valve.specifications,
            "alarms": [alarm_to_dict(a) for a in alarms],
            "schedules": [schedule_to_dict(s) for s in schedules],
        })
        return entry

    @staticmethod
    def view_to_dict(view: ValveView) -> dict[str, Any]:
        return {
            "id": view.id,
            "valve_id": view.valve_id,
            "manifold_id": view.manifold_id,
            "valve_number": view.valve_number,
            "current_status": view.current_status.value,
            "mode": view.mode.value,
            "state": view.state(),
            "unreachable": view.unreachable,
            "last_error": view.last_error,
            "cycle_count": view.cycle_count,
            "total_runtime_sec": round(view.total_runtime_sec, 3),
            "auto_off_duration_sec": view.auto_off_duration_sec,
            "last_command_action": view.last_command_action,
            "last_command_origin": view.last_command_origin,
            "last_command_at": _iso(view.last_command_at),
            "last_report_at": _iso(view.last_report_at),
        }

    # ------------------------------------------------------------------
    # Valves
    # ------------------------------------------------------------------

    async def get_valve_status(self, valve_id: int) -> dict[str, Any]:
        view = await self.state_machine.get_view(valve_id)
        return self.view_to_dict(view)

    async def send_valve_command(self, valve_id: int, action: CommandAction | str) -> CommandResult:
        """Operator command; rejected synchronously for AUTO valves and uncleared faults."""
        try:
            return await self.state_machine.apply_operator_command(valve_id, action)
        except ModeConflict as exc:
            logger.info("Command rejected for valve %s: %s", valve_id, exc)
            return CommandResult(False, reason=str(exc), error=type(exc).__name__)

    async def update_valve_mode(self, valve_id: int, mode: ValveMode | str) -> dict[str, Any]:
        view = await self.state_machine.set_mode(valve_id, mode)
        return self.view_to_dict(view)

    async def update_valve_timer(self, valve_id: int, duration_sec: int) -> dict[str, Any]:
        view = await self.state_machine.set_auto_off_timer(valve_id, duration_sec)
        return self.view_to_dict(view)

    async def clear_fault(self, valve_id: int) -> dict[str, Any]:
        view = await self.state_machine.clear_fault(valve_id)
        return self.view_to_dict(view)

    async def get_valve_history(self, valve_id: int, limit: int = 50) -> list[ValveCommand]:
        await self.state_machine.get_view(valve_id)
        return await self.store.command_history(valve_id, limit)

    async def add_valve(self, manifold_id: int, fields: dict[str, Any]) -> Valve:
        manifold = await self.get_manifold(manifold_id)
        valve = await self.store.add_valve(manifold.id, manifold.code, fields)
        logger.info("Valve %s added (pin %d)", valve.valve_id, valve.pin_number)
        await self.store.add_event(
            manifold_id=manifold.id,
            valve_id=valve.id,
            category="OPERATOR",
            event_code="valve_added",
            message=f"Valve {valve.valve_id} added",
        )
        self.fanout.notify(manifold.id)
        return valve

    async def get_valve(self, valve_id: int) -> Valve:
        valve = await self.store.get_valve(valve_id)
        if valve is None:
            raise UnknownValve(f"Valve {valve_id} not found")
        return valve

    async def update_valve(self, valve_id: int, changes: dict[str, Any]) -> Valve:
        """Edit the descriptive fields; operational data stays with the state machine."""
        values = {k: v for k, v in changes.items() if k in VALVE_EDITABLE_FIELDS and v is not None}
        async with self.locks(valve_id):
            view = await self.state_machine.get_view(valve_id)
            if not values:
                return await self.get_valve(valve_id)
            valve = await self.store.update_valve(valve_id, values)
        await self.store.add_event(
            manifold_id=view.manifold_id,
            valve_id=view.id,
            category="OPERATOR",
            event_code="valve_updated",
            message=f"Valve {view.valve_id} updated: {', '.join(sorted(values))}",
            details={k: v for k, v in values.items() if k != "specifications"},
        )
        self.fanout.notify(view.manifold_id)
        return valve

    async def delete_valve(self, valve_id: int) -> None:
        """Soft delete: its schedules stop, open alarms resolve, timers are cancelled."""
        async with self.locks(valve_id):
            view = await self.state_machine.get_view(valve_id)
            await self.store.soft_delete_valve(valve_id)
        self.state_machine.forget_valves([valve_id])
        self.alarms.forget_valves([valve_id])
        logger.info("Valve %s deleted", view.valve_id)
        await self.store.add_event(
            manifold_id=view.manifold_id,
            valve_id=view.id,
            category="OPERATOR",
            event_code="valve_deleted",
            message=f"Valve {view.valve_id} deleted",
        )
        self.fanout.notify(view.manifold_id)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def list_schedules(self, valve_id: int) -> list[ValveSchedule]:
        await self.state_machine.get_view(valve_id)
        return await self.store.list_schedules(valve_id)

    async def create_schedule(
        self,
        valve_id: int,
        *,
        action: str,
        duration: int = 0,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        cron_expression: str | None = None,
        enabled: bool = True,
    ) -> ValveSchedule:
        fields = validate_schedule(
            action=action,
            duration=duration,
            start_at=start_at,
            end_at=end_at,
            cron_expression=cron_expression,
        )
        async with self.locks(valve_id):
            view = await self.state_machine.get_view(valve_id)
            schedule = await self.store.create_schedule(
                valve_id, {**fields, "enabled": enabled, "anchor_at": utcnow()},
            )
        logger.info("Schedule %s created for valve %s", schedule.schedule_id, view.valve_id)
        self.fanout.notify(view.manifold_id)
        return schedule

    async def update_schedule(
        self, valve_id: int, schedule_id: str, changes: dict[str, Any]
    ) -> ValveSchedule:
        async with self.locks(valve_id):
            view = await self.state_machine.get_view(valve_id)
            existing = await self.store.get_schedule(valve_id, schedule_id)
            if existing is None:
                raise UnknownSchedule(f"Schedule {schedule_id} not found on valve {valve_id}")

            merged = {f: getattr(existing, f) for f in SCHEDULE_TIMING_FIELDS}
            merged.update({k: v for k, v in changes.items() if k in SCHEDULE_TIMING_FIELDS})
            values: dict[str, Any] = validate_schedule(**merged)

            if any(values[f] != getattr(existing, f) for f in SCHEDULE_TIMING_FIELDS):
                values.update(last_fired_at=None, last_ended_at=None, anchor_at=utcnow())
            if "enabled" in changes and changes["enabled"] is not None:
                values["enabled"] = bool(changes["enabled"])
                if values["enabled"] and not existing.enabled:
                    values["anchor_at"] = utcnow()

            schedule = await self.store.update_schedule(existing.id, values)
        self.fanout.notify(view.manifold_id)
        return schedule

    async def delete_schedule(self, valve_id: int, schedule_id: str) -> None:
        async with self.locks(valve_id):
            view = await self.state_machine.get_view(valve_id)
            existing = await self.store.get_schedule(valve_id, schedule_id)
            if existing is None:
                raise UnknownSchedule(f"Schedule {schedule_id} not found on valve {valve_id}")
            await self.store.delete_schedule(existing.id)
        logger.info("Schedule %s deleted", schedule_id)
        self.fanout.notify(view.manifold_id)

    # ------------------------------------------------------------------
    # Alarms
    # ------------------------------------------------------------------

    async def update_valve_alarm_config(self, valve_id: int, changes: dict[str, Any]) -> ValveAlarmConfig:
        return await self.alarms.update_config(valve_id, changes)

    async def get_alarm_config(self, valve_id: int) -> ValveAlarmConfig | None:
        await self.state_machine.get_view(valve_id)
        return await self.store.get_alarm_config(valve_id)

    async def list_alarms(
        self,
        valve_id: int,
        *,
        acknowledged: bool | None = None,
        resolved: bool | None = None,
    ) -> list[ValveAlarm]:
        valve = await self.store.get_valve(valve_id)
        if valve is None:
            raise UnknownValve(f"Valve {valve_id} not found")
        return await self.store.list_alarms(valve_id, acknowledged=acknowledged, resolved=resolved)

    async def acknowledge_alarm(self, valve_id: int, alarm_id: str) -> ValveAlarm:
        return await self.alarms.acknowledge_alarm(valve_id, alarm_id)

    async def resolve_alarm(self, valve_id: int, alarm_id: str) -> ValveAlarm:
        return await self.alarms.resolve_alarm(valve_id, alarm_id)
