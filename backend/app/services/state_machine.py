"""Valve State Machine: the only writer of valve operational data.

States are {OFF, ON, FAULT} x {AUTO, MANUAL}. Every mutating call takes the
valve's own asyncio.Lock, so operator commands, device reports, scheduler
fires and alarm evaluation for one valve are serialised while unrelated
valves proceed in parallel.

Commands never change current_status directly: the valve is marked
Pending(command) and the status flips only when the device confirms
(status report or command ack). Each transition is written to the store
first and applied to the in-memory view afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from config import settings
from core.clock import utcnow
from core.errors import DispatchFailed, ModeConflict, StaleReport, UnknownValve, ValveEngineError, ValveFaulted
from models import CommandAction, CommandOrigin, CommandStatus, ManifoldStatus, Valve, ValveMode, ValveStatus
from services.valve_store import ValveStore

if TYPE_CHECKING:
    from services.alarm_engine import AlarmEngine
    from services.fanout import SnapshotFanout
    from services.gateway import CommandGateway

logger = logging.getLogger("irrigation.state_machine")

AUTO_OFF = "auto_off"
PULSE_OFF = "pulse_off"


class ValveLocks:
    """One lock per valve; never a global one."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def __call__(self, valve_id: int) -> asyncio.Lock:
        lock = self._locks.get(valve_id)
        if lock is None:
            lock = self._locks[valve_id] = asyncio.Lock()
        return lock

    def discard(self, valve_id: int) -> None:
        self._locks.pop(valve_id, None)


@dataclass
class PendingCommand:
    command_id: str
    action: ValveStatus
    origin: CommandOrigin
    issued_at: datetime


@dataclass
class DispatchTicket:
    command_id: str
    valve_id: int
    manifold_id: int
    manifold_code: str
    valve_number: int
    action: ValveStatus
    origin: CommandOrigin
    duration: float = 0


@dataclass
class CommandResult:
    accepted: bool
    command_id: str | None = None
    status: str | None = None
    reason: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "command_id": self.command_id,
            "status": self.status,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class ValveView:
    """Authoritative in-memory operational data of one valve."""

    id: int
    valve_id: str
    manifold_id: int
    manifold_code: str
    valve_number: int
    current_status: ValveStatus
    mode: ValveMode
    cycle_count: int
    total_runtime_sec: float
    auto_off_duration_sec: int
    last_report_at: datetime | None = None
    last_on_at: datetime | None = None
    last_command_action: str | None = None
    last_command_origin: str | None = None
    last_command_at: datetime | None = None
    pending: PendingCommand | None = None
    pulse_command_id: str | None = None
    unreachable: bool = False
    last_error: str | None = None

    @classmethod
    def from_row(cls, valve: Valve, manifold_code: str) -> "ValveView":
        return cls(
            id=valve.id,
            valve_id=valve.valve_id,
            manifold_id=valve.manifold_id,
            manifold_code=manifold_code,
            valve_number=valve.valve_number,
            current_status=valve.current_status,
            mode=valve.mode,
            cycle_count=valve.cycle_count,
            total_runtime_sec=valve.total_runtime_sec,
            auto_off_duration_sec=valve.auto_off_duration_sec,
            last_report_at=valve.last_report_at,
            last_on_at=valve.last_on_at,
            last_command_action=valve.last_command_action,
            last_command_origin=valve.last_command_origin,
            last_command_at=valve.last_command_at,
        )

    def state(self) -> dict[str, Any]:
        """Tagged variant shown to observers: Pending(command) or Confirmed(status)."""
        if self.pending is not None:
            return {
                "kind": "pending",
                "command": {
                    "command_id": self.pending.command_id,
                    "action": self.pending.action.value,
                    "origin": self.pending.origin.value,
                    "issued_at": self.pending.issued_at.isoformat(),
                },
                "status": self.current_status.value,
            }
        return {"kind": "confirmed", "status": self.current_status.value}


class ValveStateMachine:

    def __init__(
        self,
        store: ValveStore,
        *,
        locks: ValveLocks | None = None,
        pulse_duration: float | None = None,
    ):
        self.store = store
        self.locks = locks or ValveLocks()
        self.pulse_duration = settings.PULSE_DURATION_SEC if pulse_duration is None else pulse_duration
        self.gateway: CommandGateway | None = None
        self.alarms: AlarmEngine | None = None
        self.fanout: SnapshotFanout | None = None
        self._views: dict[int, ValveView] = {}
        self._timers: dict[tuple[int, str], asyncio.Task] = {}
        self._dispatch_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def get_view(self, valve_id: int) -> ValveView:
        view = self._views.get(valve_id)
        if view is not None:
            return view
        valve = await self.store.get_valve(valve_id)
        if valve is None:
            raise UnknownValve(f"Valve {valve_id} not found")
        view = self._views.setdefault(valve_id, ValveView.from_row(valve, valve.manifold.code))
        return view

    def cached_view(self, valve_id: int) -> ValveView | None:
        return self._views.get(valve_id)

    def has_timer(self, valve_id: int, kind: str) -> bool:
        task = self._timers.get((valve_id, kind))
        return task is not None and not task.done()

    def forget_valves(self, valve_ids: list[int]) -> None:
        """Drop deleted valves: cancel their timers, forget their views."""
        for valve_id in valve_ids:
            self._cancel_timer(valve_id, AUTO_OFF)
            self._cancel_timer(valve_id, PULSE_OFF)
            self._views.pop(valve_id, None)
            self.locks.discard(valve_id)

    async def drain(self) -> None:
        """Wait until every in-flight dispatch has finished."""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._timers.values()) + list(self._dispatch_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Task ended with error on shutdown: %s", exc)
        self._timers.clear()
        self._dispatch_tasks.clear()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def apply_operator_command(self, valve_id: int, action: CommandAction | str) -> CommandResult:
        action = CommandAction(action)
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            if view.mode == ValveMode.AUTO:
                raise ModeConflict(
                    f"Valve {view.valve_id} is in AUTO mode; operator commands are not accepted"
                )
            if view.current_status == ValveStatus.FAULT and action != CommandAction.OFF:
                raise ValveFaulted(f"Valve {view.valve_id} is in FAULT; clear the fault first")

            if action == CommandAction.PULSE:
                ticket = await self._issue(view, ValveStatus.ON, CommandOrigin.PULSE)
                view.pulse_command_id = ticket.command_id
            else:
                ticket = await self._issue(view, ValveStatus(action.value), CommandOrigin.OPERATOR)
        return CommandResult(True, ticket.command_id, CommandStatus.PENDING.value)

    async def system_command(
        self,
        valve_id: int,
        action: ValveStatus | str,
        *,
        origin: CommandOrigin = CommandOrigin.SYSTEM,
    ) -> CommandResult:
        """Scheduler / safety-timer command; not subject to the AUTO guard."""
        action = ValveStatus(action)
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            if action == ValveStatus.ON and view.current_status == ValveStatus.FAULT:
                logger.warning(
                    "%s ON refused for valve %s: valve in FAULT", origin.value, view.valve_id,
                )
                return CommandResult(False, reason="valve in FAULT", error=ValveFaulted.__name__)
            ticket = await self._issue(view, action, origin)
        return CommandResult(True, ticket.command_id, CommandStatus.PENDING.value)

    async def _issue(self, view: ValveView, action: ValveStatus, origin: CommandOrigin) -> DispatchTicket:
        """Record the command, mark the valve pending and start dispatch. Caller holds the lock."""
        command = await self.store.create_command(
            valve_id=view.id,
            manifold_id=view.manifold_id,
            valve_number=view.valve_number,
            action=action.value,
            origin=origin.value,
        )
        now = command.issued_at
        await self.store.write_operational(view.id, {
            "last_command_action": action.value,
            "last_command_origin": origin.value,
            "last_command_at": now,
        })
        view.last_command_action = action.value
        view.last_command_origin = origin.value
        view.last_command_at = now
        view.pending = PendingCommand(command.command_id, action, origin, now)

        if origin == CommandOrigin.PULSE:
            duration = self.pulse_duration
        elif action == ValveStatus.ON:
            duration = view.auto_off_duration_sec
        else:
            duration = 0
        ticket = DispatchTicket(
            command_id=command.command_id,
            valve_id=view.id,
            manifold_id=view.manifold_id,
            manifold_code=view.manifold_code,
            valve_number=view.valve_number,
            action=action,
            origin=origin,
            duration=duration,
        )
        logger.info(
            "Command %s: valve=%s action=%s origin=%s",
            ticket.command_id, view.valve_id, action.value, origin.value,
        )
        await self.store.add_event(
            manifold_id=view.manifold_id,
            valve_id=view.id,
            category="SCHEDULER" if origin == CommandOrigin.SCHEDULER else (
                "OPERATOR" if origin in (CommandOrigin.OPERATOR, CommandOrigin.PULSE) else "SYSTEM"
            ),
            event_code=f"cmd_{action.value.lower()}",
            message=f"{origin.value}: {view.valve_id} -> {action.value}",
            new_value=action.value,
            details={"command_id": ticket.command_id, "origin": origin.value},
        )
        self._spawn_dispatch(ticket)
        self._notify(view.manifold_id)
        return ticket

    def _spawn_dispatch(self, ticket: DispatchTicket) -> None:
        if self.gateway is None:
            logger.warning("No gateway attached; command %s stays pending", ticket.command_id)
            return
        task = asyncio.create_task(self.gateway.dispatch(ticket))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def on_dispatch_failed(self, valve_id: int, command_id: str, error: DispatchFailed) -> None:
        """Bounded retries exhausted: status stays as it was, valve flagged unreachable."""
        reason = str(error)
        async with self.locks(valve_id):
            try:
                view = await self.get_view(valve_id)
            except UnknownValve:
                return
            if view.pending is not None and view.pending.command_id == command_id:
                view.pending = None
            if view.pulse_command_id == command_id:
                view.pulse_command_id = None
            view.unreachable = True
            view.last_error = f"{type(error).__name__}: {reason}"
            logger.warning(
                "DispatchFailed: valve=%s command=%s (%s); status stays %s",
                view.valve_id, command_id, reason, view.current_status.value,
            )
            await self.store.add_event(
                manifold_id=view.manifold_id,
                valve_id=view.id,
                category="SYSTEM",
                event_code="dispatch_failed",
                message=f"Command to {view.valve_id} failed: {reason}",
                details={"command_id": command_id},
            )
            self._notify(view.manifold_id)

    # ------------------------------------------------------------------
    # Device-reported state
    # ------------------------------------------------------------------

    async def apply_device_report(
        self, valve_id: int, status: ValveStatus | str, timestamp: datetime | None = None
    ) -> ValveView:
        """Device is ground truth; strictly older reports raise StaleReport."""
        status = ValveStatus(status)
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            if (
                timestamp is not None
                and view.last_report_at is not None
                and timestamp < view.last_report_at
            ):
                raise StaleReport(
                    f"Valve {view.valve_id}: report at {timestamp.isoformat()} older than "
                    f"{view.last_report_at.isoformat()}"
                )
            await self._transition(view, status, report_at=timestamp, source="device")
            return view

    async def confirm_command(self, valve_id: int, command_id: str, action: ValveStatus | str) -> None:
        """Device acknowledged a command: the commanded status is now confirmed.

        Acks are delivered at least once. Only the ack of the command the valve
        is still waiting on moves its status; any other ack is only recorded.
        """
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            if view.pending is None or view.pending.command_id != command_id:
                logger.debug(
                    "Ack for command %s on valve %s is not pending; status kept",
                    command_id, view.valve_id,
                )
                return
            await self._transition(view, ValveStatus(action), command_id=command_id, source="ack")

    async def clear_fault(self, valve_id: int) -> ValveView:
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            if view.current_status != ValveStatus.FAULT:
                return view
            await self._transition(view, ValveStatus.OFF, source="operator")
            return view

    async def _transition(
        self,
        view: ValveView,
        status: ValveStatus,
        *,
        report_at: datetime | None = None,
        command_id: str | None = None,
        source: str,
    ) -> None:
        now = utcnow()
        old = view.current_status
        values: dict[str, Any] = {"current_status": status}
        if report_at is not None:
            values["last_report_at"] = report_at
        cycles_delta = 0
        turned_on = status == ValveStatus.ON and old != ValveStatus.ON
        if turned_on:
            cycles_delta = 1
            values["cycle_count"] = view.cycle_count + 1
            values["last_on_at"] = now
        elif old == ValveStatus.ON and status != ValveStatus.ON and view.last_on_at is not None:
            ran = max(0.0, (now - view.last_on_at).total_seconds())
            values["total_runtime_sec"] = view.total_runtime_sec + ran

        await self.store.write_operational(
            view.id, values, manifold_id=view.manifold_id, cycles_delta=cycles_delta,
        )
        for key, value in values.items():
            setattr(view, key, value)
        view.unreachable = False
        view.last_error = None

        pending = view.pending
        confirmed = None
        if pending is not None and (command_id == pending.command_id or pending.action == status):
            view.pending = None
            confirmed = pending.command_id
            if self.gateway is not None:
                await self.gateway.acknowledge(pending.command_id)

        if status == ValveStatus.ON:
            if turned_on and view.auto_off_duration_sec > 0:
                self._arm_timer(view, AUTO_OFF, view.auto_off_duration_sec)
            # A pulse on a valve that is already ON still ends with OFF.
            if view.pulse_command_id is not None and (turned_on or confirmed == view.pulse_command_id):
                self._arm_timer(view, PULSE_OFF, self.pulse_duration)
                view.pulse_command_id = None
        elif status == ValveStatus.OFF:
            self._cancel_timer(view.id, AUTO_OFF)
            self._cancel_timer(view.id, PULSE_OFF)
            view.pulse_command_id = None

        if old != status:
            logger.info("Valve %s: %s -> %s (%s)", view.valve_id, old.value, status.value, source)
            await self.store.add_event(
                manifold_id=view.manifold_id,
                valve_id=view.id,
                category="OPERATOR" if source == "operator" else "DEVICE",
                event_code="fault_cleared" if source == "operator" else f"report_{status.value.lower()}",
                message=f"{view.valve_id}: {old.value} -> {status.value}",
                old_value=old.value,
                new_value=status.value,
            )

        if self.alarms is not None:
            await self.alarms.evaluate_status(view, status)
        self._notify(view.manifold_id)

    # ------------------------------------------------------------------
    # Mode / timer configuration
    # ------------------------------------------------------------------

    async def set_mode(self, valve_id: int, mode: ValveMode | str) -> ValveView:
        mode = ValveMode(mode)
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            if view.mode == mode:
                return view
            old = view.mode
            await self.store.write_operational(view.id, {"mode": mode})
            view.mode = mode
            if mode == ValveMode.AUTO:
                # The scheduler is now the sole controller of status.
                self._cancel_timer(view.id, AUTO_OFF)
            logger.info("Valve %s mode %s -> %s", view.valve_id, old.value, mode.value)
            await self.store.add_event(
                manifold_id=view.manifold_id,
                valve_id=view.id,
                category="OPERATOR",
                event_code=f"mode_{mode.value.lower()}",
                message=f"{view.valve_id}: mode {old.value} -> {mode.value}",
                old_value=old.value,
                new_value=mode.value,
            )
            self._notify(view.manifold_id)
            return view

    async def set_auto_off_timer(self, valve_id: int, duration_sec: int) -> ValveView:
        if duration_sec < 0:
            raise ValueError("auto-off duration must be >= 0")
        async with self.locks(valve_id):
            view = await self.get_view(valve_id)
            await self.store.write_operational(view.id, {"auto_off_duration_sec": duration_sec})
            view.auto_off_duration_sec = duration_sec
            if duration_sec == 0:
                self._cancel_timer(view.id, AUTO_OFF)
            self._notify(view.manifold_id)
            return view

    # ------------------------------------------------------------------
    # Device presence
    # ------------------------------------------------------------------

    async def set_device_presence(
        self, manifold_id: int, online: bool, *, last_seen_at: datetime | None = None
    ) -> None:
        status = ManifoldStatus.ACTIVE if online else ManifoldStatus.OFFLINE
        await self.store.update_manifold_presence(manifold_id, status, last_seen_at)
        if online:
            for view in [v for v in self._views.values() if v.manifold_id == manifold_id]:
                if view.unreachable:
                    async with self.locks(view.id):
                        view.unreachable = False
                        view.last_error = None
        logger.info("Manifold %s is %s", manifold_id, "online" if online else "offline")
        await self.store.add_event(
            manifold_id=manifold_id,
            category="SYSTEM",
            event_code="online" if online else "offline",
            message=f"Controller {'online' if online else 'offline'}",
            new_value=status.value,
        )
        self._notify(manifold_id)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_timer(self, view: ValveView, kind: str, delay: float) -> None:
        self._cancel_timer(view.id, kind)
        task = asyncio.create_task(self._expire(view.id, kind, delay))
        self._timers[(view.id, kind)] = task
        logger.info("Valve %s: %s timer armed (%.1fs)", view.valve_id, kind, delay)

    def _cancel_timer(self, valve_id: int, kind: str) -> None:
        task = self._timers.pop((valve_id, kind), None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _expire(self, valve_id: int, kind: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timers.get((valve_id, kind)) is asyncio.current_task():
            self._timers.pop((valve_id, kind), None)
        logger.info("Valve %s: %s timer expired, switching OFF", valve_id, kind)
        try:
            await self.system_command(valve_id, ValveStatus.OFF, origin=CommandOrigin.SYSTEM)
        except ValveEngineError as exc:
            logger.error("Valve %s: %s timer OFF failed: %s", valve_id, kind, exc)

    def _notify(self, manifold_id: int) -> None:
        if self.fanout is not None:
            self.fanout.notify(manifold_id)
