"""Valve Store: durable records for manifolds, valves, alarms, schedules,
commands and the event journal.

The state machine is the only caller that mutates valve operational data;
everything goes through short-lived sessions from the session factory.
Writes are retried on connection-level failures and raise StoreUnavailable
once retries are exhausted; each write is a single transaction, so a failed
write leaves nothing half-applied.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import and_, desc, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from config import settings
from core.clock import utcnow
from core.errors import DuplicateValve, StoreUnavailable
from models import (
    DEFAULT_SPECIFICATIONS,
    CommandStatus,
    Manifold,
    ManifoldStatus,
    Valve,
    ValveAlarm,
    ValveAlarmConfig,
    ValveCommand,
    ValveEvent,
    ValveSchedule,
)

logger = logging.getLogger("irrigation.store")

T = TypeVar("T")


class ValveStore:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        self.session_factory = session_factory
        self.retry_attempts = retry_attempts or settings.STORE_RETRY_ATTEMPTS
        self.retry_delay = settings.STORE_RETRY_DELAY if retry_delay is None else retry_delay

    async def _write(self, what: str, op: Callable[[AsyncSession], Awaitable[T]]) -> T:
        last_exc: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self.session_factory() as session:
                    result = await op(session)
                    await session.commit()
                    return result
            except (OperationalError, InterfaceError) as exc:
                last_exc = exc
                logger.warning(
                    "Store write '%s' failed (attempt %d/%d): %s",
                    what, attempt, self.retry_attempts, exc,
                )
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.retry_delay)
        raise StoreUnavailable(f"{what}: {last_exc}")

    # ------------------------------------------------------------------
    # Manifolds
    # ------------------------------------------------------------------

    async def create_manifold(
        self,
        *,
        code: str,
        name: str,
        location: str | None,
        valves: list[dict[str, Any]],
    ) -> Manifold:
        async def op(session: AsyncSession) -> int:
            manifold = Manifold(code=code, name=name, location=location)
            session.add(manifold)
            await session.flush()
            for entry in valves:
                session.add(Valve(
                    manifold_id=manifold.id,
                    valve_id=f"{code}-V{entry['valve_number']}",
                    valve_number=entry["valve_number"],
                    pin_number=entry["pin_number"],
                    zone=entry.get("zone") or "",
                    flow_order=entry.get("flow_order") or entry["valve_number"],
                    specifications={**DEFAULT_SPECIFICATIONS, **(entry.get("specifications") or {})},
                ))
            return manifold.id

        manifold_id = await self._write("create_manifold", op)
        return await self.get_manifold(manifold_id)

    async def get_manifold(self, manifold_id: int) -> Manifold | None:
        async with self.session_factory() as session:
            stmt = (
                select(Manifold)
                .where(and_(Manifold.id == manifold_id, Manifold.deleted_at.is_(None)))
                .options(selectinload(Manifold.valves))
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_manifold_by_code(self, code: str) -> Manifold | None:
        async with self.session_factory() as session:
            stmt = select(Manifold).where(
                and_(Manifold.code == code, Manifold.deleted_at.is_(None))
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_manifolds(self) -> list[Manifold]:
        async with self.session_factory() as session:
            stmt = (
                select(Manifold)
                .where(Manifold.deleted_at.is_(None))
                .order_by(Manifold.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def soft_delete_manifold(self, manifold_id: int) -> list[int]:
        """Soft-delete a manifold with its valves; disable schedules, resolve open alarms."""
        now = utcnow()

        async def op(session: AsyncSession) -> list[int]:
            result = await session.execute(
                select(Valve.id).where(
                    and_(Valve.manifold_id == manifold_id, Valve.deleted_at.is_(None))
                )
            )
            valve_ids = [row[0] for row in result.all()]
            await session.execute(
                update(Manifold).where(Manifold.id == manifold_id).values(deleted_at=now)
            )
            if valve_ids:
                await session.execute(
                    update(Valve).where(Valve.id.in_(valve_ids)).values(deleted_at=now)
                )
                await self._retire_valves(session, valve_ids, now)
            return valve_ids

        return await self._write("soft_delete_manifold", op)

    async def update_manifold_presence(
        self, manifold_id: int, status: ManifoldStatus, last_seen_at: datetime | None
    ) -> None:
        values: dict[str, Any] = {"status": status}
        if last_seen_at is not None:
            values["last_seen_at"] = last_seen_at

        async def op(session: AsyncSession) -> None:
            await session.execute(
                update(Manifold).where(Manifold.id == manifold_id).values(**values)
            )

        await self._write("update_manifold_presence", op)

    # ------------------------------------------------------------------
    # Valves
    # ------------------------------------------------------------------

    async def get_valve(self, valve_id: int) -> Valve | None:
        async with self.session_factory() as session:
            stmt = (
                select(Valve)
                .where(and_(Valve.id == valve_id, Valve.deleted_at.is_(None)))
                .options(selectinload(Valve.alarm_config), selectinload(Valve.manifold))
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_valve_by_number(self, manifold_id: int, valve_number: int) -> Valve | None:
        async with self.session_factory() as session:
            stmt = select(Valve).where(
                and_(
                    Valve.manifold_id == manifold_id,
                    Valve.valve_number == valve_number,
                    Valve.deleted_at.is_(None),
                )
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_valves(self, manifold_id: int) -> list[Valve]:
        async with self.session_factory() as session:
            stmt = (
                select(Valve)
                .where(and_(Valve.manifold_id == manifold_id, Valve.deleted_at.is_(None)))
                .order_by(Valve.valve_number)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def add_valve(self, manifold_id: int, code: str, fields: dict[str, Any]) -> Valve:
        """Fit a valve into a free slot of the manifold."""
        number = fields["valve_number"]

        async def op(session: AsyncSession) -> int:
            taken = (await session.execute(
                select(Valve.id).where(
                    and_(
                        Valve.manifold_id == manifold_id,
                        Valve.valve_number == number,
                        Valve.deleted_at.is_(None),
                    )
                )
            )).first()
            if taken is not None:
                raise DuplicateValve(f"Valve {number} already exists on manifold {code}")
            valve = Valve(
                manifold_id=manifold_id,
                valve_id=f"{code}-V{number}",
                valve_number=number,
                pin_number=fields["pin_number"],
                zone=fields.get("zone") or "",
                flow_order=fields.get("flow_order") or number,
                specifications={**DEFAULT_SPECIFICATIONS, **(fields.get("specifications") or {})},
            )
            session.add(valve)
            await session.flush()
            return valve.id

        valve_id = await self._write("add_valve", op)
        return await self.get_valve(valve_id)

    async def update_valve(self, valve_id: int, values: dict[str, Any]) -> Valve:
        """Descriptive fields only: pin, zone, flow order, specifications (merged)."""

        async def op(session: AsyncSession) -> None:
            valve = await session.get(Valve, valve_id)
            for field, value in values.items():
                if field == "specifications":
                    value = {**(valve.specifications or {}), **value}
                setattr(valve, field, value)

        await self._write("update_valve", op)
        return await self.get_valve(valve_id)

    async def soft_delete_valve(self, valve_id: int) -> None:
        now = utcnow()

        async def op(session: AsyncSession) -> None:
            await session.execute(update(Valve).where(Valve.id == valve_id).values(deleted_at=now))
            await self._retire_valves(session, [valve_id], now)

        await self._write("soft_delete_valve", op)

    @staticmethod
    async def _retire_valves(session: AsyncSession, valve_ids: list[int], now: datetime) -> None:
        """Deleted valves never fire schedules again and keep no open alarms."""
        await session.execute(
            update(ValveSchedule)
            .where(ValveSchedule.valve_id.in_(valve_ids))
            .values(enabled=False)
        )
        await session.execute(
            update(ValveAlarm)
            .where(and_(ValveAlarm.valve_id.in_(valve_ids), ValveAlarm.resolved == False))  # noqa: E712
            .values(resolved=True, resolved_at=now)
        )

    async def write_operational(
        self,
        valve_id: int,
        values: dict[str, Any],
        *,
        manifold_id: int | None = None,
        cycles_delta: int = 0,
    ) -> None:
        """Apply one operational-data update (and the manifold cycle counter) atomically."""

        async def op(session: AsyncSession) -> None:
            await session.execute(update(Valve).where(Valve.id == valve_id).values(**values))
            if cycles_delta and manifold_id is not None:
                await session.execute(
                    update(Manifold)
                    .where(Manifold.id == manifold_id)
                    .values(total_cycles=Manifold.total_cycles + cycles_delta)
                )

        await self._write("write_operational", op)

    # ------------------------------------------------------------------
    # Alarm config + alarms
    # ------------------------------------------------------------------

    async def get_alarm_config(self, valve_id: int) -> ValveAlarmConfig | None:
        async with self.session_factory() as session:
            stmt = select(ValveAlarmConfig).where(ValveAlarmConfig.valve_id == valve_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def replace_alarm_config(self, valve_id: int, fields: dict[str, Any]) -> ValveAlarmConfig:
        async def op(session: AsyncSession) -> ValveAlarmConfig:
            stmt = select(ValveAlarmConfig).where(ValveAlarmConfig.valve_id == valve_id)
            config = (await session.execute(stmt)).scalar_one_or_none()
            if config is None:
                config = ValveAlarmConfig(valve_id=valve_id)
                session.add(config)
            for field, value in fields.items():
                setattr(config, field, value)
            await session.flush()
            return config

        return await self._write("replace_alarm_config", op)

    async def insert_alarm(self, **fields: Any) -> ValveAlarm:
        async def op(session: AsyncSession) -> ValveAlarm:
            alarm = ValveAlarm(alarm_id=str(uuid.uuid4()), **fields)
            session.add(alarm)
            await session.flush()
            return alarm

        return await self._write("insert_alarm", op)

    async def find_open_alarm(self, valve_id: int, rule_key: str) -> ValveAlarm | None:
        async with self.session_factory() as session:
            stmt = (
                select(ValveAlarm)
                .where(
                    and_(
                        ValveAlarm.valve_id == valve_id,
                        ValveAlarm.rule_key == rule_key,
                        ValveAlarm.resolved == False,  # noqa: E712
                    )
                )
                .order_by(desc(ValveAlarm.timestamp))
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_alarm(self, valve_id: int, alarm_id: str) -> ValveAlarm | None:
        async with self.session_factory() as session:
            stmt = select(ValveAlarm).where(
                and_(ValveAlarm.valve_id == valve_id, ValveAlarm.alarm_id == alarm_id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def last_alarm_timestamp(self, valve_id: int) -> datetime | None:
        async with self.session_factory() as session:
            stmt = (
                select(ValveAlarm.timestamp)
                .where(ValveAlarm.valve_id == valve_id)
                .order_by(desc(ValveAlarm.timestamp))
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_alarms(
        self,
        valve_id: int,
        *,
        acknowledged: bool | None = None,
        resolved: bool | None = None,
    ) -> list[ValveAlarm]:
        async with self.session_factory() as session:
            conditions = [ValveAlarm.valve_id == valve_id]
            if acknowledged is not None:
                conditions.append(ValveAlarm.acknowledged == acknowledged)
            if resolved is not None:
                conditions.append(ValveAlarm.resolved == resolved)
            stmt = select(ValveAlarm).where(and_(*conditions)).order_by(ValveAlarm.timestamp)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_alarm(self, alarm_pk: int, values: dict[str, Any]) -> ValveAlarm:
        async def op(session: AsyncSession) -> ValveAlarm:
            await session.execute(update(ValveAlarm).where(ValveAlarm.id == alarm_pk).values(**values))
            return await session.get(ValveAlarm, alarm_pk, populate_existing=True)

        return await self._write("update_alarm", op)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def create_schedule(self, valve_id: int, fields: dict[str, Any]) -> ValveSchedule:
        async def op(session: AsyncSession) -> ValveSchedule:
            schedule = ValveSchedule(schedule_id=str(uuid.uuid4()), valve_id=valve_id, **fields)
            session.add(schedule)
            await session.flush()
            await session.refresh(schedule)
            return schedule

        return await self._write("create_schedule", op)

    async def get_schedule(self, valve_id: int, schedule_id: str) -> ValveSchedule | None:
        async with self.session_factory() as session:
            stmt = select(ValveSchedule).where(
                and_(ValveSchedule.valve_id == valve_id, ValveSchedule.schedule_id == schedule_id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def update_schedule(self, schedule_pk: int, values: dict[str, Any]) -> ValveSchedule:
        async def op(session: AsyncSession) -> ValveSchedule:
            await session.execute(
                update(ValveSchedule).where(ValveSchedule.id == schedule_pk).values(**values)
            )
            return await session.get(ValveSchedule, schedule_pk, populate_existing=True)

        return await self._write("update_schedule", op)

    async def delete_schedule(self, schedule_pk: int) -> None:
        async def op(session: AsyncSession) -> None:
            schedule = await session.get(ValveSchedule, schedule_pk)
            if schedule is not None:
                await session.delete(schedule)

        await self._write("delete_schedule", op)

    async def list_schedules(self, valve_id: int) -> list[ValveSchedule]:
        async with self.session_factory() as session:
            stmt = (
                select(ValveSchedule)
                .where(ValveSchedule.valve_id == valve_id)
                .order_by(ValveSchedule.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_active_schedules(self) -> list[ValveSchedule]:
        """Enabled schedules of valves that are not deleted."""
        async with self.session_factory() as session:
            stmt = (
                select(ValveSchedule)
                .join(Valve, Valve.id == ValveSchedule.valve_id)
                .where(
                    and_(
                        ValveSchedule.enabled == True,  # noqa: E712
                        Valve.deleted_at.is_(None),
                    )
                )
                .order_by(ValveSchedule.valve_id, ValveSchedule.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_command(self, **fields: Any) -> ValveCommand:
        async def op(session: AsyncSession) -> ValveCommand:
            command = ValveCommand(command_id=str(uuid.uuid4()), issued_at=utcnow(), **fields)
            session.add(command)
            await session.flush()
            return command

        return await self._write("create_command", op)

    async def update_command(
        self,
        command_id: str,
        values: dict[str, Any],
        *,
        only_from: tuple[CommandStatus, ...] | None = None,
    ) -> None:
        """Update a command row; with only_from, only while its status is one of those."""
        async def op(session: AsyncSession) -> None:
            stmt = update(ValveCommand).where(ValveCommand.command_id == command_id)
            if only_from is not None:
                stmt = stmt.where(ValveCommand.status.in_(only_from))
            await session.execute(stmt.values(**values))

        await self._write("update_command", op)

    async def get_command(self, command_id: str) -> ValveCommand | None:
        async with self.session_factory() as session:
            stmt = select(ValveCommand).where(ValveCommand.command_id == command_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def command_history(self, valve_id: int, limit: int = 50) -> list[ValveCommand]:
        async with self.session_factory() as session:
            stmt = (
                select(ValveCommand)
                .where(ValveCommand.valve_id == valve_id)
                .order_by(desc(ValveCommand.issued_at), desc(ValveCommand.id))
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Event journal
    # ------------------------------------------------------------------

    async def add_event(
        self,
        *,
        manifold_id: int,
        category: str,
        event_code: str,
        message: str,
        valve_id: int | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
        details: dict | None = None,
    ) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(ValveEvent(
                manifold_id=manifold_id,
                valve_id=valve_id,
                category=category,
                event_code=event_code,
                message=message[:300],
                old_value=old_value,
                new_value=new_value,
                details=details,
                created_at=utcnow(),
            ))

        try:
            await self._write("add_event", op)
        except StoreUnavailable as exc:
            # Journal entries are best-effort.
            logger.warning("Failed to journal event %s: %s", event_code, exc)

    async def list_events(
        self,
        *,
        valve_id: int | None = None,
        manifold_id: int | None = None,
        categories: list[str] | None = None,
        last_hours: float | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ValveEvent]:
        conditions = []
        if valve_id is not None:
            conditions.append(ValveEvent.valve_id == valve_id)
        if manifold_id is not None:
            conditions.append(ValveEvent.manifold_id == manifold_id)
        if categories:
            conditions.append(ValveEvent.category.in_(categories))
        if last_hours is not None:
            conditions.append(ValveEvent.created_at >= utcnow() - timedelta(hours=last_hours))

        async with self.session_factory() as session:
            stmt = select(ValveEvent)
            if conditions:
                stmt = stmt.where(and_(*conditions))
            stmt = stmt.order_by(desc(ValveEvent.created_at), desc(ValveEvent.id)).offset(offset).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Snapshot read
    # ------------------------------------------------------------------

    async def load_manifold_detail(
        self, manifold_id: int
    ) -> tuple[Manifold, list[Valve], dict[int, list[ValveAlarm]], dict[int, list[ValveSchedule]]] | None:
        """Manifold + valves + open alarms + schedules, read in one session."""
        async with self.session_factory() as session:
            manifold = (await session.execute(
                select(Manifold).where(
                    and_(Manifold.id == manifold_id, Manifold.deleted_at.is_(None))
                )
            )).scalar_one_or_none()
            if manifold is None:
                return None

            valves = list((await session.execute(
                select(Valve)
                .where(and_(Valve.manifold_id == manifold_id, Valve.deleted_at.is_(None)))
                .order_by(Valve.valve_number)
            )).scalars().all())
            valve_ids = [v.id for v in valves]

            alarms: dict[int, list[ValveAlarm]] = defaultdict(list)
            schedules: dict[int, list[ValveSchedule]] = defaultdict(list)
            if valve_ids:
                alarm_rows = (await session.execute(
                    select(ValveAlarm)
                    .where(and_(ValveAlarm.valve_id.in_(valve_ids), ValveAlarm.resolved == False))  # noqa: E712
                    .order_by(ValveAlarm.timestamp)
                )).scalars().all()
                for alarm in alarm_rows:
                    alarms[alarm.valve_id].append(alarm)

                schedule_rows = (await session.execute(
                    select(ValveSchedule)
                    .where(ValveSchedule.valve_id.in_(valve_ids))
                    .order_by(ValveSchedule.id)
                )).scalars().all()
                for schedule in schedule_rows:
                    schedules[schedule.valve_id].append(schedule)

            return manifold, valves, alarms, schedules
