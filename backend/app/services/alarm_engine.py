"""Alarm Engine: evaluates each valve's alarm rule.

Inputs are telemetry samples (THRESHOLD rules) and status transitions
(STATUS rules, plus a re-check of THRESHOLD rules against the latest
cached sample). At most one unresolved occurrence exists per rule key:
while the condition keeps holding nothing new is raised. THRESHOLD
occurrences auto-resolve when the condition clears; STATUS occurrences
stay until an operator resolves them.

Evaluation for one valve runs under that valve's lock. Status-driven
evaluation is invoked by the state machine, which already holds it.
"""

from __future__ import annotations

import json
import logging
import operator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from redis.asyncio import Redis

from core.clock import utcnow
from core.errors import InvalidAlarmConfig, UnknownAlarm, UnknownValve
from models import (
    COMPARISON_OPERATORS,
    AlarmMetric,
    AlarmRuleType,
    AlarmSeverity,
    ValveAlarm,
    ValveAlarmConfig,
    ValveStatus,
)
from services.valve_store import ValveStore

if TYPE_CHECKING:
    from services.fanout import SnapshotFanout
    from services.state_machine import ValveLocks

logger = logging.getLogger("irrigation.alarms")

NOTIFY_CHANNEL = "alarms:notifications"

_OPS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

THRESHOLD_METRICS = (AlarmMetric.pressure, AlarmMetric.flow, AlarmMetric.runtime)
STATUS_TRIGGERS = (ValveStatus.FAULT.value, ValveStatus.OFF.value)

DEFAULT_ALARM_CONFIG: dict[str, Any] = {
    "enabled": False,
    "rule_type": AlarmRuleType.STATUS.value,
    "metric": AlarmMetric.status.value,
    "operator": "==",
    "threshold": None,
    "trigger_status": ValveStatus.FAULT.value,
    "notify": True,
}


class AlarmSubject(Protocol):
    id: int
    valve_id: str
    manifold_id: int


def compare(left: Any, op: str, right: Any) -> bool:
    return _OPS[op](left, right)


def validate_alarm_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Normalise a full rule definition or raise InvalidAlarmConfig."""
    try:
        rule_type = AlarmRuleType(fields.get("rule_type"))
    except ValueError:
        raise InvalidAlarmConfig(f"Unknown rule type: {fields.get('rule_type')!r}")
    try:
        metric = AlarmMetric(fields.get("metric"))
    except ValueError:
        raise InvalidAlarmConfig(f"Unknown metric: {fields.get('metric')!r}")

    op = fields.get("operator")
    if op not in COMPARISON_OPERATORS:
        raise InvalidAlarmConfig(f"Unknown comparison operator: {op!r}")

    result: dict[str, Any] = {
        "enabled": bool(fields.get("enabled")),
        "rule_type": rule_type,
        "metric": metric,
        "operator": op,
        "notify": bool(fields.get("notify", True)),
        "threshold": None,
        "trigger_status": None,
    }

    if rule_type == AlarmRuleType.THRESHOLD:
        if metric not in THRESHOLD_METRICS:
            raise InvalidAlarmConfig(f"THRESHOLD rules need a numeric metric, got '{metric.value}'")
        threshold = fields.get("threshold")
        if threshold is None:
            raise InvalidAlarmConfig("THRESHOLD rules need a threshold")
        try:
            result["threshold"] = float(threshold)
        except (TypeError, ValueError):
            raise InvalidAlarmConfig(f"Threshold is not a number: {threshold!r}")
    else:
        if metric != AlarmMetric.status:
            raise InvalidAlarmConfig("STATUS rules watch the 'status' metric")
        if op not in ("==", "!="):
            raise InvalidAlarmConfig("STATUS rules support only '==' and '!='")
        trigger = str(fields.get("trigger_status") or "").upper()
        if trigger not in STATUS_TRIGGERS:
            raise InvalidAlarmConfig(f"Trigger status must be one of {STATUS_TRIGGERS}")
        result["trigger_status"] = trigger
    return result


def severity_for(config: ValveAlarmConfig) -> AlarmSeverity:
    if config.rule_type == AlarmRuleType.STATUS and config.trigger_status == ValveStatus.FAULT.value:
        return AlarmSeverity.CRITICAL
    return AlarmSeverity.WARNING


class AlarmEngine:

    def __init__(self, store: ValveStore, locks: ValveLocks, *, redis: Redis | None = None):
        self.store = store
        self.locks = locks
        self.redis = redis
        self.fanout: SnapshotFanout | None = None
        self._latest: dict[tuple[int, str], float] = {}
        self._last_ts: dict[int, datetime] = {}

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def ingest_telemetry(
        self, valve_id: int, metric: AlarmMetric | str, value: float
    ) -> ValveAlarm | None:
        metric = AlarmMetric(metric)
        value = float(value)
        async with self.locks(valve_id):
            valve = await self.store.get_valve(valve_id)
            if valve is None:
                raise UnknownValve(f"Valve {valve_id} not found")
            self._latest[(valve_id, metric.value)] = value
            config = valve.alarm_config
            if (
                config is None
                or not config.enabled
                or config.rule_type != AlarmRuleType.THRESHOLD
                or config.metric != metric
            ):
                return None
            return await self._apply(
                config, valve, compare(value, config.operator, config.threshold), value,
            )

    async def evaluate_status(self, subject: AlarmSubject, status: ValveStatus) -> ValveAlarm | None:
        """Re-evaluate after a status transition. Caller holds the valve lock."""
        config = await self.store.get_alarm_config(subject.id)
        if config is None or not config.enabled:
            return None
        return await self._evaluate(config, subject, status)

    async def _evaluate(
        self, config: ValveAlarmConfig, subject: AlarmSubject, status: ValveStatus
    ) -> ValveAlarm | None:
        if config.rule_type == AlarmRuleType.STATUS:
            condition = compare(status.value, config.operator, config.trigger_status)
            return await self._apply(config, subject, condition, None, observed=status.value)
        value = self._latest.get((subject.id, config.metric.value))
        if value is None:
            return None
        return await self._apply(config, subject, compare(value, config.operator, config.threshold), value)

    # ------------------------------------------------------------------
    # Raise / auto-resolve
    # ------------------------------------------------------------------

    async def _apply(
        self,
        config: ValveAlarmConfig,
        subject: AlarmSubject,
        condition: bool,
        value: float | None,
        *,
        observed: str | None = None,
    ) -> ValveAlarm | None:
        key = config.rule_key
        open_alarm = await self.store.find_open_alarm(subject.id, key)

        if condition:
            if open_alarm is not None:
                return None
            if config.rule_type == AlarmRuleType.STATUS:
                message = f"Valve {subject.valve_id} reported {observed}"
            else:
                message = (
                    f"Valve {subject.valve_id}: {config.metric.value} {value:g} "
                    f"{config.operator} {config.threshold:g}"
                )
            alarm = await self.store.insert_alarm(
                valve_id=subject.id,
                rule_key=key,
                rule_type=config.rule_type,
                severity=severity_for(config),
                message=message,
                value=value,
                timestamp=await self._next_timestamp(subject.id),
            )
            logger.warning("ALARM [%s] %s", alarm.severity.value, message)
            await self.store.add_event(
                manifold_id=subject.manifold_id,
                valve_id=subject.id,
                category="ALARM",
                event_code="alarm_raised",
                message=message,
                new_value=observed if value is None else f"{value:g}",
                details={"alarm_id": alarm.alarm_id, "rule_key": key},
            )
            if config.notify:
                await self._publish_notification(subject, alarm)
            self._notify(subject.manifold_id)
            return alarm

        if open_alarm is not None and open_alarm.rule_type == AlarmRuleType.THRESHOLD:
            await self.store.update_alarm(open_alarm.id, {
                "resolved": True,
                "resolved_at": utcnow(),
                "auto_resolved": True,
            })
            logger.info("Alarm cleared on valve %s: %s", subject.valve_id, key)
            await self.store.add_event(
                manifold_id=subject.manifold_id,
                valve_id=subject.id,
                category="ALARM",
                event_code="alarm_cleared",
                message=f"Condition cleared: {open_alarm.message}",
                details={"alarm_id": open_alarm.alarm_id, "rule_key": key},
            )
            self._notify(subject.manifold_id)
        return None

    async def _next_timestamp(self, valve_id: int) -> datetime:
        last = self._last_ts.get(valve_id)
        if last is None:
            last = await self.store.last_alarm_timestamp(valve_id)
        ts = utcnow()
        if last is not None and ts <= last:
            ts = last + timedelta(microseconds=1)
        self._last_ts[valve_id] = ts
        return ts

    async def _publish_notification(self, subject: AlarmSubject, alarm: ValveAlarm) -> None:
        if self.redis is None:
            return
        payload = {
            "type": "alarm",
            "alarm_id": alarm.alarm_id,
            "valve_id": subject.valve_id,
            "manifold_id": subject.manifold_id,
            "severity": alarm.severity.value,
            "message": alarm.message,
            "timestamp": alarm.timestamp.isoformat(),
        }
        try:
            await self.redis.publish(NOTIFY_CHANNEL, json.dumps(payload))
        except Exception as exc:
            logger.warning("Failed to publish alarm notification: %s", exc)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def update_config(self, valve_id: int, changes: dict[str, Any]) -> ValveAlarmConfig:
        """Replace the valve's rule atomically, then evaluate it right away."""
        async with self.locks(valve_id):
            valve = await self.store.get_valve(valve_id)
            if valve is None:
                raise UnknownValve(f"Valve {valve_id} not found")

            merged = dict(DEFAULT_ALARM_CONFIG)
            current = valve.alarm_config
            if current is not None:
                merged.update({
                    "enabled": current.enabled,
                    "rule_type": current.rule_type.value,
                    "metric": current.metric.value,
                    "operator": current.operator,
                    "threshold": current.threshold,
                    "trigger_status": current.trigger_status,
                    "notify": current.notify,
                })
            merged.update({k: v for k, v in changes.items()})
            config = await self.store.replace_alarm_config(valve_id, validate_alarm_config(merged))

            # A THRESHOLD occurrence under a rule key that no longer exists can never clear.
            for alarm in await self.store.list_alarms(valve_id, resolved=False):
                if alarm.rule_type == AlarmRuleType.THRESHOLD and alarm.rule_key != config.rule_key:
                    await self.store.update_alarm(alarm.id, {
                        "resolved": True,
                        "resolved_at": utcnow(),
                        "auto_resolved": True,
                    })

            logger.info("Alarm rule for valve %s set to %s", valve.valve_id, config.rule_key)
            if config.enabled:
                await self._evaluate(config, valve, ValveStatus(valve.current_status))
            self._notify(valve.manifold_id)
            return config

    async def acknowledge_alarm(self, valve_id: int, alarm_id: str) -> ValveAlarm:
        async with self.locks(valve_id):
            valve, alarm = await self._find(valve_id, alarm_id)
            if alarm.acknowledged:
                return alarm
            alarm = await self.store.update_alarm(alarm.id, {
                "acknowledged": True,
                "acknowledged_at": utcnow(),
            })
            logger.info("Alarm %s acknowledged", alarm_id)
            self._notify(valve.manifold_id)
            return alarm

    async def resolve_alarm(self, valve_id: int, alarm_id: str) -> ValveAlarm:
        """Resolving also acknowledges."""
        async with self.locks(valve_id):
            valve, alarm = await self._find(valve_id, alarm_id)
            if alarm.resolved:
                return alarm
            now = utcnow()
            values: dict[str, Any] = {"resolved": True, "resolved_at": now}
            if not alarm.acknowledged:
                values.update(acknowledged=True, acknowledged_at=now)
            alarm = await self.store.update_alarm(alarm.id, values)
            logger.info("Alarm %s resolved by operator", alarm_id)
            await self.store.add_event(
                manifold_id=valve.manifold_id,
                valve_id=valve.id,
                category="OPERATOR",
                event_code="alarm_resolved",
                message=f"Resolved: {alarm.message}",
                details={"alarm_id": alarm_id},
            )
            self._notify(valve.manifold_id)
            return alarm

    async def _find(self, valve_id: int, alarm_id: str):
        valve = await self.store.get_valve(valve_id)
        if valve is None:
            raise UnknownValve(f"Valve {valve_id} not found")
        alarm = await self.store.get_alarm(valve_id, alarm_id)
        if alarm is None:
            raise UnknownAlarm(f"Alarm {alarm_id} not found on valve {valve_id}")
        return valve, alarm

    def forget_valves(self, valve_ids: list[int]) -> None:
        for valve_id in valve_ids:
            self._last_ts.pop(valve_id, None)
        self._latest = {k: v for k, v in self._latest.items() if k[0] not in set(valve_ids)}

    def _notify(self, manifold_id: int) -> None:
        if self.fanout is not None:
            self.fanout.notify(manifold_id)
