from models.base import Base, SoftDeleteMixin, TimestampMixin, async_session, engine, init_models
from models.manifold import Manifold, ManifoldStatus
from models.valve import DEFAULT_SPECIFICATIONS, CommandAction, CommandOrigin, Valve, ValveMode, ValveStatus
from models.alarm import (
    COMPARISON_OPERATORS,
    AlarmMetric,
    AlarmRuleType,
    AlarmSeverity,
    ValveAlarm,
    ValveAlarmConfig,
)
from models.schedule import ValveSchedule
from models.valve_command import CommandStatus, ValveCommand
from models.valve_event import ValveEvent

__all__ = [
    "Base",
    "async_session",
    "engine",
    "SoftDeleteMixin",
    "TimestampMixin",
    "init_models",
    "Manifold",
    "ManifoldStatus",
    "DEFAULT_SPECIFICATIONS",
    "Valve",
    "ValveStatus",
    "ValveMode",
    "CommandAction",
    "CommandOrigin",
    "COMPARISON_OPERATORS",
    "AlarmMetric",
    "AlarmRuleType",
    "AlarmSeverity",
    "ValveAlarm",
    "ValveAlarmConfig",
    "ValveSchedule",
    "CommandStatus",
    "ValveCommand",
    "ValveEvent",
]
