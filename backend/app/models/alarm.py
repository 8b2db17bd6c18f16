"""Valve alarm rule (one per valve) and alarm occurrences.

An occurrence is raised when the rule fires and no unresolved occurrence
with the same rule key exists. THRESHOLD occurrences resolve themselves
when the condition clears; STATUS occurrences wait for an operator.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, TimestampMixin


class AlarmRuleType(str, enum.Enum):
    THRESHOLD = "THRESHOLD"
    STATUS = "STATUS"


class AlarmMetric(str, enum.Enum):
    pressure = "pressure"
    flow = "flow"
    runtime = "runtime"
    status = "status"


class AlarmSeverity(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


COMPARISON_OPERATORS = (">", "<", ">=", "<=", "==", "!=")


class ValveAlarmConfig(TimestampMixin, Base):
    __tablename__ = "valve_alarm_configs"

    id: Mapped[int] = mapped_column(primary_key=True)
    valve_id: Mapped[int] = mapped_column(
        ForeignKey("valves.id", ondelete="CASCADE"), unique=True
    )
    enabled: Mapped[bool] = mapped_column(default=False)
    rule_type: Mapped[AlarmRuleType] = mapped_column(default=AlarmRuleType.STATUS)
    metric: Mapped[AlarmMetric] = mapped_column(default=AlarmMetric.status)
    operator: Mapped[str] = mapped_column(String(2), default="==")
    threshold: Mapped[float | None] = mapped_column(default=None)
    trigger_status: Mapped[str | None] = mapped_column(String(10), default="FAULT")
    notify: Mapped[bool] = mapped_column(default=True)

    valve = relationship("Valve", back_populates="alarm_config")

    @property
    def rule_key(self) -> str:
        target = self.threshold if self.rule_type == AlarmRuleType.THRESHOLD else self.trigger_status
        return f"{self.rule_type.value}:{self.metric.value}:{self.operator}:{target}"


class ValveAlarm(Base):
    __tablename__ = "valve_alarms"

    __table_args__ = (
        Index("ix_valve_alarms_valve_timestamp", "valve_id", "timestamp"),
        Index("ix_valve_alarms_open", "valve_id", "rule_key", "resolved"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    alarm_id: Mapped[str] = mapped_column(String(36), unique=True)
    valve_id: Mapped[int] = mapped_column(ForeignKey("valves.id", ondelete="CASCADE"))
    rule_key: Mapped[str] = mapped_column(String(80))
    rule_type: Mapped[AlarmRuleType]
    severity: Mapped[AlarmSeverity] = mapped_column(default=AlarmSeverity.WARNING)
    message: Mapped[str] = mapped_column(String(500))
    value: Mapped[float | None] = mapped_column(default=None)
    timestamp: Mapped[datetime] = mapped_column()
    acknowledged: Mapped[bool] = mapped_column(default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(default=None)
    resolved: Mapped[bool] = mapped_column(default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(default=None)
    auto_resolved: Mapped[bool] = mapped_column(default=False)

    def __repr__(self) -> str:
        return f"<ValveAlarm {self.alarm_id} valve={self.valve_id} {self.rule_key}>"
