"""Irrigation schedules: absolute one-shot window or recurring cron."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class ValveSchedule(TimestampMixin, Base):
    __tablename__ = "valve_schedules"

    __table_args__ = (
        Index("ix_valve_schedules_valve_enabled", "valve_id", "enabled"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    schedule_id: Mapped[str] = mapped_column(String(36), unique=True)
    valve_id: Mapped[int] = mapped_column(ForeignKey("valves.id", ondelete="CASCADE"))
    enabled: Mapped[bool] = mapped_column(default=True)
    action: Mapped[str] = mapped_column(String(3))          # ON / OFF
    duration: Mapped[int] = mapped_column(default=0)        # seconds, 0 = indefinite
    start_at: Mapped[datetime | None] = mapped_column(default=None)
    end_at: Mapped[datetime | None] = mapped_column(default=None)
    cron_expression: Mapped[str | None] = mapped_column(String(100), default=None)

    # Scheduler bookkeeping. anchor_at is where cron catch-up starts from
    # until the first firing; it moves forward whenever timing is edited.
    anchor_at: Mapped[datetime | None] = mapped_column(default=None)
    last_fired_at: Mapped[datetime | None] = mapped_column(default=None)
    last_ended_at: Mapped[datetime | None] = mapped_column(default=None)

    @property
    def is_cron(self) -> bool:
        return bool(self.cron_expression)

    def __repr__(self) -> str:
        when = self.cron_expression or f"{self.start_at}..{self.end_at}"
        return f"<ValveSchedule {self.schedule_id} {self.action} {when}>"
