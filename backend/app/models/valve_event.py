"""Valve event journal: operator actions, device transitions, system events.

Categories: OPERATOR, SCHEDULER, DEVICE, ALARM, SYSTEM.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class ValveEvent(Base):
    __tablename__ = "valve_events"

    __table_args__ = (
        Index("ix_valve_events_valve_created", "valve_id", "created_at"),
        Index("ix_valve_events_category", "category"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    valve_id: Mapped[int | None] = mapped_column(
        ForeignKey("valves.id", ondelete="CASCADE"), default=None
    )
    manifold_id: Mapped[int] = mapped_column(ForeignKey("manifolds.id", ondelete="CASCADE"))
    category: Mapped[str] = mapped_column(String(20))
    event_code: Mapped[str] = mapped_column(String(40))   # cmd_on, mode_auto, report_fault, dispatch_failed, offline...
    message: Mapped[str] = mapped_column(String(300))
    old_value: Mapped[str | None] = mapped_column(String(60), default=None)
    new_value: Mapped[str | None] = mapped_column(String(60), default=None)
    details: Mapped[dict | None] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column()
