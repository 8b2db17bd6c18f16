"""Command queue: one row per command sent to a manifold controller.

PENDING → SENT → ACKNOWLEDGED, or FAILED once dispatch retries are exhausted.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class CommandStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    FAILED = "FAILED"


class ValveCommand(Base):
    __tablename__ = "valve_commands"

    __table_args__ = (
        Index("ix_valve_commands_valve_issued", "valve_id", "issued_at"),
        Index("ix_valve_commands_status", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    command_id: Mapped[str] = mapped_column(String(36), unique=True)
    valve_id: Mapped[int] = mapped_column(ForeignKey("valves.id", ondelete="CASCADE"))
    manifold_id: Mapped[int] = mapped_column(ForeignKey("manifolds.id", ondelete="CASCADE"))
    valve_number: Mapped[int] = mapped_column()
    action: Mapped[str] = mapped_column(String(3))
    origin: Mapped[str] = mapped_column(String(20))
    status: Mapped[CommandStatus] = mapped_column(default=CommandStatus.PENDING)
    attempts: Mapped[int] = mapped_column(default=0)
    issued_at: Mapped[datetime] = mapped_column()
    sent_at: Mapped[datetime | None] = mapped_column(default=None)
    acknowledged_at: Mapped[datetime | None] = mapped_column(default=None)
    error_message: Mapped[str] = mapped_column(String(500), default="")
