import enum
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, SoftDeleteMixin, TimestampMixin


class ValveStatus(str, enum.Enum):
    ON = "ON"
    OFF = "OFF"
    FAULT = "FAULT"


class ValveMode(str, enum.Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class CommandAction(str, enum.Enum):
    ON = "ON"
    OFF = "OFF"
    PULSE = "PULSE"  # operator-only; dispatched to the device as ON + timed OFF


class CommandOrigin(str, enum.Enum):
    OPERATOR = "OPERATOR"
    SCHEDULER = "SCHEDULER"
    SYSTEM = "SYSTEM"   # auto-off timer, pulse release
    PULSE = "PULSE"


DEFAULT_SPECIFICATIONS = {
    "type": "Electric ON/OFF Valve with DC Latch",
    "size": "2 inch",
    "voltage": "24V DC",
    "manufacturer": "",
    "model": "",
    "serial_number": "",
}


class Valve(SoftDeleteMixin, TimestampMixin, Base):
    __tablename__ = "valves"

    # Numbers and labels are unique among live valves; a deleted slot can be refitted.
    __table_args__ = (
        Index(
            "uq_valves_manifold_number_live", "manifold_id", "valve_number", unique=True,
            postgresql_where=text("deleted_at IS NULL"), sqlite_where=text("deleted_at IS NULL"),
        ),
        Index(
            "uq_valves_valve_id_live", "valve_id", unique=True,
            postgresql_where=text("deleted_at IS NULL"), sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_valves_current_status", "current_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    valve_id: Mapped[str] = mapped_column(String(60))  # "MANIFOLD-27-V1"
    manifold_id: Mapped[int] = mapped_column(ForeignKey("manifolds.id", ondelete="CASCADE"))
    valve_number: Mapped[int] = mapped_column()
    pin_number: Mapped[int] = mapped_column()  # ESP32 GPIO 0..39
    zone: Mapped[str] = mapped_column(String(100), default="")
    flow_order: Mapped[int] = mapped_column(default=1)
    specifications: Mapped[dict] = mapped_column(JSON, default=lambda: dict(DEFAULT_SPECIFICATIONS))

    # Operational data, written by the state machine only
    current_status: Mapped[ValveStatus] = mapped_column(default=ValveStatus.OFF)
    mode: Mapped[ValveMode] = mapped_column(default=ValveMode.MANUAL)
    cycle_count: Mapped[int] = mapped_column(default=0)
    total_runtime_sec: Mapped[float] = mapped_column(default=0.0)
    auto_off_duration_sec: Mapped[int] = mapped_column(default=0)  # 0 = disabled
    last_command_action: Mapped[str | None] = mapped_column(String(10), default=None)
    last_command_origin: Mapped[str | None] = mapped_column(String(20), default=None)
    last_command_at: Mapped[datetime | None] = mapped_column(default=None)
    last_report_at: Mapped[datetime | None] = mapped_column(default=None)
    last_on_at: Mapped[datetime | None] = mapped_column(default=None)

    manifold = relationship("Manifold")
    alarm_config = relationship(
        "ValveAlarmConfig",
        back_populates="valve",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Valve {self.valve_id} {self.current_status.value}/{self.mode.value}>"
