import enum
from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, SoftDeleteMixin, TimestampMixin


class ManifoldStatus(str, enum.Enum):
    ACTIVE = "Active"
    MAINTENANCE = "Maintenance"
    OFFLINE = "Offline"
    FAULT = "Fault"


class Manifold(SoftDeleteMixin, TimestampMixin, Base):
    __tablename__ = "manifolds"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(40), unique=True)  # "MANIFOLD-27", used in device topics
    name: Mapped[str] = mapped_column(String(100))
    location: Mapped[str | None] = mapped_column(String(200), default=None)
    status: Mapped[ManifoldStatus] = mapped_column(default=ManifoldStatus.OFFLINE)
    total_cycles: Mapped[int] = mapped_column(default=0)
    last_seen_at: Mapped[datetime | None] = mapped_column(default=None)

    # Live valves only; soft-deleted ones stay reachable through their own rows.
    valves = relationship(
        "Valve",
        primaryjoin="and_(Manifold.id == Valve.manifold_id, Valve.deleted_at.is_(None))",
        order_by="Valve.valve_number",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<Manifold {self.code} ({self.name})>"
