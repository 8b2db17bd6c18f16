"""REST API for the valve event journal."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_engine
from services.engine import ValveEngine

router = APIRouter(prefix="/api/events", tags=["events"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class ValveEventOut(BaseModel):
    id: int
    manifold_id: int
    valve_id: int | None = None
    category: str
    event_code: str
    message: str
    old_value: str | None = None
    new_value: str | None = None
    details: dict | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("", response_model=list[ValveEventOut])
async def get_events(
    manifold_id: Optional[int] = Query(None),
    valve_id: Optional[int] = Query(None),
    category: Optional[str] = Query(None, description="Comma-separated categories: OPERATOR,SCHEDULER,DEVICE,ALARM,SYSTEM"),
    last_hours: Optional[float] = Query(None),
    limit: int = Query(50, le=500),
    offset: int = Query(0),
    engine: ValveEngine = Depends(get_engine),
) -> list[ValveEventOut]:
    """Return events with filtering and pagination."""
    cats = None
    if category is not None:
        cats = [c.strip().upper() for c in category.split(",") if c.strip()] or None

    return await engine.store.list_events(
        valve_id=valve_id,
        manifold_id=manifold_id,
        categories=cats,
        last_hours=last_hours,
        limit=limit,
        offset=offset,
    )


@router.get("/latest", response_model=list[ValveEventOut])
async def get_latest_events(
    manifold_id: Optional[int] = Query(None),
    limit: int = Query(30, le=100),
    engine: ValveEngine = Depends(get_engine),
) -> list[ValveEventOut]:
    """Return latest events for the monitoring widget (no time filter, just last N)."""
    return await engine.store.list_events(manifold_id=manifold_id, limit=limit)
