from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from api.deps import engine_errors, get_engine
from models import ManifoldStatus, ValveMode, ValveStatus
from services.engine import ValveEngine

router = APIRouter(prefix="/api/manifolds", tags=["manifolds"])


# --- Schemas ---

class ValveSpec(BaseModel):
    valve_number: int = Field(ge=1, le=4)
    pin_number: int = Field(ge=0, le=39)
    zone: str | None = None
    flow_order: int | None = None


class ManifoldCreate(BaseModel):
    code: str = Field(pattern=r"^[A-Za-z0-9_-]{1,40}$")
    name: str = Field(min_length=1, max_length=100)
    location: str | None = None
    valves: list[ValveSpec] | None = Field(default=None, min_length=1, max_length=4)


class ValveOut(BaseModel):
    id: int
    valve_id: str
    valve_number: int
    pin_number: int
    zone: str
    flow_order: int
    specifications: dict | None = None
    current_status: ValveStatus
    mode: ValveMode
    cycle_count: int
    auto_off_duration_sec: int

    model_config = {"from_attributes": True}


class ManifoldOut(BaseModel):
    id: int
    code: str
    name: str
    location: str | None
    status: ManifoldStatus
    total_cycles: int
    last_seen_at: datetime | None

    model_config = {"from_attributes": True}


class ManifoldDetail(ManifoldOut):
    valves: list[ValveOut] = []


# --- Endpoints ---

@router.get("", response_model=list[ManifoldOut])
async def list_manifolds(engine: ValveEngine = Depends(get_engine)):
    return await engine.list_manifolds()


@router.post("", response_model=ManifoldDetail, status_code=201)
async def create_manifold(data: ManifoldCreate, engine: ValveEngine = Depends(get_engine)):
    valves = [v.model_dump() for v in data.valves] if data.valves is not None else None
    with engine_errors():
        try:
            return await engine.create_manifold(data.code, data.name, data.location, valves)
        except IntegrityError:
            raise HTTPException(409, f"Manifold code '{data.code}' already exists")


@router.get("/{manifold_id}", response_model=ManifoldDetail)
async def get_manifold(manifold_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.get_manifold(manifold_id)


@router.delete("/{manifold_id}", status_code=204)
async def delete_manifold(manifold_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        await engine.delete_manifold(manifold_id)
    return Response(status_code=204)


@router.get("/{manifold_id}/snapshot")
async def get_manifold_snapshot(manifold_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.get_manifold_snapshot(manifold_id)
