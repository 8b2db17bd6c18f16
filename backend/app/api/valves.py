"""Valves API: valve records, operator commands, mode/timer, alarm rule, alarms, schedules."""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from api.deps import engine_errors, get_engine
from models import AlarmMetric, AlarmRuleType, AlarmSeverity, CommandAction, CommandStatus, ValveMode
from services.engine import ValveEngine

router = APIRouter(prefix="/api/valves", tags=["valves"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class ValveSpecifications(BaseModel):
    type: str | None = None
    size: str | None = None
    voltage: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None


class ValveCreate(BaseModel):
    manifold_id: int
    valve_number: int = Field(ge=1, le=4)
    pin_number: int = Field(ge=0, le=39)
    zone: str | None = None
    flow_order: int | None = Field(None, ge=1)
    specifications: ValveSpecifications | None = None


class ValveUpdate(BaseModel):
    pin_number: int | None = Field(None, ge=0, le=39)
    zone: str | None = None
    flow_order: int | None = Field(None, ge=1)
    specifications: ValveSpecifications | None = None


class ValveRecordOut(BaseModel):
    id: int
    valve_id: str
    manifold_id: int
    valve_number: int
    pin_number: int
    zone: str
    flow_order: int
    specifications: dict
    mode: ValveMode
    auto_off_duration_sec: int

    model_config = {"from_attributes": True}


class CommandRequest(BaseModel):
    action: CommandAction


class CommandResponse(BaseModel):
    accepted: bool
    command_id: str | None = None
    status: str | None = None
    reason: str | None = None


class ModeUpdate(BaseModel):
    mode: ValveMode


class TimerUpdate(BaseModel):
    auto_off_duration_sec: int = Field(ge=0, le=86400)


class AlarmConfigUpdate(BaseModel):
    enabled: bool | None = None
    rule_type: AlarmRuleType | None = None
    metric: AlarmMetric | None = None
    operator: Literal[">", "<", ">=", "<=", "==", "!="] | None = None
    threshold: float | None = None
    trigger_status: Literal["FAULT", "OFF"] | None = None
    notify: bool | None = None


class AlarmConfigOut(BaseModel):
    enabled: bool
    rule_type: AlarmRuleType
    metric: AlarmMetric
    operator: str
    threshold: float | None
    trigger_status: str | None
    notify: bool

    model_config = {"from_attributes": True}


class AlarmOut(BaseModel):
    alarm_id: str
    rule_key: str
    rule_type: AlarmRuleType
    severity: AlarmSeverity
    message: str
    value: float | None
    timestamp: datetime
    acknowledged: bool
    acknowledged_at: datetime | None
    resolved: bool
    resolved_at: datetime | None
    auto_resolved: bool

    model_config = {"from_attributes": True}


class ScheduleCreate(BaseModel):
    action: Literal["ON", "OFF"] = "ON"
    duration: int = Field(0, ge=0)
    start_at: datetime | None = None
    end_at: datetime | None = None
    cron_expression: str | None = None
    enabled: bool = True


class ScheduleUpdate(BaseModel):
    action: Literal["ON", "OFF"] | None = None
    duration: int | None = Field(None, ge=0)
    start_at: datetime | None = None
    end_at: datetime | None = None
    cron_expression: str | None = None
    enabled: bool | None = None


class ScheduleOut(BaseModel):
    schedule_id: str
    enabled: bool
    action: str
    duration: int
    start_at: datetime | None
    end_at: datetime | None
    cron_expression: str | None
    last_fired_at: datetime | None
    last_ended_at: datetime | None

    model_config = {"from_attributes": True}


class CommandOut(BaseModel):
    command_id: str
    action: str
    origin: str
    status: CommandStatus
    attempts: int
    issued_at: datetime
    sent_at: datetime | None
    acknowledged_at: datetime | None
    error_message: str | None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Valve records
# ---------------------------------------------------------------------------

@router.post("", response_model=ValveRecordOut, status_code=201)
async def create_valve(data: ValveCreate, engine: ValveEngine = Depends(get_engine)):
    fields = data.model_dump(exclude={"manifold_id", "specifications"})
    if data.specifications is not None:
        fields["specifications"] = data.specifications.model_dump(exclude_none=True)
    with engine_errors():
        return await engine.add_valve(data.manifold_id, fields)


@router.put("/{valve_id}", response_model=ValveRecordOut)
async def update_valve(valve_id: int, data: ValveUpdate, engine: ValveEngine = Depends(get_engine)):
    changes = data.model_dump(exclude={"specifications"}, exclude_none=True)
    if data.specifications is not None:
        changes["specifications"] = data.specifications.model_dump(exclude_none=True)
    with engine_errors():
        return await engine.update_valve(valve_id, changes)


@router.delete("/{valve_id}", status_code=204)
async def delete_valve(valve_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        await engine.delete_valve(valve_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Status / commands
# ---------------------------------------------------------------------------

@router.get("/{valve_id}")
async def get_valve(valve_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.get_valve_status(valve_id)


@router.post("/{valve_id}/command", response_model=CommandResponse, status_code=202)
async def send_command(valve_id: int, data: CommandRequest, engine: ValveEngine = Depends(get_engine)):
    """Queue ON / OFF / PULSE; the status flips once the controller confirms."""
    with engine_errors():
        result = await engine.send_valve_command(valve_id, data.action)
    if not result.accepted:
        raise HTTPException(409, result.reason)
    return CommandResponse(**result.as_dict())


@router.patch("/{valve_id}/mode")
async def update_mode(valve_id: int, data: ModeUpdate, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.update_valve_mode(valve_id, data.mode)


@router.patch("/{valve_id}/timer")
async def update_timer(valve_id: int, data: TimerUpdate, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.update_valve_timer(valve_id, data.auto_off_duration_sec)


@router.post("/{valve_id}/clear-fault")
async def clear_fault(valve_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.clear_fault(valve_id)


@router.get("/{valve_id}/history", response_model=list[CommandOut])
async def get_history(
    valve_id: int,
    limit: int = Query(50, ge=1, le=500),
    engine: ValveEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.get_valve_history(valve_id, limit)


# ---------------------------------------------------------------------------
# Alarm rule + alarms
# ---------------------------------------------------------------------------

@router.get("/{valve_id}/alarm-config", response_model=AlarmConfigOut | None)
async def get_alarm_config(valve_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.get_alarm_config(valve_id)


@router.patch("/{valve_id}/alarm-config", response_model=AlarmConfigOut)
async def update_alarm_config(
    valve_id: int,
    data: AlarmConfigUpdate,
    engine: ValveEngine = Depends(get_engine),
):
    changes = {
        k: (v.value if hasattr(v, "value") else v)
        for k, v in data.model_dump(exclude_unset=True).items()
    }
    with engine_errors():
        return await engine.update_valve_alarm_config(valve_id, changes)


@router.get("/{valve_id}/alarms", response_model=list[AlarmOut])
async def list_alarms(
    valve_id: int,
    acknowledged: bool | None = Query(None),
    resolved: bool | None = Query(None),
    engine: ValveEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.list_alarms(valve_id, acknowledged=acknowledged, resolved=resolved)


@router.post("/{valve_id}/alarms/{alarm_id}/acknowledge", response_model=AlarmOut)
async def acknowledge_alarm(valve_id: int, alarm_id: str, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.acknowledge_alarm(valve_id, alarm_id)


@router.post("/{valve_id}/alarms/{alarm_id}/resolve", response_model=AlarmOut)
async def resolve_alarm(valve_id: int, alarm_id: str, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.resolve_alarm(valve_id, alarm_id)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

@router.get("/{valve_id}/schedules", response_model=list[ScheduleOut])
async def list_schedules(valve_id: int, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.list_schedules(valve_id)


@router.post("/{valve_id}/schedules", response_model=ScheduleOut, status_code=201)
async def create_schedule(valve_id: int, data: ScheduleCreate, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        return await engine.create_schedule(valve_id, **data.model_dump())


@router.put("/{valve_id}/schedules/{schedule_id}", response_model=ScheduleOut)
async def update_schedule(
    valve_id: int,
    schedule_id: str,
    data: ScheduleUpdate,
    engine: ValveEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.update_schedule(valve_id, schedule_id, data.model_dump(exclude_unset=True))


@router.delete("/{valve_id}/schedules/{schedule_id}", status_code=204)
async def delete_schedule(valve_id: int, schedule_id: str, engine: ValveEngine = Depends(get_engine)):
    with engine_errors():
        await engine.delete_schedule(valve_id, schedule_id)
    return Response(status_code=204)
