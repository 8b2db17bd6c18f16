"""Shared router helpers: engine lookup and engine-error → HTTP mapping."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException, Request

from core.errors import (
    DuplicateValve,
    InvalidAlarmConfig,
    InvalidSchedule,
    ModeConflict,
    StoreUnavailable,
    UnknownAlarm,
    UnknownManifold,
    UnknownSchedule,
    UnknownValve,
)
from services.engine import ValveEngine


def get_engine(request: Request) -> ValveEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(503, "Valve engine not initialised")
    return engine


@contextmanager
def engine_errors() -> Iterator[None]:
    try:
        yield
    except (UnknownManifold, UnknownValve, UnknownAlarm, UnknownSchedule) as exc:
        raise HTTPException(404, str(exc))
    except (ModeConflict, DuplicateValve) as exc:
        raise HTTPException(409, str(exc))
    except (InvalidSchedule, InvalidAlarmConfig, ValueError) as exc:
        raise HTTPException(422, str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(503, f"Store unavailable: {exc}")
