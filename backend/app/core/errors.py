"""Domain errors raised by the valve engine.

Validation and referential errors are raised synchronously to the caller;
routers map them onto HTTP status codes. DispatchFailed surfaces
asynchronously through the valve snapshot and the event journal.
"""


class ValveEngineError(Exception):
    """Base class for all engine errors."""


class ModeConflict(ValveEngineError):
    """Operator command against a valve in AUTO mode."""


class ValveFaulted(ModeConflict):
    """ON requested for a valve in FAULT that has not been cleared."""


class InvalidSchedule(ValveEngineError):
    """Malformed schedule window or cron expression."""


class InvalidAlarmConfig(ValveEngineError):
    """Alarm rule that cannot be evaluated."""


class DispatchFailed(ValveEngineError):
    """Device unreachable after bounded retries."""


class StoreUnavailable(ValveEngineError):
    """Persistent store rejected a write after bounded retries."""


class StaleReport(ValveEngineError):
    """Device report older than the last applied one; discarded."""


class UnknownManifold(ValveEngineError):
    pass


class UnknownValve(ValveEngineError):
    pass


class UnknownAlarm(ValveEngineError):
    pass


class UnknownSchedule(ValveEngineError):
    pass


class DuplicateValve(ValveEngineError):
    """Valve number already taken by a live valve of the manifold."""
