from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now: the storage convention for every timestamp column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(raw) -> datetime | None:
    """Device timestamps: epoch seconds, epoch milliseconds or ISO-8601."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return to_naive_utc(raw)
    if isinstance(raw, (int, float)):
        seconds = raw / 1000.0 if raw > 1e11 else float(raw)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(raw, str):
        try:
            return parse_timestamp(float(raw))
        except ValueError:
            pass
        try:
            return to_naive_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None
