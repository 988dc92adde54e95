from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def load_zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone: {timezone}"
        raise ValueError(msg) from exc


def is_valid_timezone(timezone: str) -> bool:
    try:
        load_zone(timezone)
    except ValueError:
        return False
    return True


def zoned_to_utc(dt: datetime, timezone: str) -> datetime:
    """Read a naive ``dt`` as wall-clock time in ``timezone``; aware values keep their offset."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=load_zone(timezone))
    return dt.astimezone(UTC)


def local_datetime_to_utc(day: date, at: time, tz: ZoneInfo) -> datetime:
    # fold=0 picks the earlier instant on ambiguous local times.
    return datetime.combine(day, at, tzinfo=tz).astimezone(UTC)


def epoch_millis(dt: datetime) -> int:
    return (ensure_utc(dt) - _EPOCH) // timedelta(milliseconds=1)
