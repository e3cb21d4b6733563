"""Clock and identifier helpers.

Every timestamp the core writes comes from :func:`utcnow`, so tests can pin
time with :func:`set_clock`. Schedule strings (``HH:MM``) are a doctor's local
wall time; they are compared as minute-of-day integers and only converted to
UTC at the edges.
"""
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo


def _system_clock() -> datetime:
    return datetime.now(timezone.utc)


_clock: Callable[[], datetime] = _system_clock


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return _clock()


def set_clock(clock: Optional[Callable[[], datetime]] = None) -> None:
    """Replace the clock source; ``None`` restores the system clock."""
    global _clock
    _clock = clock or _system_clock


class FrozenClock:
    """Manually advanced clock for tests and replay tooling."""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self.current = start.astimezone(timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self.current = value.astimezone(timezone.utc)
        return self.current


def new_id() -> str:
    """Opaque 128-bit identifier rendered as 32 hex chars."""
    return uuid.uuid4().hex


def epoch_ms(value: Optional[datetime] = None) -> int:
    value = value or utcnow()
    return int(value.timestamp() * 1000)


# --- wall-clock helpers ---

def to_minutes(hhmm: str) -> int:
    """'09:30' -> 570. Raises ValueError on malformed input."""
    hours, minutes = hhmm.split(":")
    h, m = int(hours), int(minutes)
    if len(hours) != 2 or len(minutes) != 2 or not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Invalid HH:MM value: {hhmm!r}")
    return h * 60 + m


def from_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def day_of_week(day: date) -> int:
    """Weekday index with Sunday = 0 ... Saturday = 6."""
    return (day.weekday() + 1) % 7


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz_name or "UTC")


def local_to_utc(day: date, minute_of_day: int, tz_name: Optional[str]) -> datetime:
    local = datetime.combine(day, time.min, tzinfo=get_zone(tz_name)) + timedelta(minutes=minute_of_day)
    return local.astimezone(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, rounded to nearest."""
    return int(round((end - start).total_seconds() / 60.0))
