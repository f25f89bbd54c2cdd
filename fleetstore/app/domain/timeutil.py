"""
Time helpers.

The storage engine keys everything on integer microseconds since the Unix
epoch so partition routing and bucket math stay exact.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fleetstore.app.core.exceptions import ValidationError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MICROS_PER_SECOND = 1_000_000

# Open range ends
MIN_MICROS = -(2 ** 63)
MAX_MICROS = 2 ** 63 - 1


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_micros(value: datetime) -> int:
    delta = ensure_utc(value) - EPOCH
    return (delta.days * 86400 + delta.seconds) * MICROS_PER_SECOND + delta.microseconds


def from_micros(micros: int) -> datetime:
    return EPOCH + timedelta(microseconds=int(micros))


def duration_micros(value: timedelta) -> int:
    return (value.days * 86400 + value.seconds) * MICROS_PER_SECOND + value.microseconds


def floor_micros(micros: int, width: int) -> int:
    """Start of the width-aligned window containing `micros`."""
    return (micros // width) * width


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TimeRange:
    """
    Half-open time range [start, end).

    Either end may be None, meaning unbounded on that side.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start is not None:
            object.__setattr__(self, "start", ensure_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", ensure_utc(self.end))
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValidationError(
                "Time range start must not be after its end",
                {"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @classmethod
    def everything(cls) -> "TimeRange":
        return cls()

    @property
    def start_micros(self) -> int:
        return MIN_MICROS if self.start is None else to_micros(self.start)

    @property
    def end_micros(self) -> int:
        return MAX_MICROS if self.end is None else to_micros(self.end)

    def contains_micros(self, micros: int) -> bool:
        return self.start_micros <= micros < self.end_micros

    def overlaps(self, start_micros: int, end_micros: int) -> bool:
        """True if [start_micros, end_micros) intersects this range."""
        return start_micros < self.end_micros and self.start_micros < end_micros
