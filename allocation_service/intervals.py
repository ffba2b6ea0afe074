import datetime
from dataclasses import dataclass

from .exceptions import InvalidIntervalError


def _as_naive(value, field):
    if not isinstance(value, datetime.datetime):
        raise InvalidIntervalError(f"Interval {field} must be a datetime, got {type(value).__name__}")
    # Stored timestamps are naive, so aware input is normalised to naive UTC
    if value.tzinfo is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class Interval:
    """
    Half-open time range [start, end).

    Construction fails with InvalidIntervalError unless start < end.
    """

    start: datetime.datetime
    end: datetime.datetime

    def __post_init__(self):
        start = _as_naive(self.start, "start")
        end = _as_naive(self.end, "end")
        if start >= end:
            raise InvalidIntervalError(
                f"Interval end must be after start (start={start.isoformat()}, end={end.isoformat()})"
            )
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def of(cls, booking) -> "Interval":
        return cls(booking.start_time, booking.end_time)

    @property
    def duration(self) -> datetime.timedelta:
        return self.end - self.start

    def contains(self, moment: datetime.datetime) -> bool:
        return self.start <= _as_naive(moment, "moment") < self.end


def overlaps(a: Interval, b: Interval) -> bool:
    # Touching endpoints (a.end == b.start) do not overlap
    return a.start < b.end and b.start < a.end
