from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from engine.errors import ParseFailure

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

CLOCK_FORMATS = ("%H:%M", "%H:%M:%S")


def floor_to_hour(value: datetime) -> datetime:
    """Round an out-punch down to the hour. 17:59 -> 17:00, 18:00 stays 18:00."""
    return value.replace(minute=0, second=0, microsecond=0)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, seconds truncated toward zero."""
    seconds = (end - start).total_seconds()
    return int(seconds / 60)


def minute_of_day(value: Union[datetime, time]) -> int:
    return value.hour * 60 + value.minute


def hour_in_range(hour: int, first: int, last: int) -> bool:
    # 21-05 style buckets wrap past midnight
    if first <= last:
        return first <= hour <= last
    return hour >= first or hour <= last


def in_window(value: Union[datetime, time], start: time, end: time) -> bool:
    return minute_of_day(start) <= minute_of_day(value) <= minute_of_day(end)


def at_time(day: date, clock: time, next_day: bool = False) -> datetime:
    moment = datetime.combine(day, clock)
    if next_day:
        moment += timedelta(days=1)
    return moment


def parse_clock(text: Optional[str]) -> Optional[time]:
    if text is None or text == "":
        return None
    for fmt in CLOCK_FORMATS:
        try:
            return datetime.strptime(text.strip(), fmt).time()
        except ValueError:
            continue
    raise ParseFailure(f"Invalid time value: {text!r}")


def to_decimal(value: Union[int, float, Decimal]) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def minutes_to_hours(minutes: int) -> Decimal:
    return (Decimal(minutes) / Decimal(60)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def same_awareness(*values: Optional[datetime]) -> bool:
    """True when every non-null value is either tz-aware or naive, never a mix."""
    kinds = {v.tzinfo is not None and v.utcoffset() is not None for v in values if v is not None}
    return len(kinds) <= 1
