import logging
from datetime import date, datetime, time
from typing import Optional

from models.rules import ReconcileRules
from utils.timeutils import at_time


def detect_expected_time_in(time_in: datetime, time_out: Optional[datetime], rules: ReconcileRules) -> time:
    """Scheduled start of the shift the employee most likely worked.

    The time-out separates overlapping shift windows better than the time-in,
    so it is tried first; the time-in buckets are the fallback.
    """
    if time_out is not None:
        for bucket in rules.timeout_shift_buckets:
            if bucket.matches(time_out.hour):
                return bucket.expected_time_in
        logging.debug(f"No shift matched time out {time_out:%H:%M}; falling back to time in")

    for bucket in rules.timein_shift_buckets:
        if bucket.matches(time_in.hour):
            return bucket.expected_time_in
    return rules.default_expected_time_in


def expected_time_in_at(attendance_date: date, time_in: datetime, time_out: Optional[datetime],
                        rules: ReconcileRules) -> datetime:
    expected = at_time(attendance_date, detect_expected_time_in(time_in, time_out, rules))
    if time_in.tzinfo is not None:
        expected = expected.replace(tzinfo=time_in.tzinfo)
    return expected
