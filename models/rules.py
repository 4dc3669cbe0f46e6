from datetime import time
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from utils.timeutils import hour_in_range


class HourBucket(BaseModel):
    """Maps an observed punch hour range (inclusive, may wrap midnight) to a shift start."""
    model_config = ConfigDict(frozen=True)

    first_hour: int
    last_hour: int
    expected_time_in: time

    def matches(self, hour: int) -> bool:
        return hour_in_range(hour, self.first_hour, self.last_hour)


TIMEOUT_SHIFT_BUCKETS = (
    HourBucket(first_hour=17, last_hour=17, expected_time_in=time(8, 0)),
    HourBucket(first_hour=18, last_hour=18, expected_time_in=time(9, 0)),
    HourBucket(first_hour=1, last_hour=3, expected_time_in=time(18, 0)),
    HourBucket(first_hour=6, last_hour=8, expected_time_in=time(22, 0)),
)

TIMEIN_SHIFT_BUCKETS = (
    HourBucket(first_hour=6, last_hour=10, expected_time_in=time(8, 0)),
    HourBucket(first_hour=13, last_hour=16, expected_time_in=time(14, 0)),
    HourBucket(first_hour=17, last_hour=20, expected_time_in=time(18, 0)),
    HourBucket(first_hour=21, last_hour=5, expected_time_in=time(22, 0)),
)


class ReconcileRules(BaseModel):
    """Heuristic constants for classification and metrics.

    Passed explicitly to every engine function. Build variants with
    ``DEFAULT_RULES.model_copy(update={...})``.
    """
    model_config = ConfigDict(frozen=True)

    # classifier
    single_punch_cutoff: time = time(12, 0)
    workday_start: time = time(8, 0)
    workday_end: time = time(17, 0)
    edge_tolerance_minutes: int = 120
    missing_break_gap_minutes: int = 180
    double_shift_gap_minutes: int = 30
    lunch_window_start: time = time(11, 0)
    lunch_window_end: time = time(14, 0)
    short_gap_minutes: int = 30
    large_gap_minutes: int = 120

    # shift detection
    timeout_shift_buckets: Tuple[HourBucket, ...] = TIMEOUT_SHIFT_BUCKETS
    timein_shift_buckets: Tuple[HourBucket, ...] = TIMEIN_SHIFT_BUCKETS
    default_expected_time_in: time = time(8, 0)

    # metrics
    minimum_work_hours: int = 9
    undertime_grace_minutes: int = 60
    max_break_minutes: int = 240
    fallback_break_minutes: int = 60

    @property
    def minimum_work_minutes(self) -> int:
        return self.minimum_work_hours * 60


DEFAULT_RULES = ReconcileRules()


def resolve_rules(rules: Optional[ReconcileRules]) -> ReconcileRules:
    return rules if rules is not None else DEFAULT_RULES
