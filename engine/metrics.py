import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from engine.errors import ParseFailure
from engine.shift_detector import expected_time_in_at
from models.rules import ReconcileRules
from models.schema import AttendanceRecord, ClassifiedPunch, MetricsResult, ON_SHIFT_ROLES, PunchRole
from utils.timeutils import floor_to_hour, minutes_between, minutes_to_hours, same_awareness, to_decimal

LEAVE_ROLES = (PunchRole.BREAK_IN, PunchRole.CLOCK_OUT)
RETURN_ROLES = (PunchRole.BREAK_OUT, PunchRole.CLOCK_IN)


class PunchTimes(BaseModel):
    time_in: Optional[datetime] = None
    time_out: Optional[datetime] = None
    break_out: Optional[datetime] = None
    break_in: Optional[datetime] = None
    last_role: Optional[PunchRole] = None
    extra_breaks: int = 0
    missing_punch_notes: List[str] = Field(default_factory=list)
    device_conflicts: List[str] = Field(default_factory=list)

    @property
    def missing_punch(self) -> bool:
        return len(self.missing_punch_notes) > 0


def _device_disagrees(punch: ClassifiedPunch) -> bool:
    if punch.device_reported_state is None:
        return False
    return (punch.role in LEAVE_ROLES) != (punch.device_reported_state == 1)


def times_from_punches(classified: Sequence[ClassifiedPunch]) -> PunchTimes:
    """Fold a classified day into record times.

    Break punches are named from the break's side (Break In starts it), record
    fields from the workday's side: the punch leaving work becomes ``break_out``
    and the punch returning becomes ``break_in``.
    """
    if not classified:
        return PunchTimes()

    in_idx = next((i for i, p in enumerate(classified) if p.role == PunchRole.CLOCK_IN), 0)
    last = classified[-1]

    if last.role == PunchRole.CLOCK_OUT:
        out_idx = len(classified) - 1
    elif last.role in ON_SHIFT_ROLES:
        out_idx = None
    else:
        out_idx = len(classified) - 1

    end = out_idx if out_idx is not None else len(classified)
    break_out = break_in = None
    extra_breaks = 0
    leave_idx = next((i for i in range(in_idx + 1, end) if classified[i].role in LEAVE_ROLES), None)
    if leave_idx is not None:
        break_out = classified[leave_idx].timestamp
        back_idx = next((i for i in range(leave_idx + 1, end) if classified[i].role in RETURN_ROLES), None)
        if back_idx is not None:
            break_in = classified[back_idx].timestamp
            extra_breaks = sum(1 for i in range(back_idx + 1, end) if classified[i].role in LEAVE_ROLES)

    return PunchTimes(
        time_in=classified[in_idx].timestamp,
        time_out=classified[out_idx].timestamp if out_idx is not None else None,
        break_out=break_out,
        break_in=break_in,
        last_role=last.role,
        extra_breaks=extra_breaks,
        missing_punch_notes=[p.missing_punch_note for p in classified if p.missing_punch and p.missing_punch_note],
        device_conflicts=[f"{p.timestamp:%H:%M} {p.device_status}, read as {p.role.value}"
                          for p in classified if _device_disagrees(p)],
    )


def _break_minutes(record: AttendanceRecord, time_in: datetime, time_out: datetime, rules: ReconcileRules) -> int:
    left, back = record.break_out, record.break_in
    if left is None or back is None:
        return 0
    if not (time_in <= left <= time_out and time_in <= back <= time_out and back > left):
        logging.debug(f"Break ignored for employee_id {record.employee_id} on {record.attendance_date}")
        return 0

    minutes = minutes_between(left, back)
    if minutes > rules.max_break_minutes:
        logging.warning(
            f"Break of {minutes} min too long for employee_id {record.employee_id} "
            f"on {record.attendance_date}, using {rules.fallback_break_minutes} min"
        )
        return rules.fallback_break_minutes
    return minutes


def compute_metrics(record: AttendanceRecord, rules: ReconcileRules,
                    last_role: Optional[PunchRole] = None) -> MetricsResult:
    """Hours worked, late and undertime minutes for one attendance day.

    Pure: the same record and rules always give the same result.
    """
    time_in = record.time_in
    time_out = record.effective_time_out

    if not same_awareness(time_in, time_out, record.break_in, record.break_out):
        raise ParseFailure("Mixed timezone-aware and naive times", record.employee_id, record.attendance_date)

    if time_in is None:
        return MetricsResult()

    expected = expected_time_in_at(record.attendance_date, time_in, time_out, rules)
    late = max(0, minutes_between(expected, time_in))

    net_minutes = 0
    break_minutes = 0
    rounded = None
    if time_out is not None:
        rounded = floor_to_hour(time_out)
        if record.is_nightshift and rounded < time_in:
            rounded += timedelta(days=1)
        if record.is_nightshift and time_out < time_in:
            time_out += timedelta(days=1)

        break_minutes = _break_minutes(record, time_in, time_out, rules)
        net_minutes = max(0, minutes_between(time_in, rounded) - break_minutes)

    hours = minutes_to_hours(net_minutes)
    is_halfday = hours == 0 and record.has_punch_data
    undertime = 0

    if is_halfday:
        late = 0
    elif time_out is not None:
        shortfall = rules.minimum_work_minutes - net_minutes
        if shortfall >= rules.undertime_grace_minutes:
            undertime = shortfall

    still_clocked_in = time_out is None and last_role in ON_SHIFT_ROLES

    return MetricsResult(
        hours_worked=hours,
        late_minutes=to_decimal(late),
        undertime_minutes=to_decimal(undertime),
        is_halfday=is_halfday,
        still_clocked_in=still_clocked_in,
        expected_time_in=expected,
        rounded_time_out=rounded,
        break_minutes=break_minutes,
    )


def apply_metrics(record: AttendanceRecord, rules: ReconcileRules,
                  last_role: Optional[PunchRole] = None) -> AttendanceRecord:
    result = compute_metrics(record, rules, last_role)
    return record.model_copy(update={
        "hours_worked": result.hours_worked,
        "late_minutes": result.late_minutes,
        "undertime_minutes": result.undertime_minutes,
    })
