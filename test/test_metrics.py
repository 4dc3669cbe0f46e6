from datetime import date, datetime, time, timezone
from decimal import Decimal

import pytest

from engine.classifier import classify_day
from engine.errors import ParseFailure
from engine.metrics import apply_metrics, compute_metrics, times_from_punches
from models.rules import DEFAULT_RULES
from models.schema import AttendanceRecord, PunchRole, RawPunch

DAY = date(2025, 7, 21)


def at(hour, minute=0, second=0, day=DAY):
    return datetime.combine(day, time(hour, minute, second))


def record(**fields):
    return AttendanceRecord(employee_id=1, attendance_date=DAY, **fields)


def classified(*hours_minutes):
    punches = [RawPunch(employee_external_id="123456", timestamp=at(h, m)) for h, m in hours_minutes]
    return classify_day(punches, DEFAULT_RULES)


def test_regular_day_with_rounding():
    result = compute_metrics(record(time_in=at(8, 5), time_out=at(17, 16)), DEFAULT_RULES)
    assert result.hours_worked == Decimal("8.92")
    assert result.late_minutes == Decimal("5")
    assert result.undertime_minutes == Decimal("0")
    assert result.rounded_time_out == at(17, 0)
    assert result.expected_time_in == at(8, 0)
    assert not result.is_halfday


def test_rounding_never_adds_time():
    assert compute_metrics(record(time_in=at(8, 0), time_out=at(17, 0, 1)),
                           DEFAULT_RULES).hours_worked == Decimal("9.00")
    assert compute_metrics(record(time_in=at(8, 0), time_out=at(17, 59)),
                           DEFAULT_RULES).hours_worked == Decimal("9.00")
    assert compute_metrics(record(time_in=at(8, 0), time_out=at(18, 0)),
                           DEFAULT_RULES).hours_worked == Decimal("10.00")


def test_late_minutes_against_detected_shift():
    result = compute_metrics(record(time_in=at(8, 12), time_out=at(17, 30)), DEFAULT_RULES)
    assert result.late_minutes == Decimal("12")


def test_late_is_kept_even_after_a_long_day():
    result = compute_metrics(record(time_in=at(8, 12), time_out=at(20, 0)), DEFAULT_RULES)
    assert result.hours_worked == Decimal("11.80")
    assert result.late_minutes == Decimal("12")


def test_early_arrival_is_not_late():
    result = compute_metrics(record(time_in=at(7, 40), time_out=at(17, 5)), DEFAULT_RULES)
    assert result.late_minutes == Decimal("0")


def test_time_in_only_is_halfday():
    result = compute_metrics(record(time_in=at(9, 30)), DEFAULT_RULES)
    assert result.hours_worked == Decimal("0")
    assert result.is_halfday
    assert result.late_minutes == Decimal("0")
    assert result.undertime_minutes == Decimal("0")


def test_undertime_grace():
    # 535 worked minutes is within the grace period
    short = compute_metrics(record(time_in=at(8, 5), time_out=at(17, 0)), DEFAULT_RULES)
    assert short.undertime_minutes == Decimal("0")
    # exactly the grace period counts
    hour_short = compute_metrics(record(time_in=at(8, 0), time_out=at(16, 0)), DEFAULT_RULES)
    assert hour_short.undertime_minutes == Decimal("60")
    seven = compute_metrics(record(time_in=at(8, 0), time_out=at(15, 0)), DEFAULT_RULES)
    assert seven.hours_worked == Decimal("7.00")
    assert seven.undertime_minutes == Decimal("120")


def test_break_is_deducted():
    result = compute_metrics(record(time_in=at(8, 0), break_out=at(12, 0), break_in=at(13, 0),
                                    time_out=at(18, 0)), DEFAULT_RULES)
    assert result.break_minutes == 60
    assert result.hours_worked == Decimal("9.00")
    assert result.late_minutes == Decimal("0")


def test_overlong_break_falls_back_to_default():
    result = compute_metrics(record(time_in=at(8, 0), break_out=at(9, 0), break_in=at(14, 0),
                                    time_out=at(18, 0)), DEFAULT_RULES)
    assert result.break_minutes == 60
    assert result.hours_worked == Decimal("9.00")


def test_inverted_or_outside_break_is_ignored():
    inverted = compute_metrics(record(time_in=at(8, 0), break_out=at(13, 0), break_in=at(12, 0),
                                      time_out=at(17, 0)), DEFAULT_RULES)
    assert inverted.break_minutes == 0
    assert inverted.hours_worked == Decimal("9.00")
    outside = compute_metrics(record(time_in=at(8, 0), break_out=at(7, 0), break_in=at(7, 30),
                                     time_out=at(17, 0)), DEFAULT_RULES)
    assert outside.break_minutes == 0


def test_night_shift_with_next_day_timeout():
    result = compute_metrics(record(time_in=at(22, 5), is_nightshift=True,
                                    next_day_timeout=at(6, 40, day=date(2025, 7, 22))), DEFAULT_RULES)
    assert result.expected_time_in == at(22, 0)
    assert result.late_minutes == Decimal("5")
    assert result.rounded_time_out == at(6, 0, day=date(2025, 7, 22))
    assert result.hours_worked == Decimal("7.92")
    assert result.undertime_minutes == Decimal("65")


def test_night_shift_time_out_rolls_over_midnight():
    result = compute_metrics(record(time_in=at(18, 0), time_out=at(2, 30), is_nightshift=True), DEFAULT_RULES)
    assert result.late_minutes == Decimal("0")
    assert result.hours_worked == Decimal("8.00")
    assert result.undertime_minutes == Decimal("60")


def test_day_shift_time_out_before_time_in_is_zero_hours():
    result = compute_metrics(record(time_in=at(10, 0), time_out=at(9, 30)), DEFAULT_RULES)
    assert result.hours_worked == Decimal("0")
    assert result.is_halfday
    assert result.late_minutes == Decimal("0")


def test_absence_yields_zeros():
    result = compute_metrics(record(), DEFAULT_RULES)
    assert result.hours_worked == Decimal("0")
    assert result.late_minutes == Decimal("0")
    assert not result.is_halfday
    assert result.expected_time_in is None


def test_custom_minimum_hours():
    rules = DEFAULT_RULES.model_copy(update={"minimum_work_hours": 8})
    result = compute_metrics(record(time_in=at(8, 0), time_out=at(16, 0)), rules)
    assert result.undertime_minutes == Decimal("0")


def test_mixed_timezone_awareness_is_rejected():
    aware = datetime(2025, 7, 21, 8, 0, tzinfo=timezone.utc)
    with pytest.raises(ParseFailure):
        compute_metrics(record(time_in=aware, time_out=at(17, 0)), DEFAULT_RULES)


def test_aware_times_are_supported():
    utc = timezone.utc
    result = compute_metrics(record(time_in=datetime(2025, 7, 21, 8, 5, tzinfo=utc),
                                    time_out=datetime(2025, 7, 21, 17, 16, tzinfo=utc)), DEFAULT_RULES)
    assert result.hours_worked == Decimal("8.92")
    assert result.late_minutes == Decimal("5")


def test_still_clocked_in_needs_on_shift_last_role():
    rec = record(time_in=at(7, 50))
    assert compute_metrics(rec, DEFAULT_RULES, PunchRole.CLOCK_IN).still_clocked_in
    assert compute_metrics(rec, DEFAULT_RULES, PunchRole.BREAK_OUT).still_clocked_in
    assert not compute_metrics(rec, DEFAULT_RULES).still_clocked_in


def test_apply_metrics_is_idempotent():
    rec = record(time_in=at(8, 5), break_out=at(12, 0), break_in=at(13, 0), time_out=at(17, 16))
    once = apply_metrics(rec, DEFAULT_RULES)
    twice = apply_metrics(once, DEFAULT_RULES)
    assert once == twice
    assert once.hours_worked == Decimal("7.92")
    assert rec.hours_worked == Decimal("0")


def test_times_from_break_day():
    times = times_from_punches(classified((8, 0), (12, 0), (13, 0), (17, 0)))
    assert times.time_in == at(8, 0)
    assert times.time_out == at(17, 0)
    assert times.break_out == at(12, 0)
    assert times.break_in == at(13, 0)
    assert not times.missing_punch


def test_times_from_double_shift_use_the_gap_as_break():
    times = times_from_punches(classified((6, 0), (10, 0), (15, 0), (20, 0)))
    assert times.time_in == at(6, 0)
    assert times.time_out == at(20, 0)
    assert times.break_out == at(10, 0)
    assert times.break_in == at(15, 0)


def test_times_without_clock_out_leave_time_out_empty():
    times = times_from_punches(classified((8, 0), (12, 0), (13, 0)))
    assert times.time_out is None
    assert times.last_role == PunchRole.BREAK_OUT
    assert times.missing_punch


def test_times_from_single_clock_out_punch():
    times = times_from_punches(classified((13, 0),))
    assert times.time_in == at(13, 0)
    assert times.time_out == at(13, 0)
    assert times.missing_punch


def test_times_count_extra_breaks():
    times = times_from_punches(classified((8, 0), (10, 0), (10, 15), (12, 0), (12, 10), (17, 0)))
    assert times.break_out == at(10, 0)
    assert times.break_in == at(10, 15)
    assert times.extra_breaks == 1


def test_times_from_nothing():
    times = times_from_punches([])
    assert times.time_in is None
    assert times.time_out is None


def test_halfday_needs_punch_data():
    assert record(time_in=at(8, 0)).has_punch_data
    assert record(time_out=at(17, 0)).has_punch_data
    assert not record().has_punch_data
    assert not record().is_halfday
