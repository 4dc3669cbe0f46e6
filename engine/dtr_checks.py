"""Daily time record sanity checks surfaced to operators before payroll posting."""
import logging
from collections import Counter
from typing import Dict, Iterable, List

from models.schema import AttendanceRecord, DtrProblem, DtrRecordReport

EXCESSIVE_HOURS = 16
SEVERITY_ORDER = {"high": 3, "medium": 2, "low": 1}

PROBLEM_TYPES = (
    "missing_time_in",
    "missing_time_out",
    "missing_break_times",
    "excessive_hours",
    "negative_hours",
    "late_no_timeout",
    "invalid_break_sequence",
    "night_shift_issues",
    "weekend_attendance",
    "duplicate_entries",
)


def detect_record_problems(record: AttendanceRecord, duplicate: bool = False) -> List[DtrProblem]:
    problems = []
    if duplicate:
        problems.append(DtrProblem(type="duplicate_entries",
                                   message="Multiple attendance records found for the same date",
                                   severity="high"))

    has_in = record.time_in is not None
    has_out = record.effective_time_out is not None

    # neither punch: day off or absence, not a problem
    if not has_in and not has_out:
        return problems

    if not has_in:
        problems.append(DtrProblem(type="missing_time_in",
                                   message="Time In is missing but Time Out is present", severity="high"))
    if not has_out:
        problems.append(DtrProblem(type="missing_time_out",
                                   message="Time Out is missing but Time In is present", severity="high"))

    if (record.break_in is None) != (record.break_out is None):
        problems.append(DtrProblem(type="missing_break_times",
                                   message="Incomplete break time (missing break in or break out)",
                                   severity="medium"))
    elif record.break_in is not None and record.break_in <= record.break_out:
        problems.append(DtrProblem(type="invalid_break_sequence",
                                   message="Break In time should be after Break Out time", severity="medium"))

    if record.hours_worked > EXCESSIVE_HOURS:
        problems.append(DtrProblem(type="excessive_hours",
                                   message=f"Excessive work hours: {record.hours_worked} hours", severity="high"))
    if record.hours_worked < 0:
        problems.append(DtrProblem(type="negative_hours",
                                   message=f"Negative work hours: {record.hours_worked} hours", severity="high"))

    if has_in and not has_out and record.late_minutes > 0:
        problems.append(DtrProblem(type="late_no_timeout",
                                   message="Employee is late but has no time out", severity="medium"))

    if record.is_nightshift and has_in and record.next_day_timeout is None:
        problems.append(DtrProblem(type="night_shift_issues",
                                   message="Night shift record missing next day timeout", severity="medium"))

    if record.attendance_date.weekday() >= 5:
        problems.append(DtrProblem(type="weekend_attendance",
                                   message="Attendance on weekend", severity="low"))
    return problems


def problem_severity(problems: Iterable[DtrProblem]) -> str:
    levels = {p.severity for p in problems}
    if "high" in levels:
        return "high"
    if "medium" in levels:
        return "medium"
    return "low"


def detect_problems(records: Iterable[AttendanceRecord]) -> Dict:
    records = list(records)
    per_key = Counter(r.key for r in records)
    counts = {t: 0 for t in PROBLEM_TYPES}
    reports = []

    for record in records:
        problems = detect_record_problems(record, per_key[record.key] > 1)
        if not problems:
            continue
        for problem in problems:
            counts[problem.type] += 1
        reports.append(DtrRecordReport(
            employee_id=record.employee_id,
            attendance_date=record.attendance_date,
            problems=problems,
            severity=problem_severity(problems),
            time_in=record.time_in.time() if record.time_in else None,
            time_out=record.time_out.time() if record.time_out else None,
            hours_worked=record.hours_worked,
            is_nightshift=record.is_nightshift,
        ))

    reports.sort(key=lambda r: SEVERITY_ORDER.get(r.severity, 0), reverse=True)
    logging.info(f"DTR problem detection: {len(reports)} of {len(records)} records with problems")
    return {
        "data": reports,
        "summary": {
            "total_records": len(records),
            "problem_records": len(reports),
            "problems": counts,
        },
    }
