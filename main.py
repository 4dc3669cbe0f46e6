import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from enum import Enum
from functools import partial
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

from pydantic import ValidationError

from engine.classifier import classify_day
from engine.errors import (DuplicateRecordError, ImmutabilityViolation, LookupFailure, ManualEntryError,
                           ParseFailure, StorageFailure)
from engine.metrics import apply_metrics, compute_metrics, times_from_punches, PunchTimes
from models.rules import ReconcileRules, resolve_rules
from models.schema import (AttendanceRecord, BatchReport, ClassifiedPunch, ManualEntry, MetricsResult,
                           PostingStatus, RawPunch, RECORD_DELTA_FIELDS, Source)
from utils.helper import AttendanceStore, EmployeeDirectory, UnitOfWork
from utils.timeutils import at_time, parse_clock, same_awareness

PATTERN_NOTE = "Processed with pattern recognition"
STILL_CLOCKED_IN_NOTE = "ATTENTION - Employee is still clocked in. No checkout recorded"


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    POSTED_SKIPPED = "posted_skipped"
    PARSE_FAILED = "parse_failed"
    STORAGE_FAILED = "storage_failed"
    CANCELLED = "cancelled"


class UnitResult(NamedTuple):
    outcome: Outcome
    missing_punch: bool = False
    still_clocked_in: bool = False
    error: Optional[str] = None


# derive(existing) -> (record, missing_punch, still_clocked_in), or None when there is nothing to do
Derivation = Callable[[Optional[AttendanceRecord]], Optional[Tuple[AttendanceRecord, bool, bool]]]


def parse_raw_punches(raw_punches: Iterable[Union[RawPunch, Mapping]]) -> Tuple[List[RawPunch], List[str]]:
    punches, errors = [], []
    for raw in raw_punches:
        if isinstance(raw, RawPunch):
            punches.append(raw)
            continue
        try:
            punches.append(RawPunch.model_validate(raw))
        except ValidationError as exc:
            logging.warning(f"Unparseable punch skipped: {raw!r} ({exc.error_count()} errors)")
            errors.append(f"Unparseable punch: {raw!r}")
    return punches, errors


def group_punches(punches: Iterable[RawPunch]) -> Dict[Tuple[str, date], List[RawPunch]]:
    groups = defaultdict(list)
    for punch in punches:
        groups[(punch.employee_external_id, punch.timestamp.date())].append(punch)
    return dict(groups)


def punch_notes(times: PunchTimes, result: MetricsResult) -> str:
    parts = [PATTERN_NOTE]
    if times.missing_punch:
        parts.append("ATTENTION - " + " ".join(times.missing_punch_notes))
    if times.device_conflicts:
        parts.append("Device state differs: " + "; ".join(times.device_conflicts))
    if times.extra_breaks:
        parts.append(f"{times.extra_breaks} additional break(s) not deducted")
    if result.still_clocked_in:
        parts.append(STILL_CLOCKED_IN_NOTE)
    return ". ".join(p.rstrip(".") for p in parts) + "."


def build_record(employee_id: int, attendance_date: date, classified: List[ClassifiedPunch],
                 rules: ReconcileRules, existing: Optional[AttendanceRecord] = None,
                 source: Source = Source.BIOMETRIC) -> Tuple[AttendanceRecord, MetricsResult, PunchTimes]:
    """Fold one classified day into an attendance record. No I/O."""
    times = times_from_punches(classified)
    draft = AttendanceRecord(
        employee_id=employee_id,
        attendance_date=attendance_date,
        time_in=times.time_in,
        time_out=times.time_out,
        break_in=times.break_in,
        break_out=times.break_out,
        source=source,
        posting_status=existing.posting_status if existing is not None else PostingStatus.NOT_POSTED,
    )
    result = compute_metrics(draft, rules, times.last_role)
    record = draft.model_copy(update={
        "hours_worked": result.hours_worked,
        "late_minutes": result.late_minutes,
        "undertime_minutes": result.undertime_minutes,
        "notes": punch_notes(times, result),
    })
    return record, result, times


def has_changes(existing: AttendanceRecord, record: AttendanceRecord) -> bool:
    return any(getattr(existing, field) != getattr(record, field) for field in RECORD_DELTA_FIELDS)


def _guard_mutable(record: Optional[AttendanceRecord]) -> None:
    if record is not None and record.is_posted:
        raise ImmutabilityViolation("Record already posted", record.employee_id, record.attendance_date)


def _stage(unit: UnitOfWork, record: AttendanceRecord) -> Outcome:
    if unit.existing is None:
        unit.put(record)
        return Outcome.CREATED
    if not has_changes(unit.existing, record):
        return Outcome.UNCHANGED
    unit.put(record)
    return Outcome.UPDATED


def _process_unit(store: AttendanceStore, employee_id: int, attendance_date: date, derive: Derivation,
                  cancel_event: Optional[threading.Event] = None) -> UnitResult:
    if cancel_event is not None and cancel_event.is_set():
        return UnitResult(Outcome.CANCELLED)
    try:
        with store.transaction(employee_id, attendance_date) as unit:
            _guard_mutable(unit.existing)
            derived = derive(unit.existing)
            if derived is None:
                return UnitResult(Outcome.UNCHANGED)
            record, missing_punch, still_clocked_in = derived
            outcome = _stage(unit, record)
        logging.debug(f"employee_id {employee_id} on {attendance_date}: {outcome.value}")
        return UnitResult(outcome, missing_punch, still_clocked_in)
    except ImmutabilityViolation:
        logging.info(f"Posted record left untouched for employee_id {employee_id} on {attendance_date}")
        return UnitResult(Outcome.POSTED_SKIPPED)
    except ParseFailure as exc:
        logging.warning(f"Skipping employee_id {employee_id} on {attendance_date}: {exc}")
        return UnitResult(Outcome.PARSE_FAILED, error=str(exc))
    except StorageFailure as exc:
        logging.error(f"Upsert rolled back for employee_id {employee_id} on {attendance_date}: {exc}")
        return UnitResult(Outcome.STORAGE_FAILED, error=str(exc))


def _run_units(tasks: List[Callable[[], UnitResult]], max_workers: int) -> List[UnitResult]:
    if max_workers <= 1:
        return [task() for task in tasks]

    results = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(task) for task in tasks]
        try:
            for future in as_completed(futures):
                results.append(future.result())
        except Exception:
            # store went away; do not start anything else
            for future in futures:
                future.cancel()
            raise
    return results


def _tally(report: BatchReport, results: Iterable[UnitResult]) -> BatchReport:
    for result in results:
        if result.outcome == Outcome.CREATED:
            report.created += 1
        elif result.outcome == Outcome.UPDATED:
            report.recalculated += 1
        elif result.outcome == Outcome.UNCHANGED:
            report.unchanged += 1
        elif result.outcome == Outcome.POSTED_SKIPPED:
            report.posted_skipped += 1
        elif result.outcome == Outcome.PARSE_FAILED:
            report.parse_failures += 1
        elif result.outcome == Outcome.STORAGE_FAILED:
            report.storage_failures += 1
        elif result.outcome == Outcome.CANCELLED:
            report.cancelled += 1

        if result.outcome in (Outcome.CREATED, Outcome.UPDATED, Outcome.UNCHANGED):
            report.processed += 1
            if result.missing_punch:
                report.missing_punch_flagged += 1
            if result.still_clocked_in:
                report.still_clocked_in += 1
        if result.error:
            report.errors.append(result.error)
    return report


def _log_report(name: str, report: BatchReport) -> None:
    logging.info(f"{name} finished: {report.model_dump(exclude={'errors'})}")
    if report.skipped:
        logging.warning(f"{name} skipped {report.skipped} unit(s)")


def _derive_from_punches(employee_id: int, attendance_date: date, punches: List[RawPunch],
                         rules: ReconcileRules, source: Source, existing: Optional[AttendanceRecord]):
    if not same_awareness(*(p.timestamp for p in punches)):
        raise ParseFailure("Mixed timezone-aware and naive punches", employee_id, attendance_date)
    classified = classify_day(punches, rules)
    record, result, times = build_record(employee_id, attendance_date, classified, rules, existing, source)
    return record, times.missing_punch, result.still_clocked_in


def reconcile_punches(raw_punches: Iterable[Union[RawPunch, Mapping]], store: AttendanceStore,
                      directory: EmployeeDirectory, rules: Optional[ReconcileRules] = None, *,
                      max_workers: int = 1, cancel_event: Optional[threading.Event] = None,
                      source: Source = Source.BIOMETRIC) -> BatchReport:
    """Turn a buffered batch of raw punches into attendance records.

    Each (employee, day) is classified, measured and upserted in its own
    transaction. Posted records are never touched and unchanged records are
    not rewritten, so running the same batch twice writes nothing the second
    time. Only an unavailable store aborts the batch.
    """
    rules = resolve_rules(rules)
    report = BatchReport()

    punches, errors = parse_raw_punches(raw_punches)
    report.parse_failures += len(errors)
    report.errors.extend(errors)

    tasks = []
    for (external_id, attendance_date), day_punches in sorted(group_punches(punches).items()):
        employee = directory.get_employee_by_badge(external_id)
        if employee is None or not employee.is_active:
            failure = LookupFailure(external_id)
            logging.error(str(failure))
            report.lookup_failures += 1
            report.errors.append(str(failure))
            continue
        derive = partial(_derive_from_punches, employee.id, attendance_date, day_punches, rules, source)
        tasks.append(partial(_process_unit, store, employee.id, attendance_date, derive, cancel_event))

    _tally(report, _run_units(tasks, max_workers))
    _log_report("Reconciliation", report)
    return report


def _derive_metrics(rules: ReconcileRules, existing: Optional[AttendanceRecord]):
    if existing is None:
        return None
    return apply_metrics(existing, rules), False, False


def recalculate_records(store: AttendanceStore, rules: Optional[ReconcileRules] = None, *,
                        start_date: Optional[date] = None, end_date: Optional[date] = None,
                        employee_ids: Optional[Iterable[int]] = None, max_workers: int = 1,
                        cancel_event: Optional[threading.Event] = None) -> BatchReport:
    """Re-derive hours, late and undertime for stored records in a date range."""
    rules = resolve_rules(rules)
    report = BatchReport()
    records = store.list_records(start_date, end_date, employee_ids=employee_ids)
    logging.info(f"Recalculating {len(records)} attendance record(s) from {start_date} to {end_date}")

    derive = partial(_derive_metrics, rules)
    tasks = [partial(_process_unit, store, r.employee_id, r.attendance_date, derive, cancel_event)
             for r in records]
    _tally(report, _run_units(tasks, max_workers))
    _log_report("Recalculation", report)
    return report


def store_manual_entry(entry: ManualEntry, store: AttendanceStore, rules: Optional[ReconcileRules] = None,
                       directory: Optional[EmployeeDirectory] = None) -> AttendanceRecord:
    rules = resolve_rules(rules)
    day = entry.attendance_date

    if directory is not None and directory.get_employee(entry.employee_id) is None:
        raise ManualEntryError(f"Unknown employee_id: {entry.employee_id}", entry.employee_id, day)

    clock_in = parse_clock(entry.time_in)
    if clock_in is None:
        raise ManualEntryError("Time In is required", entry.employee_id, day)
    clock_out = parse_clock(entry.time_out)
    clock_break_in = parse_clock(entry.break_in)
    clock_break_out = parse_clock(entry.break_out)
    clock_next_day = parse_clock(entry.next_day_timeout)

    def on_shift(clock):
        # night shift punches earlier than the time in belong to the next morning
        if clock is None:
            return None
        return at_time(day, clock, next_day=entry.is_nightshift and clock < clock_in)

    time_in = at_time(day, clock_in)
    time_out = at_time(day, clock_out) if clock_out is not None else None
    break_in = on_shift(clock_break_in)
    break_out = on_shift(clock_break_out)

    if break_in is not None and break_out is not None and break_out >= break_in:
        raise ManualEntryError("Break In time must be after Break Out time", entry.employee_id, day)
    if not entry.is_nightshift and time_out is not None and time_in >= time_out:
        raise ManualEntryError("Time Out must be after Time In for regular shifts", entry.employee_id, day)

    record = AttendanceRecord(
        employee_id=entry.employee_id,
        attendance_date=day,
        time_in=time_in,
        time_out=time_out,
        break_in=break_in,
        break_out=break_out,
        next_day_timeout=at_time(day, clock_next_day, next_day=True)
        if entry.is_nightshift and clock_next_day is not None else None,
        is_nightshift=entry.is_nightshift,
        source=Source.MANUAL,
        notes=entry.remarks,
    )
    record = apply_metrics(record, rules)

    with store.transaction(entry.employee_id, day) as unit:
        if unit.existing is not None:
            raise DuplicateRecordError(
                f"Attendance record already exists for employee_id {entry.employee_id} on {day}",
                entry.employee_id, day)
        unit.put(record)

    logging.info(f"Manual attendance entry created for employee_id {entry.employee_id} on {day}")
    return record


def list_attendance(store: AttendanceStore, directory: EmployeeDirectory, start_date: Optional[date] = None,
                    end_date: Optional[date] = None, posting_status: Optional[PostingStatus] = None,
                    department: Optional[str] = None) -> List[AttendanceRecord]:
    """Records as payroll aggregation reads them."""
    employee_ids = None
    if department is not None:
        employee_ids = [e.id for e in directory.employees_in_department(department)]
    return store.list_records(start_date, end_date, posting_status, employee_ids)
