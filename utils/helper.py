import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from engine.errors import StorageFailure, StoreUnavailableError
from models.schema import AttendanceRecord, Employee, PostingStatus

RecordKey = Tuple[int, date]


class EmployeeDirectory:
    def __init__(self, employees: Iterable[Employee] = ()):
        self._by_id: Dict[int, Employee] = {}
        self._by_badge: Dict[str, Employee] = {}
        for employee in employees:
            self.add(employee)

    def add(self, employee: Employee) -> None:
        self._by_id[employee.id] = employee
        self._by_badge[employee.badge_id] = employee

    def get_employee_by_badge(self, badge_id: str) -> Optional[Employee]:
        return self._by_badge.get(badge_id)

    def get_employee(self, employee_id: int) -> Optional[Employee]:
        return self._by_id.get(employee_id)

    def employees_in_department(self, department: str) -> List[Employee]:
        return [e for e in self._by_id.values() if e.department == department]


class UnitOfWork:
    """Reads and a staged write for one (employee, date) key."""

    def __init__(self, key: RecordKey, existing: Optional[AttendanceRecord]):
        self.key = key
        self.existing = existing
        self.staged: Optional[AttendanceRecord] = None

    def put(self, record: AttendanceRecord) -> None:
        if record.key != self.key:
            raise StorageFailure(f"Record key {record.key} outside transaction scope {self.key}")
        self.staged = record


class AttendanceStore:
    """In-memory attendance store, one record per (employee_id, attendance_date).

    ``transaction`` serialises work on a single key and commits the staged
    record atomically; anything raised inside the block discards it.
    """

    def __init__(self, records: Iterable[AttendanceRecord] = ()):
        self._records: Dict[RecordKey, AttendanceRecord] = {}
        self._lock = threading.Lock()
        # key -> [lock, holders and waiters]
        self._key_locks: Dict[RecordKey, list] = {}
        self.available = True
        self.write_count = 0
        for record in records:
            self.put(record)

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Attendance store is unavailable")

    @contextmanager
    def _key_lock(self, key: RecordKey) -> Iterator[None]:
        with self._lock:
            entry = self._key_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[key]

    def get(self, employee_id: int, attendance_date: date) -> Optional[AttendanceRecord]:
        self._check_available()
        with self._lock:
            record = self._records.get((employee_id, attendance_date))
        return record.model_copy() if record is not None else None

    def put(self, record: AttendanceRecord) -> None:
        self._check_available()
        with self._lock:
            self._records[record.key] = record.model_copy()

    def list_records(self, start_date: Optional[date] = None, end_date: Optional[date] = None,
                     posting_status: Optional[PostingStatus] = None,
                     employee_ids: Optional[Iterable[int]] = None) -> List[AttendanceRecord]:
        self._check_available()
        wanted = set(employee_ids) if employee_ids is not None else None
        with self._lock:
            records = list(self._records.values())
        result = [
            r.model_copy() for r in records
            if (start_date is None or r.attendance_date >= start_date)
            and (end_date is None or r.attendance_date <= end_date)
            and (posting_status is None or r.posting_status == posting_status)
            and (wanted is None or r.employee_id in wanted)
        ]
        return sorted(result, key=lambda r: (r.attendance_date, r.employee_id))

    def mark_posted(self, keys: Iterable[RecordKey]) -> int:
        """Posting belongs to payroll; this stands in for it."""
        self._check_available()
        count = 0
        with self._lock:
            for key in keys:
                record = self._records.get(key)
                if record is not None and not record.is_posted:
                    self._records[key] = record.model_copy(update={"posting_status": PostingStatus.POSTED})
                    count += 1
        return count

    def _commit(self, record: AttendanceRecord) -> None:
        with self._lock:
            self._records[record.key] = record.model_copy()
            self.write_count += 1

    @contextmanager
    def transaction(self, employee_id: int, attendance_date: date) -> Iterator[UnitOfWork]:
        self._check_available()
        key = (employee_id, attendance_date)
        with self._key_lock(key):
            with self._lock:
                existing = self._records.get(key)
            unit = UnitOfWork(key, existing.model_copy() if existing is not None else None)
            yield unit
            if unit.staged is not None:
                self._check_available()
                try:
                    self._commit(unit.staged)
                except (StoreUnavailableError, StorageFailure):
                    raise
                except Exception as exc:
                    logging.error(f"Commit failed for employee_id {employee_id} on {attendance_date}: {exc}")
                    raise StorageFailure(str(exc), employee_id, attendance_date) from exc
