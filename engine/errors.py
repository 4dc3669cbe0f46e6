from datetime import date
from typing import Optional


class ReconcileError(Exception):
    """Base error for the reconciliation engine."""

    def __init__(self, message: str, employee_id: Optional[int] = None,
                 attendance_date: Optional[date] = None):
        self.message = message
        self.employee_id = employee_id
        self.attendance_date = attendance_date
        super().__init__(message)

    def __str__(self) -> str:
        if self.employee_id is None:
            return self.message
        return f"{self.message} (employee_id={self.employee_id}, date={self.attendance_date})"


class ParseFailure(ReconcileError):
    """A timestamp or numeric field could not be interpreted."""


class LookupFailure(ReconcileError):
    """An external employee id did not resolve to an active employee."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Unknown or inactive badge ID: {external_id}")


class ImmutabilityViolation(ReconcileError):
    """Attempt to recompute a record that payroll has already posted."""


class StorageFailure(ReconcileError):
    """An upsert failed; the unit of work was rolled back."""


class StoreUnavailableError(ReconcileError):
    """The attendance store cannot be reached. Aborts the whole batch."""


class ManualEntryError(ReconcileError):
    """A manual attendance entry failed validation."""


class DuplicateRecordError(ManualEntryError):
    pass
