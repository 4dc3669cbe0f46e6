from datetime import datetime, time, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, computed_field

from utils.timeutils import ZERO


class PunchRole(str, Enum):
    CLOCK_IN = "Clock In"
    BREAK_IN = "Break In"
    BREAK_OUT = "Break Out"
    CLOCK_OUT = "Clock Out"


# roles after which the employee is on the clock
ON_SHIFT_ROLES = (PunchRole.CLOCK_IN, PunchRole.BREAK_OUT)


class Source(str, Enum):
    BIOMETRIC = "biometric"
    MANUAL = "manual"
    IMPORT = "import"
    SLVL_SYNC = "slvl_sync"
    HOLIDAY_SET = "holiday_set"


class PostingStatus(str, Enum):
    NOT_POSTED = "not_posted"
    POSTED = "posted"


class Employee(BaseModel):
    id: int
    badge_id: str
    is_active: bool = True
    name: Optional[str] = None
    department: Optional[str] = None


class RawPunch(BaseModel):
    employee_external_id: str
    timestamp: datetime
    device_reported_state: Optional[int] = None

    @property
    def device_status(self) -> str:
        if self.device_reported_state is None:
            return "Unknown"
        if self.device_reported_state == 1:
            return "Device reported: Clock Out"
        return "Device reported: Clock In"


class ClassifiedPunch(RawPunch):
    role: PunchRole
    missing_punch: bool = False
    missing_punch_note: Optional[str] = None


class AttendanceRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    employee_id: int
    attendance_date: date
    time_in: Optional[datetime] = None
    time_out: Optional[datetime] = None
    break_in: Optional[datetime] = None
    break_out: Optional[datetime] = None
    next_day_timeout: Optional[datetime] = None
    is_nightshift: bool = False
    hours_worked: Decimal = ZERO
    late_minutes: Decimal = ZERO
    undertime_minutes: Decimal = ZERO
    source: Source = Source.BIOMETRIC
    posting_status: PostingStatus = PostingStatus.NOT_POSTED
    notes: Optional[str] = None

    @property
    def key(self):
        return (self.employee_id, self.attendance_date)

    @property
    def is_posted(self) -> bool:
        return self.posting_status == PostingStatus.POSTED

    @property
    def effective_time_out(self) -> Optional[datetime]:
        if self.is_nightshift and self.next_day_timeout is not None:
            return self.next_day_timeout
        return self.time_out

    @property
    def has_punch_data(self) -> bool:
        return any(v is not None for v in
                   (self.time_in, self.break_in, self.break_out, self.effective_time_out))

    @property
    def is_halfday(self) -> bool:
        return self.time_in is not None and self.hours_worked == 0


# fields the orchestrator compares before deciding to write
RECORD_DELTA_FIELDS = (
    "time_in", "time_out", "break_in", "break_out", "next_day_timeout", "is_nightshift",
    "hours_worked", "late_minutes", "undertime_minutes", "source", "notes",
)


class MetricsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    hours_worked: Decimal = ZERO
    late_minutes: Decimal = ZERO
    undertime_minutes: Decimal = ZERO
    is_halfday: bool = False
    still_clocked_in: bool = False
    expected_time_in: Optional[datetime] = None
    rounded_time_out: Optional[datetime] = None
    break_minutes: int = 0


class ManualEntry(BaseModel):
    employee_id: int
    attendance_date: date
    time_in: str
    time_out: Optional[str] = None
    break_in: Optional[str] = None
    break_out: Optional[str] = None
    next_day_timeout: Optional[str] = None
    is_nightshift: bool = False
    remarks: Optional[str] = Field(default=None, max_length=500)


class BatchReport(BaseModel):
    processed: int = 0
    created: int = 0
    recalculated: int = 0
    unchanged: int = 0
    posted_skipped: int = 0
    parse_failures: int = 0
    lookup_failures: int = 0
    storage_failures: int = 0
    missing_punch_flagged: int = 0
    still_clocked_in: int = 0
    cancelled: int = 0
    errors: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def skipped(self) -> int:
        return self.posted_skipped + self.parse_failures + self.lookup_failures + self.storage_failures


class DtrProblem(BaseModel):
    type: str
    message: str
    severity: str


class DtrRecordReport(BaseModel):
    employee_id: int
    attendance_date: date
    problems: List[DtrProblem]
    severity: str
    time_in: Optional[time] = None
    time_out: Optional[time] = None
    hours_worked: Decimal = ZERO
    is_nightshift: bool = False
