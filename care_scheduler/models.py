"""
Domain models for appointments and caregiver availability.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

MINUTES_PER_DAY = 24 * 60

# minutes since midnight; 1440 marks the end of the day
TimeOfDay = Annotated[int, Field(ge=0, le=MINUTES_PER_DAY)]


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def commits_time(self) -> bool:
        return self in (AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS)


TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.REJECTED,
    }
)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class Task(BaseModel):
    id: str
    name: str
    required: bool = True
    completed: bool = False


class ContactInfo(BaseModel):
    """Requesting / emergency contact identity used for job compatibility."""

    name: str
    phone: str | None = None


class StatusChange(BaseModel):
    from_status: AppointmentStatus | None
    to_status: AppointmentStatus
    actor_id: str
    at: datetime
    reason: str | None = None


class Appointment(BaseModel):
    id: str
    requester_id: str
    caregiver_id: str
    care_recipient_id: str
    service_date: date
    start_time: TimeOfDay
    end_time: TimeOfDay | None = None  # open-ended when None
    package_label: str
    amount: int = Field(ge=0)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: AppointmentStatus = AppointmentStatus.PENDING
    response_deadline: datetime | None = None
    tasks: list[Task] = Field(default_factory=list)
    contact: ContactInfo | None = None
    location: str | None = None
    has_reviewed: bool = False
    cancel_reason: str | None = None
    history: list[StatusChange] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_times(self) -> "Appointment":
        if self.start_time >= self.hold_end:
            if self.end_time is None:
                raise ValueError("start_time must be before the end of the day")
            raise ValueError("start_time must be before end_time")
        if self.response_deadline is not None and (
            self.status != AppointmentStatus.PENDING
        ):
            raise ValueError("response_deadline is only kept while pending")
        return self

    @property
    def hold_end(self) -> int:
        """End of the time this appointment claims on the caregiver's day."""
        return self.end_time if self.end_time is not None else MINUTES_PER_DAY

    def incomplete_required_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.required and not t.completed]


class RangeOrigin(str, Enum):
    MANUAL_BUSY = "manual_busy"
    BOOKING_DERIVED = "booking_derived"


class TimeRange(BaseModel):
    start: TimeOfDay
    end: TimeOfDay
    origin: RangeOrigin
    appointment_id: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "TimeRange":
        if self.start >= self.end:
            raise ValueError("range start must be before range end")
        if self.origin == RangeOrigin.BOOKING_DERIVED and not self.appointment_id:
            raise ValueError("booking ranges must reference an appointment")
        if self.origin == RangeOrigin.MANUAL_BUSY and self.appointment_id:
            raise ValueError("manual ranges cannot reference an appointment")
        return self

    @property
    def is_booking(self) -> bool:
        return self.origin == RangeOrigin.BOOKING_DERIVED


class AvailabilityDay(BaseModel):
    caregiver_id: str
    date: date
    full_day_free: bool = False
    ranges: list[TimeRange] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_free(self) -> "AvailabilityDay":
        if self.full_day_free and self.ranges:
            raise ValueError("a fully free day carries no ranges")
        return self

    def booking_ranges(self) -> list[TimeRange]:
        return [r for r in self.ranges if r.is_booking]

    def manual_ranges(self) -> list[TimeRange]:
        return [r for r in self.ranges if not r.is_booking]


class DayStatusKind(str, Enum):
    FULLY_FREE = "fully_free"
    MIXED = "mixed"
    NONE_DECLARED = "none_declared"  # callers treat as busy


class DayStatus(BaseModel):
    kind: DayStatusKind
    ranges: list[TimeRange] = Field(default_factory=list)


class BusyRange(BaseModel):
    start: TimeOfDay
    end: TimeOfDay

    @model_validator(mode="after")
    def _check_range(self) -> "BusyRange":
        if self.start >= self.end:
            raise ValueError("range start must be before range end")
        return self


class FullDayFree(BaseModel):
    mode: Literal["full_day_free"] = "full_day_free"


class ManualBusyRanges(BaseModel):
    mode: Literal["manual_busy"] = "manual_busy"
    ranges: list[BusyRange] = Field(default_factory=list)


AvailabilitySpec = Annotated[
    FullDayFree | ManualBusyRanges, Field(discriminator="mode")
]


class StartConflict(BaseModel):
    blocking_appointment_id: str
    other_party_name: str | None
    other_location: str | None


class AppointmentFilter(BaseModel):
    requester_id: str | None = None
    caregiver_id: str | None = None
    status: AppointmentStatus | None = None
    date_from: date | None = None
    date_to: date | None = None
