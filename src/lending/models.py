from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .timeutils import to_datetime

ReservationStatus = Literal["pending", "approved", "ready", "completed", "cancelled", "expired", "rejected"]
LoanStatus = Literal["pending", "approved", "borrowed", "returned", "rejected", "cancelled", "overdue"]
EventType = Literal[
    "created", "approved", "rejected", "ready", "completed", "cancelled", "expired", "converted", "reminder"
]

ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "approved", "ready"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "cancelled", "expired", "rejected"})

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def _timestamp(value: Any) -> Any:
    if value is None:
        return None
    try:
        return to_datetime(value)
    except TypeError as exc:
        raise ValueError(str(exc)) from exc


class ReservationCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    equipment_id: str = Field(..., min_length=1)
    reservation_date: date
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)
    purpose: str = Field(..., max_length=200)
    notes: str = Field(default="", max_length=500)
    # used when the reservation is converted to a loan
    expected_return_date: datetime | None = None

    _normalize_return = field_validator("expected_return_date", mode="before")(_timestamp)

    @field_validator("purpose")
    @classmethod
    def _purpose_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("purpose must not be empty")
        return value

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, value: str) -> str:
        return value.strip()


class ReservationUpdate(BaseModel):
    actor_id: str = Field(..., min_length=1)
    reservation_date: date | None = None
    start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    purpose: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("purpose")
    @classmethod
    def _purpose_not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("purpose must not be empty")
        return value

    @property
    def changes_time(self) -> bool:
        return any(v is not None for v in (self.reservation_date, self.start_time, self.end_time))


class Reservation(BaseModel):
    reservation_id: str
    equipment_id: str
    user_id: str
    reservation_date: date
    start_time: datetime
    end_time: datetime
    expected_return_date: datetime | None = None
    purpose: str
    notes: str = ""
    status: ReservationStatus = "pending"
    approved_by: str | None = None
    approved_at: datetime | None = None
    updated_by: str | None = None
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    converted_to_loan_id: str | None = None
    converted_at: datetime | None = None
    reminder_sent: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _normalize_timestamps = field_validator(
        "start_time", "end_time", "expected_return_date", "approved_at", "converted_at", "created_at", "updated_at",
        mode="before",
    )(_timestamp)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class StatusChange(BaseModel):
    actor_id: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=500)


class CancelRequest(StatusChange):
    as_admin: bool = False


class TimeSlot(BaseModel):
    time: str
    available: bool
    conflicting_reservation_id: str | None = None
    conflicting_status: ReservationStatus | None = None


class Equipment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    equipment_id: str
    name: str
    category: str | None = None
    status: str = "available"


class Loan(BaseModel):
    loan_id: str
    user_id: str
    equipment_id: str
    equipment_name: str | None = None
    borrow_date: datetime
    expected_return_date: datetime
    purpose: str = ""
    notes: str = ""
    status: LoanStatus = "pending"
    approved_by: str | None = None
    approved_at: datetime | None = None
    reservation_id: str | None = None
    created_at: datetime | None = None

    _normalize_timestamps = field_validator(
        "borrow_date", "expected_return_date", "approved_at", "created_at", mode="before"
    )(_timestamp)


class ConversionResult(BaseModel):
    reservation: Reservation
    loan: Loan


class ClosedDate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    day: date
    reason: str = ""
    recurring: Literal["yearly"] | None = None

    def matches(self, day: date) -> bool:
        if self.day == day:
            return True
        return self.recurring == "yearly" and (self.day.month, self.day.day) == (day.month, day.day)


class LendingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # None keeps the configured advance_booking_days rule
    max_advance_booking_days: int | None = Field(default=None, ge=0)
    closed_dates: list[ClosedDate] = Field(default_factory=list)
    discord_enabled: bool = False
    discord_webhook_url: str | None = None

    def is_date_closed(self, day: date) -> bool:
        return any(closed.matches(day) for closed in self.closed_dates)


class ReservationEvent(BaseModel):
    type: EventType
    reservation: Reservation
    actor_id: str | None = None
    reason: str | None = None
    loan_id: str | None = None


class Notification(BaseModel):
    notification_id: str
    audience: Literal["user", "admins"] = "user"
    user_id: str | None = None
    type: EventType
    title: str
    message: str
    reservation_id: str
    is_read: bool = False
    created_at: datetime | None = None
