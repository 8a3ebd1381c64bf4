from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Protocol

from .config import ReservationRules
from .conflicts import ReservationReader, is_slot_available
from .errors import ReservationValidationError
from .models import LendingSettings, Loan
from .timeutils import combine, duration_minutes, end_of_day, start_of_day

PAST_DATE = "Cannot reserve a date in the past"
END_BEFORE_START = "End time must be after start time"
SLOT_UNAVAILABLE = "Selected time slot is unavailable, please choose another time"
DATE_CLOSED = "The selected date is closed"
LOAN_CONFLICT = "You already have this equipment on loan on the selected date"

# loans in these states hold the equipment for their whole borrow window
_HOLDING_LOAN_STATUSES = frozenset({"approved", "borrowed"})


class LoanReader(Protocol):
    def list_loans_for_user(self, user_id: str) -> list[Loan]: ...


class ValidationStore(ReservationReader, LoanReader, Protocol):
    pass


def has_loan_conflict(store: LoanReader, user_id: str, equipment_id: str, day: date, tz: tzinfo) -> bool:
    first, last = start_of_day(day, tz), end_of_day(day, tz)
    for loan in store.list_loans_for_user(user_id):
        if loan.equipment_id != equipment_id or loan.status not in _HOLDING_LOAN_STATUSES:
            continue
        if loan.borrow_date <= last and loan.expected_return_date >= first:
            return True
    return False


def validate_reservation(
    store: ValidationStore,
    rules: ReservationRules,
    *,
    equipment_id: str,
    day: date,
    start_time: str,
    end_time: str,
    now: datetime,
    exclude_reservation_id: str | None = None,
    settings: LendingSettings | None = None,
    user_id: str | None = None,
) -> None:
    """Raise ReservationValidationError with the first rule the request breaks.

    Date rules come first, then duration, then the slower lookups (closed
    dates, the requester's loans, conflicting reservations). Lookup failures
    propagate: an unverified slot must never be treated as free.
    """
    tz = rules.tz
    today = now.astimezone(tz).date()
    if day < today:
        raise ReservationValidationError(PAST_DATE)

    horizon = rules.advance_booking_days
    if settings is not None and settings.max_advance_booking_days is not None:
        horizon = settings.max_advance_booking_days
    if day > today + timedelta(days=horizon):
        raise ReservationValidationError(f"Reservations can be made at most {horizon} days in advance")

    if settings is not None and settings.is_date_closed(day):
        raise ReservationValidationError(DATE_CLOSED)

    duration = duration_minutes(combine(day, start_time, tz), combine(day, end_time, tz))
    if duration <= 0:
        raise ReservationValidationError(END_BEFORE_START)
    if duration < rules.min_duration_minutes:
        raise ReservationValidationError(
            f"Reservation must last at least {rules.min_duration_minutes} minutes"
        )
    if duration > rules.max_duration_minutes:
        raise ReservationValidationError(
            f"Reservation cannot last more than {rules.max_duration_minutes} minutes"
        )

    if user_id and has_loan_conflict(store, user_id, equipment_id, day, tz):
        raise ReservationValidationError(LOAN_CONFLICT)

    if not is_slot_available(store, equipment_id, day, start_time, end_time, exclude_reservation_id, tz):
        raise ReservationValidationError(SLOT_UNAVAILABLE)
