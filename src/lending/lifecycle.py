"""Reservation state machine.

Everything here is pure: a plan function takes the current reservation and
returns the field changes to persist plus the events to emit, or raises a
state error. Persisting and notifying is the service's job.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from .errors import AlreadyConvertedError, InvalidTransitionError
from .models import ACTIVE_STATUSES, Loan, Reservation, ReservationEvent, ReservationStatus

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "rejected", "cancelled"}),
    "approved": frozenset({"ready", "cancelled", "expired"}),
    "ready": frozenset({"completed", "cancelled", "expired"}),
}

CONVERTIBLE_STATUSES: frozenset[str] = frozenset({"approved", "ready"})

CANNOT_CANCEL = "Reservation cannot be cancelled"
ALREADY_CONVERTED = "Reservation has already been converted to a loan"
NOT_CONVERTIBLE = "Only approved or ready reservations can be converted to a loan"


class Transition(BaseModel):
    reservation_id: str
    from_status: ReservationStatus
    to_status: ReservationStatus
    changes: dict[str, Any]
    events: list[ReservationEvent]


class Conversion(BaseModel):
    transition: Transition
    loan: Loan


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def plan_transition(
    reservation: Reservation,
    target: ReservationStatus,
    *,
    now: datetime,
    actor_id: str | None = None,
    reason: str | None = None,
) -> Transition:
    if not can_transition(reservation.status, target):
        raise InvalidTransitionError(f"Cannot change reservation from {reservation.status} to {target}")

    changes: dict[str, Any] = {"status": target, "updated_by": actor_id}
    if target == "approved":
        if not actor_id:
            raise InvalidTransitionError("Approving a reservation requires an approver")
        changes["approved_by"] = actor_id
        changes["approved_at"] = now
    elif target == "rejected":
        changes["rejection_reason"] = reason
    elif target == "cancelled":
        changes["cancellation_reason"] = reason

    updated = reservation.model_copy(update=changes)
    return Transition(
        reservation_id=reservation.reservation_id,
        from_status=reservation.status,
        to_status=target,
        changes=changes,
        events=[ReservationEvent(type=target, reservation=updated, actor_id=actor_id, reason=reason)],
    )


def plan_cancellation(
    reservation: Reservation, *, now: datetime, actor_id: str, reason: str | None = None
) -> Transition:
    if reservation.status not in ACTIVE_STATUSES:
        raise InvalidTransitionError(CANNOT_CANCEL)
    return plan_transition(reservation, "cancelled", now=now, actor_id=actor_id, reason=reason)


def plan_conversion(
    reservation: Reservation,
    *,
    now: datetime,
    admin_id: str,
    loan_id: str,
    equipment_name: str | None = None,
    default_loan_days: int = 7,
) -> Conversion:
    """Plan turning an approved/ready reservation into an auto-approved loan.

    The loan borrows from the reservation's start time and is due back on
    ``expected_return_date``, or ``default_loan_days`` after borrowing when
    none was given. The reservation ends up ``completed``.
    """
    if reservation.converted_to_loan_id:
        raise AlreadyConvertedError(ALREADY_CONVERTED)
    if reservation.status not in CONVERTIBLE_STATUSES:
        raise InvalidTransitionError(NOT_CONVERTIBLE)

    borrow_date = reservation.start_time
    expected_return = reservation.expected_return_date or borrow_date + timedelta(days=default_loan_days)
    loan = Loan(
        loan_id=loan_id,
        user_id=reservation.user_id,
        equipment_id=reservation.equipment_id,
        equipment_name=equipment_name,
        borrow_date=borrow_date,
        expected_return_date=expected_return,
        purpose=reservation.purpose,
        notes=reservation.notes,
        status="approved",
        approved_by=admin_id,
        approved_at=now,
        reservation_id=reservation.reservation_id,
        created_at=now,
    )

    changes: dict[str, Any] = {
        "status": "completed",
        "converted_to_loan_id": loan_id,
        "converted_at": now,
        "updated_by": admin_id,
    }
    updated = reservation.model_copy(update=changes)
    transition = Transition(
        reservation_id=reservation.reservation_id,
        from_status=reservation.status,
        to_status="completed",
        changes=changes,
        events=[ReservationEvent(type="converted", reservation=updated, actor_id=admin_id, loan_id=loan_id)],
    )
    return Conversion(transition=transition, loan=loan)
