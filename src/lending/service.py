from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from datetime import date, datetime
from types import ModuleType
from typing import Any, Protocol

from aws_lambda_powertools import Logger

from . import dal
from .config import ReservationRules, load_rules
from .conflicts import is_slot_available
from .errors import AlreadyConvertedError, ConcurrentUpdateError, InvalidTransitionError, NotAllowedError
from .lifecycle import Transition, plan_cancellation, plan_conversion, plan_transition
from .models import (
    ConversionResult,
    LendingSettings,
    Reservation,
    ReservationCreate,
    ReservationEvent,
    ReservationStatus,
    ReservationUpdate,
    TimeSlot,
)
from .notifications import NotificationDispatcher
from .slots import list_time_slots
from .timeutils import Clock, combine, utc_now
from .validation import validate_reservation

logger = Logger()

SLOT_TAKEN = "The selected time slot was just booked by someone else, please try again"
NOT_OWNER = "You are not allowed to cancel this reservation"
NOT_RESCHEDULABLE = "Only pending or approved reservations can be rescheduled"

_RESCHEDULABLE_STATUSES = frozenset({"pending", "approved"})


class Dispatcher(Protocol):
    def dispatch(self, events: Iterable[ReservationEvent]) -> int: ...


def _new_id() -> str:
    return str(uuid.uuid4())


class ReservationService:
    """Validates, persists and moves reservations through their lifecycle.

    Status changes are planned by :mod:`lending.lifecycle`, written with a
    condition on the status they were planned from, and only then announced
    through the dispatcher. A failed notification never undoes a transition.
    """

    def __init__(
        self,
        store: ModuleType | Any = dal,
        notifier: Dispatcher | None = None,
        rules: ReservationRules | None = None,
        clock: Clock = utc_now,
        settings_provider: Callable[[], LendingSettings] | None = None,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self.store = store
        self.rules = rules or load_rules()
        self._notifier = notifier or NotificationDispatcher.default()
        self._clock = clock
        self._settings = settings_provider or store.get_settings
        self._new_id = id_factory

    def now(self) -> datetime:
        return self._clock()

    def notify(self, events: Iterable[ReservationEvent]) -> None:
        self._notifier.dispatch(events)

    # Queries

    def get_reservation(self, reservation_id: str) -> Reservation:
        return self.store.get_reservation(reservation_id)

    def list_reservations(self, **filters: Any) -> list[Reservation]:
        return self.store.list_reservations(**filters)

    def list_user_reservations(self, user_id: str) -> list[Reservation]:
        return self.store.list_reservations(user_id=user_id)

    def list_time_slots(self, equipment_id: str, day: date) -> list[TimeSlot]:
        return list_time_slots(self.store, equipment_id, day, self.rules)

    def is_slot_available(
        self,
        equipment_id: str,
        day: date,
        start_time: str,
        end_time: str,
        exclude_reservation_id: str | None = None,
    ) -> bool:
        return is_slot_available(
            self.store, equipment_id, day, start_time, end_time, exclude_reservation_id, self.rules.tz
        )

    def validate(
        self,
        equipment_id: str,
        day: date,
        start_time: str,
        end_time: str,
        *,
        exclude_reservation_id: str | None = None,
        user_id: str | None = None,
    ) -> None:
        validate_reservation(
            self.store,
            self.rules,
            equipment_id=equipment_id,
            day=day,
            start_time=start_time,
            end_time=end_time,
            now=self.now(),
            exclude_reservation_id=exclude_reservation_id,
            settings=self._settings(),
            user_id=user_id,
        )

    # Writes

    def create_reservation(self, payload: ReservationCreate) -> Reservation:
        tz = self.rules.tz
        for attempt in range(1, self.rules.booking_attempts + 1):
            guard_version = self.store.read_guard_version(payload.equipment_id, payload.reservation_date)
            self.validate(
                payload.equipment_id,
                payload.reservation_date,
                payload.start_time,
                payload.end_time,
                user_id=payload.user_id,
            )
            reservation = Reservation(
                reservation_id=self._new_id(),
                equipment_id=payload.equipment_id,
                user_id=payload.user_id,
                reservation_date=payload.reservation_date,
                start_time=combine(payload.reservation_date, payload.start_time, tz),
                end_time=combine(payload.reservation_date, payload.end_time, tz),
                expected_return_date=payload.expected_return_date,
                purpose=payload.purpose,
                notes=payload.notes,
                status="pending",
            )
            try:
                created = self.store.create_reservation(reservation, guard_version=guard_version)
            except ConcurrentUpdateError:
                logger.warning(
                    "Equipment day changed while booking, validating again",
                    extra={"equipment_id": payload.equipment_id, "attempt": attempt},
                )
                continue
            self.notify([ReservationEvent(type="created", reservation=created, actor_id=payload.user_id)])
            return created
        raise ConcurrentUpdateError(SLOT_TAKEN)

    def reschedule_reservation(self, reservation_id: str, payload: ReservationUpdate) -> Reservation:
        current = self.store.get_reservation(reservation_id)
        if current.user_id != payload.actor_id:
            raise NotAllowedError("You are not allowed to change this reservation")
        if current.status not in _RESCHEDULABLE_STATUSES:
            raise InvalidTransitionError(NOT_RESCHEDULABLE)

        changes: dict[str, Any] = {"updated_by": payload.actor_id}
        if payload.purpose is not None:
            changes["purpose"] = payload.purpose
        if payload.notes is not None:
            changes["notes"] = payload.notes.strip()
        if not payload.changes_time:
            return self.store.update_reservation_fields(reservation_id, changes, expected_status=current.status)

        tz = self.rules.tz
        day = payload.reservation_date or current.reservation_date
        start_time = payload.start_time or current.start_time.astimezone(tz).strftime("%H:%M")
        end_time = payload.end_time or current.end_time.astimezone(tz).strftime("%H:%M")
        changes.update(
            reservation_date=day,
            start_time=combine(day, start_time, tz),
            end_time=combine(day, end_time, tz),
        )
        for attempt in range(1, self.rules.booking_attempts + 1):
            guard_version = self.store.read_guard_version(current.equipment_id, day)
            self.validate(
                current.equipment_id,
                day,
                start_time,
                end_time,
                exclude_reservation_id=reservation_id,
                user_id=current.user_id,
            )
            try:
                return self.store.reschedule_reservation(current, changes, guard_version=guard_version)
            except ConcurrentUpdateError:
                logger.warning(
                    "Equipment day changed while rescheduling, validating again",
                    extra={"reservation_id": reservation_id, "attempt": attempt},
                )
                current = self.store.get_reservation(reservation_id)
                if current.status not in _RESCHEDULABLE_STATUSES:
                    raise InvalidTransitionError(NOT_RESCHEDULABLE)
        raise ConcurrentUpdateError(SLOT_TAKEN)

    def apply(self, transition: Transition) -> Reservation:
        """Persist a planned transition, then announce it."""
        updated = self.store.update_reservation_fields(
            transition.reservation_id, transition.changes, expected_status=transition.from_status
        )
        logger.info(
            "Reservation status changed",
            extra={
                "reservation_id": transition.reservation_id,
                "from_status": transition.from_status,
                "to_status": transition.to_status,
            },
        )
        self.notify(event.model_copy(update={"reservation": updated}) for event in transition.events)
        return updated

    def change_status(
        self,
        reservation_id: str,
        target: ReservationStatus,
        *,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> Reservation:
        current = self.store.get_reservation(reservation_id)
        transition = plan_transition(current, target, now=self.now(), actor_id=actor_id, reason=reason)
        return self.apply(transition)

    def approve(self, reservation_id: str, approver_id: str) -> Reservation:
        return self.change_status(reservation_id, "approved", actor_id=approver_id)

    def reject(self, reservation_id: str, actor_id: str, reason: str | None = None) -> Reservation:
        return self.change_status(reservation_id, "rejected", actor_id=actor_id, reason=reason)

    def mark_ready(self, reservation_id: str, actor_id: str) -> Reservation:
        return self.change_status(reservation_id, "ready", actor_id=actor_id)

    def complete(self, reservation_id: str, actor_id: str) -> Reservation:
        return self.change_status(reservation_id, "completed", actor_id=actor_id)

    def expire(self, reservation: Reservation) -> Reservation:
        return self.apply(plan_transition(reservation, "expired", now=self.now()))

    def cancel(
        self,
        reservation_id: str,
        actor_id: str,
        reason: str | None = None,
        *,
        as_admin: bool = False,
    ) -> Reservation:
        current = self.store.get_reservation(reservation_id)
        if not as_admin and current.user_id != actor_id:
            raise NotAllowedError(NOT_OWNER)
        return self.apply(plan_cancellation(current, now=self.now(), actor_id=actor_id, reason=reason))

    def convert_to_loan(self, reservation_id: str, admin_id: str) -> ConversionResult:
        """Turn an approved or ready reservation into an auto-approved loan.

        Loan creation and the reservation update commit together. When the
        write loses a race, the reservation is read again and the conversion
        re-planned once against the fresh state.
        """
        for attempt in (1, 2):
            current = self.store.get_reservation(reservation_id)
            equipment = self.store.get_equipment(current.equipment_id)
            conversion = plan_conversion(
                current,
                now=self.now(),
                admin_id=admin_id,
                loan_id=self._new_id(),
                equipment_name=equipment.name if equipment else None,
                default_loan_days=self.rules.default_loan_days,
            )
            try:
                updated = self.store.convert_reservation(
                    reservation_id,
                    conversion.transition.changes,
                    conversion.loan,
                    expected_status=current.status,
                )
            except ConcurrentUpdateError:
                logger.warning(
                    "Reservation changed during conversion",
                    extra={"reservation_id": reservation_id, "attempt": attempt},
                )
                continue
            self.notify(
                event.model_copy(update={"reservation": updated}) for event in conversion.transition.events
            )
            return ConversionResult(reservation=updated, loan=conversion.loan)

        latest = self.store.get_reservation(reservation_id)
        if latest.converted_to_loan_id:
            raise AlreadyConvertedError("Reservation has already been converted to a loan")
        raise ConcurrentUpdateError("Reservation changed during conversion, please try again")
