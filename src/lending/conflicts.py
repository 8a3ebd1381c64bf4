from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, date, datetime, tzinfo
from typing import Protocol

from .models import ACTIVE_STATUSES, Reservation
from .timeutils import combine


class ReservationReader(Protocol):
    def list_reservations_for_equipment(self, equipment_id: str, day: date) -> list[Reservation]: ...


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open interval overlap; touching intervals do not overlap."""
    return (
        (other_start <= start < other_end)
        or (other_start < end <= other_end)
        or (start <= other_start and end >= other_end)
    )


def active_reservations(store: ReservationReader, equipment_id: str, day: date) -> list[Reservation]:
    reservations = store.list_reservations_for_equipment(equipment_id, day)
    active = [r for r in reservations if r.status in ACTIVE_STATUSES and r.reservation_date == day]
    return sorted(active, key=lambda r: r.start_time)


def find_conflict(
    reservations: Iterable[Reservation],
    start: datetime,
    end: datetime,
    exclude_reservation_id: str | None = None,
) -> Reservation | None:
    for reservation in reservations:
        if exclude_reservation_id and reservation.reservation_id == exclude_reservation_id:
            continue
        if reservation.status not in ACTIVE_STATUSES:
            continue
        if overlaps(start, end, reservation.start_time, reservation.end_time):
            return reservation
    return None


def is_slot_available(
    store: ReservationReader,
    equipment_id: str,
    day: date,
    start_time: str,
    end_time: str,
    exclude_reservation_id: str | None = None,
    tz: tzinfo = UTC,
) -> bool:
    # lookup errors propagate: this feeds write decisions
    existing = active_reservations(store, equipment_id, day)
    start = combine(day, start_time, tz)
    end = combine(day, end_time, tz)
    return find_conflict(existing, start, end, exclude_reservation_id) is None
