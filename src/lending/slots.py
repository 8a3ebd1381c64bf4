from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, timedelta

from aws_lambda_powertools import Logger

from .config import ReservationRules
from .conflicts import ReservationReader, active_reservations, find_conflict
from .errors import DataAccessError
from .models import Reservation, TimeSlot
from .timeutils import start_of_day

logger = Logger()


def iter_slot_starts(day: date, rules: ReservationRules) -> Iterator[datetime]:
    opening = start_of_day(day, rules.tz)
    minute = rules.open_hour * 60
    closing = rules.close_hour * 60
    while minute < closing:
        yield opening + timedelta(minutes=minute)
        minute += rules.slot_minutes


def list_time_slots(
    store: ReservationReader, equipment_id: str, day: date, rules: ReservationRules
) -> list[TimeSlot]:
    """Business-hours slots for one equipment/day, ordered by time.

    Existing reservations are fetched once. A failed lookup is logged and the
    day is shown without known conflicts rather than failing the listing.
    """
    existing: list[Reservation]
    try:
        existing = active_reservations(store, equipment_id, day)
    except DataAccessError:
        logger.exception(
            "Could not load reservations for slot listing",
            extra={"equipment_id": equipment_id, "day": day.isoformat()},
        )
        existing = []

    slots: list[TimeSlot] = []
    length = timedelta(minutes=rules.slot_minutes)
    for start in iter_slot_starts(day, rules):
        conflict = find_conflict(existing, start, start + length)
        slots.append(
            TimeSlot(
                time=start.strftime("%H:%M"),
                available=conflict is None,
                conflicting_reservation_id=conflict.reservation_id if conflict else None,
                conflicting_status=conflict.status if conflict else None,
            )
        )
    return slots
