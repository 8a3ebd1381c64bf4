from __future__ import annotations

from datetime import timedelta

from aws_lambda_powertools import Logger

from .errors import ConcurrentUpdateError, InvalidTransitionError, LendingError
from .models import ReservationEvent, ReservationStatus
from .service import ReservationService

logger = Logger()

SWEEP_STATUSES: tuple[ReservationStatus, ...] = ("approved", "ready")


def _sweep_status(service: ReservationService, status: ReservationStatus) -> int:
    now = service.now()
    overdue = [r for r in service.store.list_reservations_by_status(status) if r.end_time < now]
    expired = 0
    for reservation in overdue:
        try:
            service.expire(reservation)
        except (ConcurrentUpdateError, InvalidTransitionError):
            # changed by someone else since the scan
            logger.info("Skipping reservation changed during sweep", extra={"reservation_id": reservation.reservation_id})
            continue
        except LendingError:
            logger.exception("Could not expire reservation", extra={"reservation_id": reservation.reservation_id})
            continue
        expired += 1
    return expired


def sweep_expired(service: ReservationService) -> int:
    """Expire approved/ready reservations whose end time has passed.

    Each status is scanned independently; a failing scan is logged and the
    other one still runs. Any other failure yields 0.
    """
    total = 0
    try:
        for status in SWEEP_STATUSES:
            try:
                total += _sweep_status(service, status)
            except LendingError:
                logger.exception("Could not sweep reservations", extra={"status": status})
    except Exception:
        logger.exception("Expiration sweep failed")
        return 0
    logger.info("Expiration sweep finished", extra={"expired": total})
    return total


def send_due_reminders(service: ReservationService) -> int:
    """Remind requesters whose approved reservation starts within the lead time, once each."""
    now = service.now()
    horizon = now + timedelta(minutes=service.rules.reminder_lead_minutes)
    try:
        approved = service.store.list_reservations_by_status("approved")
    except LendingError:
        logger.exception("Could not load reservations for reminders")
        return 0

    sent = 0
    for reservation in approved:
        if reservation.reminder_sent or not now <= reservation.start_time <= horizon:
            continue
        try:
            updated = service.store.update_reservation_fields(
                reservation.reservation_id,
                {"reminder_sent": True},
                expected_status="approved",
                require={"reminder_sent": False},
            )
        except LendingError:
            logger.warning("Could not mark reminder as sent", extra={"reservation_id": reservation.reservation_id})
            continue
        service.notify([ReservationEvent(type="reminder", reservation=updated)])
        sent += 1
    return sent
