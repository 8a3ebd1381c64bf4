from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

import requests
from aws_lambda_powertools import Logger

from . import dal
from .models import Equipment, EventType, LendingSettings, Notification, ReservationEvent

logger = Logger()

DISCORD_WEBHOOK_PREFIXES = (
    "https://discord.com/api/webhooks/",
    "https://discordapp.com/api/webhooks/",
)

# (title, message template, audience)
_MESSAGES: dict[EventType, tuple[str, str, str]] = {
    "created": ("New reservation request", "{user} requested {equipment} on {day}", "admins"),
    "approved": ("Reservation approved", "Your reservation for {equipment} on {day} was approved", "user"),
    "rejected": ("Reservation rejected", "Your reservation for {equipment} on {day} was rejected", "user"),
    "ready": ("Equipment ready for pickup", "{equipment} is ready for pickup on {day}", "user"),
    "completed": ("Reservation completed", "Your reservation for {equipment} is complete", "user"),
    "cancelled": ("Reservation cancelled", "The reservation for {equipment} on {day} was cancelled", "user"),
    "expired": ("Reservation expired", "Your reservation for {equipment} on {day} expired", "user"),
    "converted": ("Reservation converted to loan", "Your reservation for {equipment} is now an active loan", "user"),
    "reminder": ("Reservation reminder", "Your reservation for {equipment} starts at {start}", "user"),
}

_DISCORD_COLORS: dict[EventType, int] = {
    "created": 0x9B59B6,
    "approved": 0x2ECC71,
    "rejected": 0xE74C3C,
    "ready": 0x3498DB,
    "completed": 0x95A5A6,
    "cancelled": 0xE67E22,
    "expired": 0xE74C3C,
    "converted": 0x1ABC9C,
    "reminder": 0xF1C40F,
}


class Notifier(Protocol):
    def send(self, event: ReservationEvent, equipment: Equipment | None) -> None: ...


def _equipment_label(event: ReservationEvent, equipment: Equipment | None) -> str:
    return equipment.name if equipment else event.reservation.equipment_id


def render_message(event: ReservationEvent, equipment: Equipment | None) -> tuple[str, str, str]:
    title, template, audience = _MESSAGES[event.type]
    reservation = event.reservation
    message = template.format(
        user=reservation.user_id,
        equipment=_equipment_label(event, equipment),
        day=reservation.reservation_date.isoformat(),
        start=reservation.start_time.isoformat(),
    )
    if event.reason:
        message = f"{message}. Reason: {event.reason}"
    return title, message, audience


def is_valid_webhook_url(url: str | None) -> bool:
    return bool(url) and url.startswith(DISCORD_WEBHOOK_PREFIXES)  # type: ignore[union-attr]


def build_discord_payload(event: ReservationEvent, equipment: Equipment | None) -> dict[str, Any]:
    title, message, _ = render_message(event, equipment)
    reservation = event.reservation
    fields = [
        {"name": "Requester", "value": reservation.user_id, "inline": True},
        {"name": "Equipment", "value": _equipment_label(event, equipment), "inline": True},
        {"name": "Date", "value": reservation.reservation_date.isoformat(), "inline": True},
        {"name": "Status", "value": reservation.status, "inline": True},
    ]
    if event.type == "created" and reservation.purpose:
        fields.append({"name": "Purpose", "value": reservation.purpose, "inline": False})
    if event.loan_id:
        fields.append({"name": "Loan", "value": event.loan_id, "inline": False})
    return {
        "content": message,
        "embeds": [
            {
                "title": title,
                "color": _DISCORD_COLORS[event.type],
                "fields": fields,
                "timestamp": datetime.now(UTC).isoformat(),
                "footer": {"text": "Equipment lending"},
            }
        ],
    }


class InAppNotifier:
    """Stores a notification record for the requester, or for admins on new requests."""

    def __init__(self, save: Callable[[Notification], None] = dal.save_notification) -> None:
        self._save = save

    def send(self, event: ReservationEvent, equipment: Equipment | None) -> None:
        title, message, audience = render_message(event, equipment)
        self._save(
            Notification(
                notification_id=str(uuid.uuid4()),
                audience="admins" if audience == "admins" else "user",
                user_id=None if audience == "admins" else event.reservation.user_id,
                type=event.type,
                title=title,
                message=message,
                reservation_id=event.reservation.reservation_id,
            )
        )


class DiscordNotifier:
    DEFAULT_EVENTS: frozenset[str] = frozenset({"created", "cancelled", "expired", "converted"})

    def __init__(
        self,
        settings_provider: Callable[[], LendingSettings] = dal.get_settings,
        session: requests.Session | None = None,
        events: Iterable[str] = DEFAULT_EVENTS,
        timeout: float = 5.0,
    ) -> None:
        self._settings = settings_provider
        self._session = session or requests.Session()
        self._events = frozenset(events)
        self._timeout = timeout

    def send(self, event: ReservationEvent, equipment: Equipment | None) -> None:
        if event.type not in self._events:
            return
        settings = self._settings()
        if not settings.discord_enabled:
            logger.debug("Discord notifications are disabled")
            return
        if not is_valid_webhook_url(settings.discord_webhook_url):
            logger.warning("Discord webhook URL is missing or invalid")
            return
        resp = self._session.post(
            settings.discord_webhook_url,  # type: ignore[arg-type]
            json=build_discord_payload(event, equipment),
            timeout=self._timeout,
        )
        if resp.status_code == requests.codes.too_many_requests:
            logger.warning("Discord rate limited the webhook", extra={"retry_after": resp.headers.get("Retry-After")})
        resp.raise_for_status()


class NotificationDispatcher:
    """Delivers reservation events on every channel; failures are logged, never raised."""

    def __init__(
        self,
        channels: Sequence[Notifier],
        equipment_lookup: Callable[[str], Equipment | None] = dal.get_equipment,
    ) -> None:
        self._channels = list(channels)
        self._equipment_lookup = equipment_lookup

    @classmethod
    def default(cls) -> NotificationDispatcher:
        return cls([InAppNotifier(), DiscordNotifier()])

    def _equipment(self, equipment_id: str) -> Equipment | None:
        try:
            return self._equipment_lookup(equipment_id)
        except Exception:
            logger.exception("Could not load equipment for notification", extra={"equipment_id": equipment_id})
            return None

    def dispatch(self, events: Iterable[ReservationEvent]) -> int:
        delivered = 0
        for event in events:
            equipment = self._equipment(event.reservation.equipment_id)
            for channel in self._channels:
                try:
                    channel.send(event, equipment)
                except Exception:
                    logger.exception(
                        "Notification delivery failed",
                        extra={
                            "event": event.type,
                            "channel": type(channel).__name__,
                            "reservation_id": event.reservation.reservation_id,
                        },
                    )
                else:
                    delivered += 1
        return delivered
