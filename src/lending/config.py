from __future__ import annotations

import os
from collections.abc import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, model_validator

_ENV_PREFIX = "LENDING_"


class ReservationRules(BaseModel):
    open_hour: int = Field(default=8, ge=0, le=23)
    close_hour: int = Field(default=18, ge=1, le=24)
    slot_minutes: int = Field(default=60, gt=0)
    min_duration_minutes: int = Field(default=60, gt=0)
    max_duration_minutes: int = Field(default=480, gt=0)
    advance_booking_days: int = Field(default=30, ge=0)
    default_loan_days: int = Field(default=7, gt=0)
    reminder_lead_minutes: int = Field(default=30, gt=0)
    timezone: str = "UTC"
    booking_attempts: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_ranges(self) -> ReservationRules:
        if self.close_hour <= self.open_hour:
            raise ValueError("close_hour must be after open_hour")
        if self.max_duration_minutes < self.min_duration_minutes:
            raise ValueError("max_duration_minutes must not be below min_duration_minutes")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {self.timezone!r}") from exc
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_rules(environ: Mapping[str, str] | None = None) -> ReservationRules:
    """Build the rules from ``LENDING_*`` variables; unset ones keep their defaults."""
    env = os.environ if environ is None else environ
    overrides: dict[str, str] = {}
    for name in ReservationRules.model_fields:
        raw = env.get(f"{_ENV_PREFIX}{name.upper()}")
        if raw is not None and raw != "":
            overrides[name] = raw
    return ReservationRules.model_validate(overrides)
