from __future__ import annotations


class LendingError(Exception):
    """Base class for errors surfaced to callers of the reservation engine."""


class ReservationValidationError(LendingError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvalidTransitionError(LendingError):
    pass


class AlreadyConvertedError(InvalidTransitionError):
    pass


class NotAllowedError(LendingError):
    pass


class ConcurrentUpdateError(LendingError):
    pass


class DataAccessError(LendingError):
    pass
