"""Errors raised to callers of direct user actions (accept, reject, arrive, ...)."""

from typing import Optional


class BookingActionError(Exception):
    """A user action on a booking did not take effect; local state was rolled back."""

    def __init__(
        self,
        message: str,
        booking_id: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.booking_id = booking_id
        self.retryable = retryable


class JobUnavailableError(BookingActionError):
    """The booking can no longer be taken: claimed elsewhere, cancelled, or gone."""
