"""Raffle error taxonomy.

Every error here is recoverable by the caller; the web layer maps ``code`` and
``status_code`` straight into the JSON error body.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class RaffleError(Exception):
    """Base raffle error."""

    code: str
    message: str
    status_code: int
    details: Any | None = None

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidRangeError(RaffleError):
    """Requested count or quantity does not fit the ticket range."""

    def __init__(self, message: str = "Invalid range", details: Any | None = None) -> None:
        super().__init__(code="invalid_range", message=message, status_code=400, details=details)


class CapacityExhaustedError(RaffleError):
    """No ticket number could be allocated within the bounded attempts."""

    def __init__(
        self, message: str = "No ticket numbers left", details: Any | None = None
    ) -> None:
        super().__init__(
            code="capacity_exhausted", message=message, status_code=409, details=details
        )


class SoldOutError(RaffleError):
    def __init__(self, message: str = "Sold out", details: Any | None = None) -> None:
        super().__init__(code="sold_out", message=message, status_code=409, details=details)


class CompetitionClosedError(RaffleError):
    """Tickets were requested for a competition that no longer sells."""

    def __init__(
        self, message: str = "Competition is closed", details: Any | None = None
    ) -> None:
        super().__init__(
            code="competition_closed", message=message, status_code=409, details=details
        )


class AlreadyClosedError(RaffleError):
    def __init__(
        self,
        message: str = "Competition already closed",
        details: Any | None = None,
        code: str = "already_closed",
    ) -> None:
        super().__init__(code=code, message=message, status_code=409, details=details)


class AlreadyDrawnError(AlreadyClosedError):
    """The end draw for this competition has already happened."""

    def __init__(self, message: str = "End winner already drawn", details: Any | None = None) -> None:
        super().__init__(message=message, details=details, code="already_drawn")


class NoTicketsError(RaffleError):
    def __init__(self, message: str = "No tickets sold", details: Any | None = None) -> None:
        super().__init__(code="no_tickets", message=message, status_code=409, details=details)


class ReservationFailedError(RaffleError):
    """A paid order could not be turned into tickets; refund is handled elsewhere."""

    def __init__(
        self, message: str = "Reservation failed", details: Any | None = None
    ) -> None:
        super().__init__(
            code="reservation_failed", message=message, status_code=409, details=details
        )


class UnauthenticatedNotificationError(RaffleError):
    def __init__(self, message: str = "Invalid signature", details: Any | None = None) -> None:
        super().__init__(
            code="unauthenticated_notification",
            message=message,
            status_code=401,
            details=details,
        )


class InvalidNotificationError(RaffleError):
    def __init__(
        self, message: str = "Invalid notification", details: Any | None = None
    ) -> None:
        super().__init__(
            code="invalid_notification", message=message, status_code=400, details=details
        )


class CompetitionNotFoundError(RaffleError):
    def __init__(
        self, message: str = "Competition not found", details: Any | None = None
    ) -> None:
        super().__init__(code="not_found", message=message, status_code=404, details=details)


class OrderNotFoundError(RaffleError):
    def __init__(self, message: str = "Order not found", details: Any | None = None) -> None:
        super().__init__(code="not_found", message=message, status_code=404, details=details)
