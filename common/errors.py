"""Domain error taxonomy and its mapping onto HTTP responses."""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger("coworking.errors")


class CoworkingError(Exception):
    """Base type for errors raised by the booking and profile services."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"
    default_detail = "Request rejected"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class InvalidRange(CoworkingError):
    code = "invalid_range"
    default_detail = "End time must be after start time"


class MissingBookingDetails(CoworkingError):
    code = "missing_booking_details"
    default_detail = "A unit and a company are required to book; complete your profile or fill them in"


class QuotaExceeded(CoworkingError):
    status_code = status.HTTP_409_CONFLICT
    code = "quota_exceeded"

    def __init__(self, remaining_hours: float, detail: str | None = None) -> None:
        self.remaining_hours = round(max(remaining_hours, 0.0), 2)
        super().__init__(
            detail
            or f"Monthly hour quota exceeded; {self.remaining_hours:.2f}h remaining. "
            "Contact the coworking management to release more hours."
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["remaining_hours"] = self.remaining_hours
        return payload


class RoomConflict(CoworkingError):
    status_code = status.HTTP_409_CONFLICT
    code = "room_conflict"
    default_detail = "A minimum interval is required between bookings in the same room"


class ProfileNotFound(CoworkingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "profile_not_found"
    default_detail = "Profile not found"


class BookingNotFound(CoworkingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "booking_not_found"
    default_detail = "Booking not found"


class NotBookingOwner(CoworkingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_owner"
    default_detail = "Only the owner or an administrator can cancel this booking"


class CancellationWindowClosed(CoworkingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "cancellation_window_closed"
    default_detail = "Bookings can only be cancelled in advance; contact the administration"


class StorageUnavailable(CoworkingError):
    """The backing store could not be reached. Infrastructure fault, not a rejection."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_unavailable"
    default_detail = "Storage is temporarily unavailable"


def coworking_error_handler(request: Request, exc: CoworkingError) -> JSONResponse:
    if isinstance(exc, StorageUnavailable):
        logger.error("%s %s | %s", request.method, request.url.path, exc.detail, exc_info=exc.__cause__)
    else:
        logger.info("%s %s | rejected=%s | %s", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def register_error_handlers(app: FastAPI) -> None:
    """Translate every CoworkingError raised by a route into its JSON response."""

    app.add_exception_handler(CoworkingError, coworking_error_handler)
