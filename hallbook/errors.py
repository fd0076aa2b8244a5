"""Booking error taxonomy and its JSON rendering.

Every error carries a stable string ``code`` that clients branch on and a
``retryable`` flag telling them whether offering "try again" makes sense.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CabinBookingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class CabinUnavailableError(CabinBookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, cabin_name: Optional[str] = None) -> None:
        if cabin_name:
            message = f"Cabin {cabin_name} is no longer available for the selected dates."
        else:
            message = "Selected cabin is no longer available."
        super().__init__(message, "CABIN_UNAVAILABLE", False)


class SeatUnavailableError(CabinBookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, seat_label: Optional[str] = None) -> None:
        if seat_label:
            message = f"Seat {seat_label} is already booked for the selected dates."
        else:
            message = "Selected seat is no longer available."
        super().__init__(message, "SEAT_UNAVAILABLE", False)


class PaymentError(CabinBookingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, message: str = "Payment processing failed") -> None:
        super().__init__(message, "PAYMENT_FAILED", True)


class ValidationError(CabinBookingError):
    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Please provide a valid {field}.", "VALIDATION_ERROR", False)
        self.field = field


def normalize_error(exc: BaseException) -> CabinBookingError:
    """Coerce any failure into the booking taxonomy; unknown failures are retryable."""

    if isinstance(exc, CabinBookingError):
        return exc
    message = str(exc) or "An unexpected error occurred"
    return CabinBookingError(message, "UNKNOWN_ERROR", True)


def cabin_booking_error_handler(request: Request, exc: CabinBookingError) -> JSONResponse:
    logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CabinBookingError, cabin_booking_error_handler)  # type: ignore[arg-type]
