from enum import Enum
from typing import List, Optional

from fastapi import status


class ErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    SEAT_LOCKED = "seat_locked"
    SEAT_HELD = "seat_held"
    SEAT_BOOKED = "seat_booked"
    NOT_OWNER = "not_owner"
    NO_HOLD = "no_hold"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"


HTTP_STATUS = {
    ErrorCode.INVALID_INPUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.SEAT_LOCKED: status.HTTP_423_LOCKED,
    ErrorCode.SEAT_HELD: status.HTTP_409_CONFLICT,
    ErrorCode.SEAT_BOOKED: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_OWNER: status.HTTP_403_FORBIDDEN,
    ErrorCode.NO_HOLD: status.HTTP_404_NOT_FOUND,
    ErrorCode.EXPIRED: status.HTTP_410_GONE,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.SERVER_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class SeatSyncError(Exception):
    """Base class for every error the engine reports back to a caller."""

    code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(self, message: Optional[str] = None, code: Optional[ErrorCode] = None):
        if code is not None:
            self.code = code
        self.message = message or self.code.value.replace("_", " ")
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.code == ErrorCode.SEAT_LOCKED

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.code]

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code.value}


class InvalidInput(SeatSyncError):
    code = ErrorCode.INVALID_INPUT


class SeatLocked(SeatSyncError):
    code = ErrorCode.SEAT_LOCKED


class SeatHeld(SeatSyncError):
    code = ErrorCode.SEAT_HELD


class SeatBooked(SeatSyncError):
    code = ErrorCode.SEAT_BOOKED


class NotOwner(SeatSyncError):
    code = ErrorCode.NOT_OWNER


class NoHold(SeatSyncError):
    code = ErrorCode.NO_HOLD


class HoldExpired(SeatSyncError):
    code = ErrorCode.EXPIRED


class NotFound(SeatSyncError):
    code = ErrorCode.NOT_FOUND


class StorageError(SeatSyncError):
    code = ErrorCode.SERVER_ERROR


class PartialConfirmation(SeatSyncError):
    """Raised when the first leg of a round trip is booked but the second leg failed.

    The booked leg is left in place; callers get the confirmed seats back so the
    outcome can be reported rather than hidden.
    """

    def __init__(self, cause: SeatSyncError, partially_confirmed: List[str], booking_ref: str, group_ref: str):
        super().__init__(f"return leg failed: {cause.message}", code=cause.code)
        self.cause = cause
        self.partially_confirmed = list(partially_confirmed)
        self.booking_ref = booking_ref
        self.group_ref = group_ref

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(
            partiallyConfirmed=self.partially_confirmed,
            bookingRef=self.booking_ref,
            groupRef=self.group_ref,
        )
        return body
