"""WebSocket message types, actions and the seat event payload."""

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Final, Optional

from seatsync.clock import isoformat


class MessageType:
    ACK: Final[str] = "ack"
    CONNECTED: Final[str] = "connected"
    SEAT_STATUS_CHANGED: Final[str] = "seat:status:changed"
    MEMBER_COUNT: Final[str] = "member:count"


class ActionType:
    JOIN: Final[str] = "join"
    LEAVE: Final[str] = "leave"
    SEATS: Final[str] = "seats"
    HOLD: Final[str] = "hold"
    HOLD_MANY: Final[str] = "hold_many"
    RELEASE: Final[str] = "release"
    CONFIRM: Final[str] = "confirm"
    HOLDS: Final[str] = "holds"
    PING: Final[str] = "ping"
    INFO: Final[str] = "info"


@dataclass
class SeatEvent:
    scope_id: int
    seat_label: str
    status: str
    departure_date: date
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    reason: Optional[str] = None
    booking_ref: Optional[str] = None

    def to_message(self) -> dict:
        data = {
            "scopeId": self.scope_id,
            "seatLabel": self.seat_label,
            "status": self.status,
            "date": self.departure_date.isoformat(),
        }
        if self.expires_at is not None:
            data["expiresAt"] = isoformat(self.expires_at)
        if self.user_id is not None:
            data["userId"] = self.user_id
        if self.reason is not None:
            data["reason"] = self.reason
        if self.booking_ref is not None:
            data["bookingRef"] = self.booking_ref
        return {"type": MessageType.SEAT_STATUS_CHANGED, "data": data}


def encode(message: dict) -> str:
    return json.dumps(message, default=_default)


def _default(value):
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")
