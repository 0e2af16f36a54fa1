from datetime import date
from typing import List, Optional

from pydantic import Field

from seatsync.schemas.base import CamelModel
from seatsync.services.finalizer import LegRequest


class LegPayload(CamelModel):
    scope_id: int
    departure_date: date = Field(..., alias="date")
    seat_labels: List[str] = Field(..., min_length=1)
    passenger_data: List[dict] = []

    def to_leg(self) -> LegRequest:
        return LegRequest(
            route_id=self.scope_id,
            departure_date=self.departure_date,
            seat_labels=list(self.seat_labels),
            passengers=list(self.passenger_data),
        )


class ConfirmBookingRequest(LegPayload):
    payment_ref: Optional[str] = None


class RoundTripRequest(CamelModel):
    outbound: LegPayload
    inbound: LegPayload
    payment_ref: Optional[str] = None


class BookingResponse(CamelModel):
    booking_ref: str
    confirmed_seats: List[str]
    group_ref: Optional[str] = None
    scope_id: int
    departure_date: date = Field(..., alias="date")


class RoundTripResponse(CamelModel):
    group_ref: Optional[str]
    bookings: List[BookingResponse]
