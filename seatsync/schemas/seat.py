from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import Field, field_serializer

from seatsync.schemas.base import CamelModel, dump_datetime


class HoldRequest(CamelModel):
    scope_id: int
    seat_label: str = Field(..., min_length=1, max_length=16)
    departure_date: date = Field(..., alias="date")
    duration_override: Optional[int] = Field(None, description="Hold duration in minutes")


class HoldManyRequest(CamelModel):
    scope_id: int
    seat_labels: List[str] = Field(..., min_length=1)
    departure_date: date = Field(..., alias="date")
    duration_override: Optional[int] = None
    all_or_nothing: bool = False


class ReleaseRequest(CamelModel):
    scope_id: int
    seat_label: str
    departure_date: date = Field(..., alias="date")


class HoldResponse(CamelModel):
    seat_label: str
    status: str = "selected"
    expires_at: datetime
    extended: bool = False

    @field_serializer("expires_at")
    def _expires_at(self, value: datetime) -> str:
        return dump_datetime(value)


class GroupHoldResponse(CamelModel):
    held: List[HoldResponse]
    failed: Dict[str, str]
    rolled_back: List[str] = []


class ReleaseResponse(CamelModel):
    seat_label: str
    status: str = "available"


class AvailabilityResponse(CamelModel):
    scope_id: int
    departure_date: date = Field(..., alias="date")
    seats: Dict[str, str]


class UserHold(CamelModel):
    vehicle_id: int
    departure_date: date = Field(..., alias="date")
    seat_label: str
    expires_at: datetime

    @field_serializer("expires_at")
    def _expires_at(self, value: datetime) -> str:
        return dump_datetime(value)
