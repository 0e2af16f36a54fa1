from datetime import date
from typing import Any, Dict, Optional, Union

from pydantic import Field

from seatsync.schemas.base import CamelModel


class ClientMessage(CamelModel):
    id: Optional[Union[str, int]] = None
    action: str
    data: Dict[str, Any] = {}


class JoinRequest(CamelModel):
    scope_id: int
    departure_date: Optional[date] = Field(None, alias="date")


class SeatsRequest(CamelModel):
    scope_id: int
    departure_date: date = Field(..., alias="date")
