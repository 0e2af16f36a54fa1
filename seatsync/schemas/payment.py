from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from seatsync.schemas.base import CamelModel
from seatsync.schemas.booking import LegPayload


class PaymentInitiateRequest(CamelModel):
    provider: str = Field(..., description="one of: sandbox, flutterwave")
    amount: Decimal = Field(..., gt=0)
    currency: str = "USD"
    legs: List[LegPayload] = Field(..., min_length=1, max_length=2)


class PaymentInitiateResponse(CamelModel):
    provider: str
    intent_id: str
    reference: str
    checkout_url: Optional[str] = None
    holds_expire_at: Optional[str] = None


class WebhookAck(CamelModel):
    received: bool
    status: Optional[str] = None
