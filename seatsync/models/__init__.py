from .models import *
from seatsync.db.base import Base

__all__ = [
    "Base",
    "SeatStatus",
    "BookingStatus",
    "TransactionStatus",
    "Vehicle",
    "Seat",
    "Route",
    "SeatDepartureBooking",
    "Booking",
    "PaymentTransaction",
    "AuditLog",
]
