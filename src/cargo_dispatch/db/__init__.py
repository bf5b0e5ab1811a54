"""Database persistence module."""

from .database import init_database
from .schema import Booking, BookingLocation, BookingTimeline, Payment, PaymentTimeline
from .transaction import transaction, unit_of_work

__all__ = [
    "init_database",
    "Booking",
    "BookingLocation",
    "BookingTimeline",
    "Payment",
    "PaymentTimeline",
    "transaction",
    "unit_of_work",
]
