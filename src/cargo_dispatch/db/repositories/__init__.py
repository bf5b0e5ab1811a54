from .booking_repository import BookingRepository
from .payment_repository import PaymentRepository

__all__ = ["BookingRepository", "PaymentRepository"]
