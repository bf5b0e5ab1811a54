"""Request/response models for booking endpoints."""

from typing import Literal

from pydantic import BaseModel, Field

from cargo_dispatch.booking import Booking, CancelledBy
from cargo_dispatch.geo.coordinates import Coordinates


class CancelBookingRequest(BaseModel):
    cancelled_by: CancelledBy = "customer"
    reason: str | None = Field(default=None, max_length=500)
    location: Coordinates | None = None


class RatingRequest(BaseModel):
    by: Literal["customer", "driver"]
    rating: int = Field(ge=1, le=5)
    review: str | None = Field(default=None, max_length=1000)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def of(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=-(-total // limit))


class BookingPage(BaseModel):
    bookings: list[Booking]
    pagination: Pagination
