"""Customer-facing booking routes."""

from fastapi import APIRouter, Depends, Request

from cargo_dispatch.api.auth import verify_api_key
from cargo_dispatch.api.dependencies import (
    CoordinatorDep,
    LimitQuery,
    PageQuery,
    StateMachineDep,
)
from cargo_dispatch.api.models.bookings import (
    BookingPage,
    CancelBookingRequest,
    Pagination,
    RatingRequest,
)
from cargo_dispatch.api.rate_limit import BOOKING_CREATE_LIMIT, limiter
from cargo_dispatch.booking import Booking, BookingStatus
from cargo_dispatch.core.exceptions import ValidationError
from cargo_dispatch.matching.dispatch_coordinator import BookingRequest, FareQuote, QuoteRequest

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.post("/estimate", response_model=FareQuote)
def estimate_fare(body: QuoteRequest, coordinator: CoordinatorDep) -> FareQuote:
    """Quote a trip without creating a booking."""
    return coordinator.quote(body)


@router.post("", response_model=Booking, status_code=201)
@limiter.limit(BOOKING_CREATE_LIMIT)
def create_booking(
    request: Request, body: BookingRequest, coordinator: CoordinatorDep
) -> Booking:
    """Create a booking and start offering it to nearby drivers.

    Responds 409 ``no_drivers_available`` when nobody eligible is in range;
    the booking has then already expired.
    """
    return coordinator.create_booking(body)


@router.get("", response_model=BookingPage)
def list_bookings(
    state_machine: StateMachineDep,
    customer_id: str | None = None,
    driver_id: str | None = None,
    status: BookingStatus | None = None,
    page: PageQuery = 1,
    limit: LimitQuery = 10,
) -> BookingPage:
    """Booking history for one customer or one driver, newest first."""
    if customer_id is None and driver_id is None:
        raise ValidationError("Pass customer_id or driver_id to list bookings")
    filters = {"customer_id": customer_id, "driver_id": driver_id, "status": status}
    bookings = state_machine.list_bookings(**filters, limit=limit, offset=(page - 1) * limit)
    total = state_machine.count_bookings(**filters)
    return BookingPage(bookings=bookings, pagination=Pagination.of(page, limit, total))


@router.get("/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, state_machine: StateMachineDep) -> Booking:
    return state_machine.get(booking_id)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str, body: CancelBookingRequest, coordinator: CoordinatorDep
) -> Booking:
    return coordinator.cancel_booking(
        booking_id, body.cancelled_by, reason=body.reason, location=body.location
    )


@router.post("/{booking_id}/rating", response_model=Booking)
def rate_booking(booking_id: str, body: RatingRequest, state_machine: StateMachineDep) -> Booking:
    return state_machine.rate(booking_id, body.by, body.rating, body.review)
