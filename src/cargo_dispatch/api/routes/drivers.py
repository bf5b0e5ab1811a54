"""Driver app routes: onboarding, location, availability and the offer/trip lifecycle."""

from fastapi import APIRouter, Depends

from cargo_dispatch.api.auth import verify_api_key
from cargo_dispatch.api.dependencies import (
    CoordinatorDep,
    GeoIndexDep,
    LedgerDep,
    LimitQuery,
    PageQuery,
    StateMachineDep,
)
from cargo_dispatch.api.models.bookings import BookingPage, Pagination
from cargo_dispatch.api.models.drivers import (
    AvailabilityRequest,
    DriverRegisterRequest,
    DriverResponse,
    LocationUpdateRequest,
    LocationUpdateResponse,
    PendingOfferResponse,
    ReleaseRequest,
    TripActionRequest,
)
from cargo_dispatch.booking import ASSIGNED_STATUSES, Booking, BookingStatus
from cargo_dispatch.core.exceptions import NotFoundError
from cargo_dispatch.payment import DriverEarnings

router = APIRouter(dependencies=[Depends(verify_api_key)])

_ACTIVE_STATUSES = ASSIGNED_STATUSES | {BookingStatus.IN_PROGRESS}
_FINISHED_STATUSES = [BookingStatus.COMPLETED, BookingStatus.CANCELLED]


@router.post("", response_model=DriverResponse, status_code=201)
def register_driver(body: DriverRegisterRequest, coordinator: CoordinatorDep) -> DriverResponse:
    state = coordinator.register_driver(
        body.driver_id,
        body.vehicle_type,
        body.coordinates,
        is_kyc_verified=body.is_kyc_verified,
        is_available=body.is_available,
    )
    return DriverResponse.from_state(state)


@router.get("/{driver_id}", response_model=DriverResponse)
def get_driver(driver_id: str, geo_index: GeoIndexDep) -> DriverResponse:
    state = geo_index.get_driver(driver_id)
    if state is None:
        raise NotFoundError(f"Driver {driver_id} is not registered", {"driver_id": driver_id})
    return DriverResponse.from_state(state)


@router.get("/{driver_id}/bookings/pending", response_model=list[PendingOfferResponse])
def pending_offers(
    driver_id: str, coordinator: CoordinatorDep, state_machine: StateMachineDep
) -> list[PendingOfferResponse]:
    """Bookings offered to the driver that are still searching. At most one at a time."""
    offer = coordinator.get_open_offer(driver_id)
    if offer is None:
        return []
    booking = state_machine.get(offer.booking_id)
    if booking.status != BookingStatus.PENDING:
        return []
    return [
        PendingOfferResponse(
            booking=booking, offer_sequence=offer.offer_sequence, expires_at=offer.deadline
        )
    ]


@router.get("/{driver_id}/bookings/active", response_model=Booking | None)
def active_booking(driver_id: str, state_machine: StateMachineDep) -> Booking | None:
    """The booking the driver is assigned to or driving, or null."""
    bookings = state_machine.list_bookings(driver_id=driver_id, statuses=_ACTIVE_STATUSES, limit=1)
    return bookings[0] if bookings else None


@router.get("/{driver_id}/bookings/history", response_model=BookingPage)
def booking_history(
    driver_id: str,
    state_machine: StateMachineDep,
    status: BookingStatus | None = None,
    page: PageQuery = 1,
    limit: LimitQuery = 10,
) -> BookingPage:
    """Finished trips, newest first. ``status`` narrows to a single outcome."""
    statuses = [status] if status is not None else _FINISHED_STATUSES
    bookings = state_machine.list_bookings(
        driver_id=driver_id, statuses=statuses, limit=limit, offset=(page - 1) * limit
    )
    total = state_machine.count_bookings(driver_id=driver_id, statuses=statuses)
    return BookingPage(bookings=bookings, pagination=Pagination.of(page, limit, total))


@router.get("/{driver_id}/earnings", response_model=DriverEarnings)
def driver_earnings(driver_id: str, ledger: LedgerDep) -> DriverEarnings:
    return ledger.driver_earnings(driver_id)


@router.post("/{driver_id}/location", response_model=LocationUpdateResponse)
def update_location(
    driver_id: str, body: LocationUpdateRequest, coordinator: CoordinatorDep
) -> LocationUpdateResponse:
    """Record a GPS fix. ``accepted`` is false for unknown drivers and out-of-order fixes."""
    accepted = coordinator.update_driver_location(driver_id, body.coordinates, body.timestamp)
    return LocationUpdateResponse(driver_id=driver_id, accepted=accepted)


@router.put("/{driver_id}/availability", response_model=DriverResponse)
def set_availability(
    driver_id: str, body: AvailabilityRequest, coordinator: CoordinatorDep
) -> DriverResponse:
    state = coordinator.set_driver_availability(driver_id, body.available)
    return DriverResponse.from_state(state)


@router.post("/{driver_id}/bookings/{booking_id}/accept", response_model=Booking)
def accept_offer(driver_id: str, booking_id: str, coordinator: CoordinatorDep) -> Booking:
    return coordinator.accept_offer(booking_id, driver_id)


@router.post("/{driver_id}/bookings/{booking_id}/decline", response_model=Booking)
def decline_offer(driver_id: str, booking_id: str, coordinator: CoordinatorDep) -> Booking:
    return coordinator.decline_offer(booking_id, driver_id)


@router.post("/{driver_id}/bookings/{booking_id}/release", response_model=Booking)
def release_booking(
    driver_id: str, booking_id: str, body: ReleaseRequest, coordinator: CoordinatorDep
) -> Booking:
    return coordinator.release_booking(booking_id, driver_id, reason=body.reason)


@router.post("/{driver_id}/bookings/{booking_id}/start", response_model=Booking)
def start_trip(
    driver_id: str, booking_id: str, body: TripActionRequest, coordinator: CoordinatorDep
) -> Booking:
    return coordinator.start_trip(booking_id, driver_id, location=body.location)


@router.post("/{driver_id}/bookings/{booking_id}/complete", response_model=Booking)
def complete_trip(
    driver_id: str, booking_id: str, body: TripActionRequest, coordinator: CoordinatorDep
) -> Booking:
    return coordinator.complete_trip(booking_id, driver_id, location=body.location)
