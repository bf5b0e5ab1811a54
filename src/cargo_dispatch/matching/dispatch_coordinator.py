"""Turns pending bookings into assigned ones.

Candidates are offered one at a time, nearest first. A booking has at most
one open offer and a driver holds at most one offer; a driver who already
holds an offer (or is serving a booking) is skipped rather than queued.
Offer windows and booking expiry are wall-clock deadlines that
``process_timeouts`` sweeps, so nothing here ever blocks waiting on a driver.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from cargo_dispatch import metrics
from cargo_dispatch.booking import (
    ASSIGNED_STATUSES,
    Booking,
    BookingStatus,
    CancelledBy,
    Location,
    LocationSample,
    new_booking,
)
from cargo_dispatch.bookings.state_machine import BookingStateMachine
from cargo_dispatch.core.clock import Clock, ensure_utc, utc_now
from cargo_dispatch.core.correlation import with_correlation
from cargo_dispatch.core.exceptions import (
    InvalidTransition,
    NoDriversAvailable,
    StaleAccept,
    StaleDecline,
)
from cargo_dispatch.core.locks import KeyedLock
from cargo_dispatch.fare import Fare, FareCalculator, Requirements
from cargo_dispatch.geo.coordinates import Coordinates
from cargo_dispatch.geo.routing import HaversineRouteEstimator, RouteEstimator
from cargo_dispatch.notifications import NotificationGateway, safe_notify
from cargo_dispatch.payment import PaymentMethod
from cargo_dispatch.payments.ledger import PaymentLedger
from cargo_dispatch.settings import DispatchSettings
from cargo_dispatch.vehicles import VehicleType

from .demand import DemandEstimator
from .driver_geospatial_index import DriverGeospatialIndex, DriverState
from .offer_timeout import OfferTimeoutManager, PendingOffer

logger = logging.getLogger(__name__)

_RECOVERY_BATCH = 10_000

OfferOutcome = Literal["accepted", "declined", "expired", "cancelled"]


class QuoteRequest(BaseModel):
    vehicle_type: VehicleType
    pickup: Location
    drop: Location
    requirements: Requirements = Field(default_factory=Requirements)


class BookingRequest(QuoteRequest):
    customer_id: str = Field(min_length=1, max_length=100)
    payment_method: PaymentMethod = PaymentMethod.COD


class FareQuote(BaseModel):
    vehicle_type: VehicleType
    distance_km: float
    duration_min: float
    demand_factor: float
    fare: Fare
    route_source: str


@dataclass
class DispatchState:
    """Coordinator bookkeeping for one booking that has not reached a terminal state."""

    booking_id: str
    customer_id: str
    pickup: Coordinates
    vehicle_type: VehicleType
    expires_at: datetime
    skipped: set[str] = field(default_factory=set)
    offer_attempts: int = 0
    offer_sequence: int = 0
    reassignments: int = 0
    offered_driver: str | None = None
    assigned_driver: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.assigned_driver is None


class DispatchCoordinator:
    """Matches bookings to drivers and drives the driver side of the lifecycle.

    Thread-safe: every step on a booking runs under that booking's lock; the
    offer-slot and assignment maps are guarded by a short state lock that is
    never held while calling out to storage or notifiers.
    """

    def __init__(
        self,
        state_machine: BookingStateMachine,
        geo_index: DriverGeospatialIndex,
        fare_calculator: FareCalculator,
        ledger: PaymentLedger | None = None,
        notifier: NotificationGateway | None = None,
        route_estimator: RouteEstimator | None = None,
        demand_estimator: DemandEstimator | None = None,
        settings: DispatchSettings | None = None,
        clock: Clock = utc_now,
    ):
        self._state_machine = state_machine
        self._geo_index = geo_index
        self._fare_calculator = fare_calculator
        self._ledger = ledger
        self._notifier = notifier
        self._route_estimator = route_estimator or HaversineRouteEstimator()
        self._demand_estimator = demand_estimator
        self._settings = settings or DispatchSettings()
        self._clock = clock
        self._timeouts = OfferTimeoutManager(self._settings.offer_timeout_seconds, clock)
        self._booking_locks = KeyedLock()
        self._state_lock = threading.RLock()
        self._dispatches: dict[str, DispatchState] = {}
        # driver_id -> booking_id of the offer the driver currently holds
        self._driver_offers: dict[str, str] = {}
        # driver_id -> booking_id the driver is serving
        self._active_assignments: dict[str, str] = {}
        # Matching outcome tracking
        self._offers_sent = 0
        self._offers_accepted = 0
        self._offers_declined = 0
        self._offers_expired = 0
        self._stale_accepts = 0
        self._stale_declines = 0
        self._bookings_created = 0
        self._bookings_expired = 0
        self._bookings_cancelled = 0
        self._trips_completed = 0

    @property
    def timeouts(self) -> OfferTimeoutManager:
        return self._timeouts

    def quote(self, request: QuoteRequest) -> FareQuote:
        """Price a trip without creating a booking."""
        route = self._route_estimator.estimate(
            request.pickup.coordinates, request.drop.coordinates
        )
        demand_factor = 1.0
        if self._demand_estimator is not None:
            demand_factor = self._demand_estimator.demand_factor(
                request.pickup.coordinates, request.vehicle_type
            )
        fare = self._fare_calculator.compute_fare(
            route.distance_km,
            route.duration_min,
            request.vehicle_type,
            demand_factor=demand_factor,
            requirements=request.requirements,
        )
        return FareQuote(
            vehicle_type=request.vehicle_type,
            distance_km=route.distance_km,
            duration_min=route.duration_min,
            demand_factor=float(self._fare_calculator.clamp_demand_factor(demand_factor)),
            fare=fare,
            route_source=route.source,
        )

    def create_booking(self, request: BookingRequest) -> Booking:
        """Quote, persist and start dispatching a booking.

        Raises:
            NoDriversAvailable: nobody eligible is in range; the booking has
                already been moved to ``expired`` and is attached to the error
        """
        quote = self.quote(request)
        now = self._clock()
        booking = new_booking(
            customer_id=request.customer_id,
            vehicle_type=request.vehicle_type,
            pickup=request.pickup,
            drop=request.drop,
            distance_km=quote.distance_km,
            duration_min=quote.duration_min,
            fare=quote.fare,
            now=now,
            payment_method=request.payment_method,
            requirements=request.requirements,
        )
        self._state_machine.create(booking)
        metrics.bookings_created.add(1, {"vehicle_type": booking.vehicle_type.value})

        state = DispatchState(
            booking_id=booking.booking_id,
            customer_id=booking.customer_id,
            pickup=booking.pickup.coordinates,
            vehicle_type=booking.vehicle_type,
            expires_at=now + timedelta(seconds=self._settings.booking_expiry_seconds),
        )

        with self._booking_locks.hold(booking.booking_id), with_correlation(booking.booking_id):
            with self._state_lock:
                self._dispatches[booking.booking_id] = state
                self._bookings_created += 1
            if self._demand_estimator is not None:
                self._demand_estimator.increment_pending_request(state.pickup)

            self._notify(
                booking.customer_id,
                "booking.created",
                {
                    "booking_id": booking.booking_id,
                    "fare_total": str(booking.fare.total),
                    "currency": booking.fare.currency,
                },
            )
            result = self._dispatch_next(state)

        if result is not None and result.status == BookingStatus.EXPIRED:
            raise NoDriversAvailable(
                f"No {booking.vehicle_type.value} drivers available for booking "
                f"{booking.booking_id}",
                result,
            )
        return self._state_machine.get(booking.booking_id)

    def accept_offer(self, booking_id: str, driver_id: str) -> Booking:
        """Assign the booking to the driver holding its current offer.

        Raises:
            StaleAccept: the driver does not hold the open offer, the offer
                window has closed, or the booking already left ``pending``
        """
        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            now = self._clock()
            offer = self._timeouts.get_offer(booking_id)
            with self._state_lock:
                state = self._dispatches.get(booking_id)

            if state is None or offer is None or offer.driver_id != driver_id:
                self._reject_stale_accept(booking_id, driver_id)
                raise StaleAccept(
                    f"Driver {driver_id} has no open offer for booking {booking_id}",
                    {"booking_id": booking_id, "driver_id": driver_id},
                )

            if offer.is_expired(now):
                self._timeouts.clear_offer(booking_id, "expired")
                self._resolve_offer(state, offer.driver_id, "expired")
                self._dispatch_next(state)
                with self._state_lock:
                    self._stale_accepts += 1
                raise StaleAccept(
                    f"Offer for booking {booking_id} expired at {offer.deadline.isoformat()}",
                    {"booking_id": booking_id, "driver_id": driver_id},
                )

            try:
                booking = self._state_machine.assign_driver(booking_id, driver_id)
            except InvalidTransition as e:
                self._timeouts.clear_offer(booking_id, "stale")
                self._release_offer_slot(driver_id, booking_id)
                self._forget(booking_id)
                with self._state_lock:
                    self._stale_accepts += 1
                raise StaleAccept(
                    f"Booking {booking_id} is no longer pending ({e.current_status})",
                    {"booking_id": booking_id, "driver_id": driver_id},
                ) from e

            self._timeouts.clear_offer(booking_id, "accepted")
            with self._state_lock:
                if self._driver_offers.get(driver_id) == booking_id:
                    del self._driver_offers[driver_id]
                self._active_assignments[driver_id] = booking_id
                state.offered_driver = None
                state.assigned_driver = driver_id
                self._offers_accepted += 1
            if self._geo_index.get_driver(driver_id) is not None:
                self._geo_index.set_availability(driver_id, False)
            if self._demand_estimator is not None:
                self._demand_estimator.decrement_pending_request(state.pickup)
            metrics.offers_resolved.add(1, {"outcome": "accepted"})

            logger.info(f"Booking {booking_id} assigned to driver {driver_id}")
            self._notify(
                booking.customer_id,
                BookingStatus.DRIVER_ASSIGNED.to_event_type(),
                {"booking_id": booking_id, "driver_id": driver_id},
            )
            return booking

    def decline_offer(self, booking_id: str, driver_id: str) -> Booking:
        """Skip the driver for this booking and offer the next candidate.

        Raises:
            StaleDecline: the driver does not hold the open offer
        """
        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            offer = self._timeouts.get_offer(booking_id)
            with self._state_lock:
                state = self._dispatches.get(booking_id)
            if state is None or offer is None or offer.driver_id != driver_id:
                with self._state_lock:
                    self._stale_declines += 1
                raise StaleDecline(
                    f"Driver {driver_id} has no open offer for booking {booking_id}",
                    {"booking_id": booking_id, "driver_id": driver_id},
                )

            self._timeouts.clear_offer(booking_id, "declined")
            self._resolve_offer(state, driver_id, "declined")
            result = self._dispatch_next(state)
            return result or self._state_machine.get(booking_id)

    def process_timeouts(self, now: datetime | None = None) -> dict[str, int]:
        """Expire lapsed offers and bookings, and retry bookings left without an offer.

        An expired offer counts as a decline. Returns how many offers expired,
        bookings expired and offers were sent during the sweep.
        """
        now = ensure_utc(now) if now is not None else self._clock()
        summary = {"offers_expired": 0, "bookings_expired": 0, "offers_sent": 0}

        for offer in self._timeouts.expire_due(now):
            if self._expire_offer(offer):
                summary["offers_expired"] += 1

        with self._state_lock:
            pending = [state for state in self._dispatches.values() if state.is_pending]

        for state in pending:
            with self._booking_locks.hold(state.booking_id), with_correlation(state.booking_id):
                with self._state_lock:
                    if self._dispatches.get(state.booking_id) is not state or not state.is_pending:
                        continue
                if now >= state.expires_at:
                    offer = self._timeouts.invalidate_offer(state.booking_id)
                    if offer is not None:
                        self._release_offer_slot(offer.driver_id, state.booking_id)
                    result = self._exhaust(state, "No driver accepted before the booking expired")
                    if result is not None:
                        summary["bookings_expired"] += 1
                elif state.offered_driver is None:
                    attempts = state.offer_attempts
                    result = self._dispatch_next(state)
                    if result is not None and result.status == BookingStatus.EXPIRED:
                        summary["bookings_expired"] += 1
                    elif state.offer_attempts > attempts:
                        summary["offers_sent"] += 1

        return summary

    def cancel_booking(
        self,
        booking_id: str,
        cancelled_by: CancelledBy,
        reason: str | None = None,
        location: Coordinates | None = None,
    ) -> Booking:
        """Cancel a booking, voiding any open offer and freeing an assigned driver."""
        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            booking = self._state_machine.cancel(
                booking_id, cancelled_by, reason=reason, location=location
            )

            offer = self._timeouts.invalidate_offer(booking_id)
            if offer is not None:
                self._release_offer_slot(offer.driver_id, booking_id)
                metrics.offers_resolved.add(1, {"outcome": "cancelled"})
                self._notify(
                    offer.driver_id,
                    "booking.offer_cancelled",
                    {"booking_id": booking_id},
                )

            state = self._forget(booking_id)
            if state is not None and state.is_pending and self._demand_estimator is not None:
                self._demand_estimator.decrement_pending_request(state.pickup)

            if booking.driver_id:
                self._free_driver(booking.driver_id, booking_id)
                if cancelled_by != "driver":
                    self._notify(
                        booking.driver_id,
                        BookingStatus.CANCELLED.to_event_type(),
                        {"booking_id": booking_id, "cancelled_by": cancelled_by},
                    )
            if cancelled_by != "customer":
                self._notify(
                    booking.customer_id,
                    BookingStatus.CANCELLED.to_event_type(),
                    {"booking_id": booking_id, "cancelled_by": cancelled_by, "reason": reason},
                )

            with self._state_lock:
                self._bookings_cancelled += 1
            logger.info(f"Booking {booking_id} cancelled by {cancelled_by}")
            return booking

    def release_booking(
        self, booking_id: str, driver_id: str, reason: str | None = None
    ) -> Booking:
        """The assigned driver backs out before starting the trip.

        The booking returns to ``pending`` with the driver skipped and is
        offered again. Once the reassignment budget is spent it expires.
        """
        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            booking = self._state_machine.release_driver(booking_id, driver_id, reason)
            now = self._clock()
            self._free_driver(driver_id, booking_id)

            with self._state_lock:
                state = self._dispatches.get(booking_id)
                if state is None:
                    state = self._state_for(booking)
                    self._dispatches[booking_id] = state
                state.assigned_driver = None
                state.offered_driver = None
                state.skipped.add(driver_id)
                state.reassignments += 1
                state.expires_at = now + timedelta(seconds=self._settings.booking_expiry_seconds)
            if self._demand_estimator is not None:
                self._demand_estimator.increment_pending_request(state.pickup)

            self._notify(
                booking.customer_id,
                "booking.driver_released",
                {"booking_id": booking_id, "driver_id": driver_id, "reason": reason},
            )

            if state.reassignments > self._settings.max_reassignments:
                logger.warning(
                    f"Booking {booking_id} released {state.reassignments} times, expiring"
                )
                result = self._exhaust(state, "Reassignment limit reached")
            else:
                result = self._dispatch_next(state)
            return result or self._state_machine.get(booking_id)

    def start_trip(
        self, booking_id: str, driver_id: str, location: Coordinates | None = None
    ) -> Booking:
        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            booking = self._state_machine.start_trip(booking_id, driver_id, location)
            self._notify(
                booking.customer_id,
                BookingStatus.IN_PROGRESS.to_event_type(),
                {"booking_id": booking_id, "driver_id": driver_id},
            )
            return booking

    def complete_trip(
        self, booking_id: str, driver_id: str, location: Coordinates | None = None
    ) -> Booking:
        """Finish the trip, free the driver, issue the invoice and open the payment.

        Cash payments are captured on the spot since the driver already holds
        the money.
        """
        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            self._state_machine.complete_trip(booking_id, driver_id, location)
            self._forget(booking_id)
            self._free_driver(driver_id, booking_id)
            with self._state_lock:
                self._trips_completed += 1

            booking = self._state_machine.attach_invoice(booking_id)

            payload: dict[str, Any] = {
                "booking_id": booking_id,
                "fare_total": str(booking.fare.total),
                "invoice_number": booking.invoice.invoice_number if booking.invoice else None,
            }
            if self._ledger is not None:
                payment = self._ledger.initiate(
                    booking_id=booking_id,
                    customer_id=booking.customer_id,
                    amount=booking.fare.total,
                    method=booking.payment_method,
                    driver_id=driver_id,
                )
                if booking.payment_method == PaymentMethod.COD:
                    payment = self._ledger.capture_cash(payment.payment_id)
                payload["payment_id"] = payment.payment_id
                payload["payment_status"] = payment.status.value

            self._notify(booking.customer_id, BookingStatus.COMPLETED.to_event_type(), payload)
            return booking

    def update_driver_location(
        self, driver_id: str, coordinates: Coordinates, timestamp: datetime | None = None
    ) -> bool:
        """Move the driver in the index and track them on their active booking.

        Returns False when the update was ignored as out of order.
        """
        timestamp = ensure_utc(timestamp) if timestamp is not None else self._clock()
        if not self._geo_index.upsert_driver_location(driver_id, coordinates, timestamp):
            return False

        with self._state_lock:
            booking_id = self._active_assignments.get(driver_id)
            state = self._dispatches.get(booking_id) if booking_id else None
        if booking_id is None:
            return True

        sample = LocationSample(coordinates=coordinates, timestamp=timestamp)
        if self._state_machine.record_driver_location(booking_id, driver_id, sample):
            if state is not None:
                self._notify(
                    state.customer_id,
                    "driver.location",
                    {
                        "booking_id": booking_id,
                        "driver_id": driver_id,
                        "lat": coordinates.lat,
                        "lng": coordinates.lng,
                        "timestamp": timestamp.isoformat(),
                    },
                )
        return True

    def set_driver_availability(self, driver_id: str, available: bool) -> DriverState:
        """Toggle a driver's availability; drivers serving a booking stay unavailable."""
        if available:
            with self._state_lock:
                booking_id = self._active_assignments.get(driver_id)
            if booking_id is not None:
                booking = self._state_machine.get(booking_id)
                raise InvalidTransition(
                    f"Driver {driver_id} is serving booking {booking_id}",
                    current_status=booking.status.value,
                    details={"driver_id": driver_id, "booking_id": booking_id},
                )
        return self._geo_index.set_availability(driver_id, available)

    def register_driver(
        self,
        driver_id: str,
        vehicle_type: VehicleType,
        coordinates: Coordinates,
        timestamp: datetime | None = None,
        is_kyc_verified: bool = False,
        is_available: bool = False,
    ) -> DriverState:
        with self._state_lock:
            busy = driver_id in self._active_assignments
        return self._geo_index.register_driver(
            driver_id,
            vehicle_type,
            coordinates,
            timestamp or self._clock(),
            is_kyc_verified=is_kyc_verified,
            is_available=is_available and not busy,
        )

    def get_open_offer(self, driver_id: str) -> PendingOffer | None:
        with self._state_lock:
            booking_id = self._driver_offers.get(driver_id)
        if booking_id is None:
            return None
        offer = self._timeouts.get_offer(booking_id)
        if offer is None or offer.driver_id != driver_id:
            return None
        return offer

    def get_stats(self) -> dict[str, Any]:
        """Get matching outcome statistics."""
        with self._state_lock:
            return {
                "bookings_created": self._bookings_created,
                "bookings_expired": self._bookings_expired,
                "bookings_cancelled": self._bookings_cancelled,
                "trips_completed": self._trips_completed,
                "offers_sent": self._offers_sent,
                "offers_accepted": self._offers_accepted,
                "offers_declined": self._offers_declined,
                "offers_expired": self._offers_expired,
                "stale_accepts": self._stale_accepts,
                "stale_declines": self._stale_declines,
                "pending_bookings": sum(1 for s in self._dispatches.values() if s.is_pending),
                "open_offers": len(self._driver_offers),
                "active_assignments": len(self._active_assignments),
            }

    def recover(self) -> int:
        """Rebuild in-memory dispatch state from storage after a restart.

        Pending bookings come back without an offer and are picked up by the
        next sweep. Returns the number of bookings restored.
        """
        restored = 0
        for booking in self._state_machine.list_bookings(
            status=BookingStatus.PENDING, limit=_RECOVERY_BATCH
        ):
            state = self._state_for(booking)
            with self._state_lock:
                self._dispatches[booking.booking_id] = state
            if self._demand_estimator is not None:
                self._demand_estimator.increment_pending_request(state.pickup)
            restored += 1

        for status in (*ASSIGNED_STATUSES, BookingStatus.IN_PROGRESS):
            for booking in self._state_machine.list_bookings(status=status, limit=_RECOVERY_BATCH):
                if booking.driver_id is None:
                    continue
                state = self._state_for(booking)
                state.assigned_driver = booking.driver_id
                with self._state_lock:
                    self._dispatches[booking.booking_id] = state
                    self._active_assignments[booking.driver_id] = booking.booking_id
                restored += 1

        if restored:
            logger.info(f"Recovered dispatch state for {restored} bookings")
        return restored

    def clear(self) -> None:
        with self._state_lock:
            self._dispatches.clear()
            self._driver_offers.clear()
            self._active_assignments.clear()
        self._timeouts.clear()

    def _dispatch_next(self, state: DispatchState) -> Booking | None:
        """Offer the booking to the nearest free candidate not yet tried.

        Must be called holding the booking lock. Returns the expired booking
        on exhaustion, otherwise None.
        """
        if state.offer_attempts >= self._settings.max_offer_attempts:
            return self._exhaust(state, f"No acceptance after {state.offer_attempts} offers")

        candidates = self._geo_index.find_nearby(
            state.pickup,
            state.vehicle_type,
            max_distance_m=self._settings.search_radius_m,
            limit=self._settings.candidate_limit,
            exclude=state.skipped,
        )
        if not candidates:
            return self._exhaust(state, "No drivers available")

        driver_id = self._reserve_candidate(state.booking_id, candidates)
        if driver_id is None:
            logger.info(
                f"All {len(candidates)} candidates for booking {state.booking_id} hold "
                "other offers, retrying on next sweep"
            )
            return None

        state.offer_attempts += 1
        state.offer_sequence += 1
        state.offered_driver = driver_id
        offer = self._timeouts.start_offer_timeout(
            state.booking_id, driver_id, state.offer_sequence
        )
        with self._state_lock:
            self._offers_sent += 1
        metrics.offers_sent.add(1, {"vehicle_type": state.vehicle_type.value})

        logger.info(
            f"Offering booking {state.booking_id} to driver {driver_id} "
            f"(attempt {state.offer_attempts}/{self._settings.max_offer_attempts})"
        )
        self._notify(
            driver_id,
            "booking.offer",
            {
                "booking_id": state.booking_id,
                "offer_sequence": offer.offer_sequence,
                "pickup": {"lat": state.pickup.lat, "lng": state.pickup.lng},
                "vehicle_type": state.vehicle_type.value,
                "expires_at": offer.deadline.isoformat(),
            },
        )
        return None

    def _reserve_candidate(self, booking_id: str, candidates: list[str]) -> str | None:
        with self._state_lock:
            for driver_id in candidates:
                if driver_id in self._driver_offers or driver_id in self._active_assignments:
                    continue
                self._driver_offers[driver_id] = booking_id
                return driver_id
        return None

    def _resolve_offer(self, state: DispatchState, driver_id: str, outcome: OfferOutcome) -> None:
        with self._state_lock:
            if self._driver_offers.get(driver_id) == state.booking_id:
                del self._driver_offers[driver_id]
            state.skipped.add(driver_id)
            if state.offered_driver == driver_id:
                state.offered_driver = None
            if outcome == "declined":
                self._offers_declined += 1
            elif outcome == "expired":
                self._offers_expired += 1
        metrics.offers_resolved.add(1, {"outcome": outcome})
        logger.info(f"Driver {driver_id} offer for booking {state.booking_id}: {outcome}")

    def _expire_offer(self, offer: PendingOffer) -> bool:
        with self._booking_locks.hold(offer.booking_id), with_correlation(offer.booking_id):
            with self._state_lock:
                state = self._dispatches.get(offer.booking_id)
            if (
                state is None
                or state.offered_driver != offer.driver_id
                or state.offer_sequence != offer.offer_sequence
            ):
                self._release_offer_slot(offer.driver_id, offer.booking_id)
                return False

            self._resolve_offer(state, offer.driver_id, "expired")
            self._notify(offer.driver_id, "booking.offer_expired", {"booking_id": offer.booking_id})
            self._dispatch_next(state)
            return True

    def _exhaust(self, state: DispatchState, note: str) -> Booking | None:
        try:
            booking = self._state_machine.expire(state.booking_id, note)
        except InvalidTransition as e:
            logger.warning(
                f"Booking {state.booking_id} could not expire from {e.current_status}, "
                "dropping dispatch state"
            )
            self._forget(state.booking_id)
            return None

        self._forget(state.booking_id)
        if self._demand_estimator is not None:
            self._demand_estimator.decrement_pending_request(state.pickup)
        with self._state_lock:
            self._bookings_expired += 1
        metrics.bookings_expired.add(1, {"vehicle_type": state.vehicle_type.value})

        logger.warning(f"Booking {state.booking_id} expired: {note}")
        self._notify(
            state.customer_id,
            BookingStatus.EXPIRED.to_event_type(),
            {"booking_id": state.booking_id, "reason": note},
        )
        return booking

    def _reject_stale_accept(self, booking_id: str, driver_id: str) -> None:
        self._release_offer_slot(driver_id, booking_id)
        with self._state_lock:
            self._stale_accepts += 1
        metrics.offers_resolved.add(1, {"outcome": "stale"})
        logger.info(f"Stale accept from driver {driver_id} for booking {booking_id}")

    def _release_offer_slot(self, driver_id: str, booking_id: str) -> None:
        with self._state_lock:
            if self._driver_offers.get(driver_id) == booking_id:
                del self._driver_offers[driver_id]

    def _free_driver(self, driver_id: str, booking_id: str) -> None:
        with self._state_lock:
            if self._active_assignments.get(driver_id) == booking_id:
                del self._active_assignments[driver_id]
        if self._geo_index.get_driver(driver_id) is not None:
            self._geo_index.set_availability(driver_id, True)

    def _forget(self, booking_id: str) -> DispatchState | None:
        with self._state_lock:
            return self._dispatches.pop(booking_id, None)

    def _state_for(self, booking: Booking) -> DispatchState:
        return DispatchState(
            booking_id=booking.booking_id,
            customer_id=booking.customer_id,
            pickup=booking.pickup.coordinates,
            vehicle_type=booking.vehicle_type,
            expires_at=ensure_utc(booking.created_at)
            + timedelta(seconds=self._settings.booking_expiry_seconds),
        )

    def _notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        safe_notify(self._notifier, user_id, event_type, payload)
