"""Atomic booking transitions backed by storage compare-and-set.

Every status change follows the same path: load the booking, validate the
move against ``VALID_TRANSITIONS`` on a copy, apply the field changes, then
write status, document and timeline entry in one transaction guarded by the
expected status and version. A rejected or lost transition writes nothing.
"""

import logging
from collections.abc import Callable, Collection, Sequence
from datetime import datetime
from typing import Any, Literal

from sqlalchemy.orm import sessionmaker

from cargo_dispatch.booking import (
    ASSIGNED_STATUSES,
    Booking,
    BookingStatus,
    Cancellation,
    CancelledBy,
    DriverAssignment,
    Invoice,
    LocationSample,
    Rating,
    TimelineEntry,
)
from cargo_dispatch.core.clock import Clock, utc_now
from cargo_dispatch.core.correlation import with_correlation
from cargo_dispatch.core.exceptions import (
    AlreadySettled,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from cargo_dispatch.core.locks import KeyedLock
from cargo_dispatch.db.repositories import BookingRepository
from cargo_dispatch.db.transaction import unit_of_work
from cargo_dispatch.geo.coordinates import Coordinates

logger = logging.getLogger(__name__)

Mutator = Callable[[Booking, datetime], None]

_TRACKABLE_STATUSES = frozenset(ASSIGNED_STATUSES | {BookingStatus.IN_PROGRESS})


class BookingStateMachine:
    """Owns booking lifecycle writes. All mutations go through ``transition``."""

    def __init__(self, session_maker: sessionmaker[Any], clock: Clock = utc_now) -> None:
        self._session_maker = session_maker
        self._clock = clock
        self._locks = KeyedLock()

    def create(self, booking: Booking) -> Booking:
        if booking.status != BookingStatus.PENDING or len(booking.timeline) != 1:
            raise ValidationError(
                "New bookings must be pending with a single creation entry",
                {"booking_id": booking.booking_id, "status": booking.status.value},
            )
        with unit_of_work(self._session_maker) as session:
            BookingRepository(session).create(booking)
        logger.info(
            f"Created booking {booking.booking_id} for customer {booking.customer_id} "
            f"({booking.vehicle_type.value}, fare {booking.fare.total} {booking.fare.currency})"
        )
        return booking

    def get(self, booking_id: str) -> Booking:
        with self._session_maker() as session:
            booking = BookingRepository(session).get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", {"booking_id": booking_id})
        return booking

    def list_bookings(
        self,
        status: BookingStatus | None = None,
        customer_id: str | None = None,
        driver_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
        statuses: Collection[BookingStatus] | None = None,
    ) -> list[Booking]:
        with self._session_maker() as session:
            return BookingRepository(session).list_bookings(
                status=status,
                customer_id=customer_id,
                driver_id=driver_id,
                limit=limit,
                offset=offset,
                statuses=statuses,
            )

    def count_bookings(
        self,
        status: BookingStatus | None = None,
        customer_id: str | None = None,
        driver_id: str | None = None,
        statuses: Collection[BookingStatus] | None = None,
    ) -> int:
        with self._session_maker() as session:
            return BookingRepository(session).count_bookings(
                status=status, customer_id=customer_id, driver_id=driver_id, statuses=statuses
            )

    def transition(
        self,
        booking_id: str,
        target: BookingStatus,
        *,
        expected: Collection[BookingStatus] | None = None,
        driver_id: str | None = None,
        location: Coordinates | None = None,
        note: str | None = None,
        mutate: Mutator | None = None,
    ) -> Booking:
        """Apply one validated status change and persist it atomically.

        ``driver_id``, when given, must be the driver currently bound to the
        booking.

        Raises:
            NotFoundError: booking does not exist
            InvalidTransition: the move is not in the transition table, the
                booking is not in one of ``expected``, the driver does not
                match, or a concurrent writer changed it first
        """
        with self._locks.hold(booking_id), with_correlation(booking_id):
            current = self.get(booking_id)
            if expected is not None and current.status not in expected:
                raise InvalidTransition(
                    f"Booking {booking_id} is {current.status.value}, expected one of "
                    f"{sorted(status.value for status in expected)}",
                    current_status=current.status.value,
                    details={"requested_status": target.value},
                )
            if driver_id is not None and current.driver_id != driver_id:
                raise InvalidTransition(
                    f"Driver {driver_id} is not assigned to booking {booking_id}",
                    current_status=current.status.value,
                    details={"driver_id": driver_id},
                )

            updated = current.model_copy(deep=True)
            now = self._clock()
            entry = updated.transition_to(target, now, location=location, note=note)
            if mutate is not None:
                mutate(updated, now)
            self._validate(updated)
            self._persist(current, updated, [entry])

            logger.info(
                f"Booking {booking_id}: {current.status.value} -> {target.value}"
                + (f" ({note})" if note else "")
            )
            return updated

    def update(
        self,
        booking_id: str,
        mutate: Mutator,
        allowed: Collection[BookingStatus],
    ) -> Booking:
        """Change non-status fields (ratings, invoice) without a timeline entry."""
        with self._locks.hold(booking_id), with_correlation(booking_id):
            current = self.get(booking_id)
            if current.status not in allowed:
                raise InvalidTransition(
                    f"Booking {booking_id} cannot be updated while {current.status.value}",
                    current_status=current.status.value,
                )
            updated = current.model_copy(deep=True)
            now = self._clock()
            mutate(updated, now)
            updated.updated_at = now
            self._validate(updated)
            self._persist(current, updated, [])
            return updated

    def assign_driver(
        self,
        booking_id: str,
        driver_id: str,
        location: Coordinates | None = None,
        status: BookingStatus = BookingStatus.DRIVER_ASSIGNED,
    ) -> Booking:
        """Bind a driver to a booking that is still pending."""
        if status not in ASSIGNED_STATUSES:
            raise ValidationError(f"Cannot assign a driver with status {status.value}")

        def bind(booking: Booking, now: datetime) -> None:
            booking.driver_id = driver_id
            booking.driver_assignment = DriverAssignment(assigned_at=now, accepted_at=now)

        return self.transition(
            booking_id,
            status,
            expected={BookingStatus.PENDING},
            location=location,
            note=f"Driver {driver_id} assigned",
            mutate=bind,
        )

    def release_driver(self, booking_id: str, driver_id: str, reason: str | None = None) -> Booking:
        """Return an assigned booking to pending with the driver cleared."""

        def unbind(booking: Booking, now: datetime) -> None:
            booking.driver_id = None
            booking.driver_assignment = None

        return self.transition(
            booking_id,
            BookingStatus.PENDING,
            expected=ASSIGNED_STATUSES,
            driver_id=driver_id,
            note=f"Driver {driver_id} released booking" + (f": {reason}" if reason else ""),
            mutate=unbind,
        )

    def start_trip(
        self, booking_id: str, driver_id: str, location: Coordinates | None = None
    ) -> Booking:
        def started(booking: Booking, now: datetime) -> None:
            if booking.driver_assignment is not None:
                booking.driver_assignment.started_at = now

        return self.transition(
            booking_id,
            BookingStatus.IN_PROGRESS,
            expected=ASSIGNED_STATUSES,
            driver_id=driver_id,
            location=location,
            note="Trip started",
            mutate=started,
        )

    def complete_trip(
        self, booking_id: str, driver_id: str, location: Coordinates | None = None
    ) -> Booking:
        def completed(booking: Booking, now: datetime) -> None:
            if booking.driver_assignment is not None:
                booking.driver_assignment.completed_at = now

        return self.transition(
            booking_id,
            BookingStatus.COMPLETED,
            expected={BookingStatus.IN_PROGRESS},
            driver_id=driver_id,
            location=location,
            note="Trip completed",
            mutate=completed,
        )

    def cancel(
        self,
        booking_id: str,
        cancelled_by: CancelledBy,
        reason: str | None = None,
        location: Coordinates | None = None,
    ) -> Booking:
        def record(booking: Booking, now: datetime) -> None:
            booking.cancellation = Cancellation(
                cancelled_by=cancelled_by, reason=reason, cancelled_at=now
            )

        return self.transition(
            booking_id,
            BookingStatus.CANCELLED,
            location=location,
            note=f"Cancelled by {cancelled_by}" + (f": {reason}" if reason else ""),
            mutate=record,
        )

    def expire(self, booking_id: str, note: str = "No driver accepted the booking") -> Booking:
        return self.transition(
            booking_id,
            BookingStatus.EXPIRED,
            expected={BookingStatus.PENDING},
            note=note,
        )

    def record_driver_location(
        self, booking_id: str, driver_id: str, sample: LocationSample
    ) -> bool:
        """Append a location sample to the driver's active booking.

        Returns False when the booking is not being served by this driver or
        the sample is older than the last one recorded.
        """
        with self._locks.hold(booking_id):
            booking = self.get(booking_id)
            if booking.status not in _TRACKABLE_STATUSES or booking.driver_id != driver_id:
                return False
            if booking.driver_assignment is None:
                return False
            samples = booking.driver_assignment.driver_locations
            if samples and sample.timestamp < samples[-1].timestamp:
                return False
            with unit_of_work(self._session_maker) as session:
                BookingRepository(session).append_location(booking_id, driver_id, sample)
            return True

    def rate(
        self,
        booking_id: str,
        by: Literal["customer", "driver"],
        rating: int,
        review: str | None = None,
    ) -> Booking:
        """Attach the customer's or driver's rating to a completed booking, once."""
        field_name = "customer_rating" if by == "customer" else "driver_rating"

        def attach(booking: Booking, now: datetime) -> None:
            if getattr(booking, field_name) is not None:
                raise AlreadySettled(
                    f"Booking {booking_id} already has a {by} rating",
                    {"booking_id": booking_id},
                )
            setattr(booking, field_name, Rating(rating=rating, review=review, rated_at=now))

        return self.update(booking_id, attach, allowed={BookingStatus.COMPLETED})

    def attach_invoice(self, booking_id: str) -> Booking:
        def attach(booking: Booking, now: datetime) -> None:
            if booking.invoice is not None:
                raise AlreadySettled(
                    f"Booking {booking_id} already has invoice {booking.invoice.invoice_number}",
                    {"booking_id": booking_id},
                )
            booking.invoice = Invoice(
                invoice_number=f"INV-{booking.booking_id}", generated_at=now
            )

        return self.update(booking_id, attach, allowed={BookingStatus.COMPLETED})

    def _persist(
        self, current: Booking, updated: Booking, entries: Sequence[TimelineEntry]
    ) -> None:
        with unit_of_work(self._session_maker) as session:
            written = BookingRepository(session).compare_and_set(
                updated, current.status, current.version, entries
            )
        if not written:
            latest = self.get(current.booking_id)
            raise InvalidTransition(
                f"Booking {current.booking_id} changed concurrently "
                f"(now {latest.status.value})",
                current_status=latest.status.value,
            )
        updated.version = current.version + 1

    @staticmethod
    def _validate(booking: Booking) -> None:
        try:
            booking.check_invariants()
        except ValueError as e:
            raise ValidationError(str(e), {"booking_id": booking.booking_id}) from e
