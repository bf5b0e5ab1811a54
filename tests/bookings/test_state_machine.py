from datetime import timedelta
from itertools import product

import pytest

from cargo_dispatch.booking import VALID_TRANSITIONS, BookingStatus, LocationSample, new_booking
from cargo_dispatch.core.exceptions import (
    AlreadySettled,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from cargo_dispatch.fare import Fare
from cargo_dispatch.vehicles import VehicleType
from tests.factories import MUMBAI_DROP, MUMBAI_PICKUP, point_north_of


@pytest.fixture
def booking(state_machine, dispatch_factory, clock):
    """A persisted pending booking."""
    return state_machine.create(
        new_booking(
            customer_id="cust_001",
            vehicle_type=VehicleType.MINI_TRUCK,
            pickup=dispatch_factory.location(MUMBAI_PICKUP),
            drop=dispatch_factory.location(MUMBAI_DROP),
            distance_km=4.48,
            duration_min=10.8,
            fare=Fare(base=50, distance=54, time=22),
            now=clock.now,
        )
    )


def run_to_in_progress(state_machine, booking_id, driver_id="drv_1"):
    state_machine.assign_driver(booking_id, driver_id)
    return state_machine.start_trip(booking_id, driver_id)


@pytest.mark.unit
class TestCreateAndGet:
    def test_round_trip(self, state_machine, booking):
        stored = state_machine.get(booking.booking_id)

        assert stored.booking_id == booking.booking_id
        assert stored.fare.total == booking.fare.total
        assert stored.pickup == booking.pickup
        assert stored.timeline == booking.timeline
        assert stored.version == 0

    def test_get_missing(self, state_machine):
        with pytest.raises(NotFoundError):
            state_machine.get("BK_MISSING")

    def test_create_rejects_non_pending(self, state_machine, booking, clock):
        expired = booking.model_copy(deep=True)
        expired.booking_id = "BK_OTHER"
        expired.transition_to(BookingStatus.EXPIRED, clock.now)

        with pytest.raises(ValidationError):
            state_machine.create(expired)

    def test_list_bookings_filters(self, state_machine, booking):
        assert [b.booking_id for b in state_machine.list_bookings(customer_id="cust_001")] == [
            booking.booking_id
        ]
        assert state_machine.list_bookings(status=BookingStatus.COMPLETED) == []


@pytest.mark.unit
class TestTransitions:
    def test_assign_driver(self, state_machine, booking, clock):
        assigned = state_machine.assign_driver(booking.booking_id, "drv_1")

        assert assigned.status == BookingStatus.DRIVER_ASSIGNED
        assert assigned.driver_id == "drv_1"
        assert assigned.driver_assignment.assigned_at == clock.now
        assert assigned.version == 1
        assert state_machine.get(booking.booking_id).version == 1

    def test_assign_as_confirmed(self, state_machine, booking):
        confirmed = state_machine.assign_driver(
            booking.booking_id, "drv_1", status=BookingStatus.CONFIRMED
        )

        assert confirmed.status == BookingStatus.CONFIRMED
        assert state_machine.start_trip(booking.booking_id, "drv_1").status == (
            BookingStatus.IN_PROGRESS
        )

    def test_assign_with_non_assigned_status_rejected(self, state_machine, booking):
        with pytest.raises(ValidationError):
            state_machine.assign_driver(
                booking.booking_id, "drv_1", status=BookingStatus.IN_PROGRESS
            )

    def test_second_assignment_rejected(self, state_machine, booking):
        state_machine.assign_driver(booking.booking_id, "drv_1")

        with pytest.raises(InvalidTransition) as exc_info:
            state_machine.assign_driver(booking.booking_id, "drv_2")

        assert exc_info.value.current_status == "driver_assigned"
        assert state_machine.get(booking.booking_id).driver_id == "drv_1"

    def test_full_lifecycle_timestamps(self, state_machine, booking, clock):
        state_machine.assign_driver(booking.booking_id, "drv_1")
        clock.advance(600)
        state_machine.start_trip(booking.booking_id, "drv_1", location=MUMBAI_PICKUP)
        clock.advance(900)

        completed = state_machine.complete_trip(booking.booking_id, "drv_1", location=MUMBAI_DROP)

        assignment = completed.driver_assignment
        assert assignment.completed_at - assignment.started_at == timedelta(seconds=900)
        assert completed.timeline[-1].location == MUMBAI_DROP
        assert [entry.status for entry in completed.timeline] == [
            BookingStatus.PENDING,
            BookingStatus.DRIVER_ASSIGNED,
            BookingStatus.IN_PROGRESS,
            BookingStatus.COMPLETED,
        ]

    def test_timestamps_non_decreasing(self, state_machine, booking, clock):
        run_to_in_progress(state_machine, booking.booking_id)
        clock.advance(60)
        completed = state_machine.complete_trip(booking.booking_id, "drv_1")

        timestamps = [entry.timestamp for entry in completed.timeline]
        assert timestamps == sorted(timestamps)

    def test_release_clears_driver(self, state_machine, booking):
        state_machine.assign_driver(booking.booking_id, "drv_1")

        released = state_machine.release_driver(booking.booking_id, "drv_1", reason="Breakdown")

        assert released.status == BookingStatus.PENDING
        assert released.driver_id is None
        assert released.driver_assignment is None
        assert released.timeline[-1].note == "Driver drv_1 released booking: Breakdown"

    def test_release_after_start_rejected(self, state_machine, booking):
        run_to_in_progress(state_machine, booking.booking_id)

        with pytest.raises(InvalidTransition):
            state_machine.release_driver(booking.booking_id, "drv_1")

    def test_wrong_driver_rejected(self, state_machine, booking):
        state_machine.assign_driver(booking.booking_id, "drv_1")

        with pytest.raises(InvalidTransition):
            state_machine.start_trip(booking.booking_id, "drv_2")

    def test_expire_only_from_pending(self, state_machine, booking):
        state_machine.assign_driver(booking.booking_id, "drv_1")

        with pytest.raises(InvalidTransition):
            state_machine.expire(booking.booking_id)

    def test_cancel_in_progress(self, state_machine, booking):
        run_to_in_progress(state_machine, booking.booking_id)

        cancelled = state_machine.cancel(booking.booking_id, "admin", reason="Fraud check")

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.driver_id == "drv_1"
        assert cancelled.cancellation.cancelled_by == "admin"

    def test_terminal_booking_rejects_everything(self, state_machine, booking):
        state_machine.expire(booking.booking_id)

        with pytest.raises(InvalidTransition):
            state_machine.cancel(booking.booking_id, "customer")
        with pytest.raises(InvalidTransition):
            state_machine.assign_driver(booking.booking_id, "drv_1")

    def test_rejected_transition_writes_nothing(self, state_machine, booking):
        with pytest.raises(InvalidTransition):
            state_machine.complete_trip(booking.booking_id, "drv_1")

        stored = state_machine.get(booking.booking_id)
        assert stored.status == BookingStatus.PENDING
        assert stored.version == 0
        assert len(stored.timeline) == 1

    def test_failing_mutation_writes_nothing(self, state_machine, booking):
        def complete_without_driver(b, now):
            b.status = BookingStatus.COMPLETED

        with pytest.raises(ValidationError):
            state_machine.transition(
                booking.booking_id, BookingStatus.DRIVER_ASSIGNED, mutate=complete_without_driver
            )

        assert state_machine.get(booking.booking_id).status == BookingStatus.PENDING


@pytest.mark.unit
class TestRatingsAndInvoice:
    def complete(self, state_machine, booking_id):
        run_to_in_progress(state_machine, booking_id)
        return state_machine.complete_trip(booking_id, "drv_1")

    def test_rate_completed_booking(self, state_machine, booking):
        self.complete(state_machine, booking.booking_id)

        rated = state_machine.rate(booking.booking_id, "customer", 5, "On time")

        assert rated.customer_rating.rating == 5
        assert rated.driver_rating is None
        assert rated.status == BookingStatus.COMPLETED
        assert len(rated.timeline) == 4

    def test_rate_twice_rejected(self, state_machine, booking):
        self.complete(state_machine, booking.booking_id)
        state_machine.rate(booking.booking_id, "driver", 4)

        with pytest.raises(AlreadySettled):
            state_machine.rate(booking.booking_id, "driver", 1)

    def test_rate_before_completion_rejected(self, state_machine, booking):
        with pytest.raises(InvalidTransition):
            state_machine.rate(booking.booking_id, "customer", 5)

    def test_invoice_attached_once(self, state_machine, booking):
        self.complete(state_machine, booking.booking_id)

        invoiced = state_machine.attach_invoice(booking.booking_id)

        assert invoiced.invoice.invoice_number == f"INV-{booking.booking_id}"
        with pytest.raises(AlreadySettled):
            state_machine.attach_invoice(booking.booking_id)


@pytest.mark.unit
class TestDriverLocations:
    def sample(self, clock, km, seconds):
        return LocationSample(
            coordinates=point_north_of(MUMBAI_PICKUP, km),
            timestamp=clock.now + timedelta(seconds=seconds),
        )

    def test_samples_appended_in_order(self, state_machine, booking, clock):
        state_machine.assign_driver(booking.booking_id, "drv_1")

        assert state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 1.0, 5)
        )
        assert state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 0.5, 10)
        )

        samples = state_machine.get(booking.booking_id).driver_assignment.driver_locations
        assert [s.coordinates for s in samples] == [
            point_north_of(MUMBAI_PICKUP, 1.0),
            point_north_of(MUMBAI_PICKUP, 0.5),
        ]

    def test_older_sample_rejected(self, state_machine, booking, clock):
        state_machine.assign_driver(booking.booking_id, "drv_1")
        state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 1.0, 10)
        )

        assert not state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 2.0, 5)
        )

    def test_other_driver_rejected(self, state_machine, booking, clock):
        state_machine.assign_driver(booking.booking_id, "drv_1")

        assert not state_machine.record_driver_location(
            booking.booking_id, "drv_2", self.sample(clock, 1.0, 5)
        )

    def test_pending_booking_not_tracked(self, state_machine, booking, clock):
        assert not state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 1.0, 5)
        )

    def test_samples_survive_later_transitions(self, state_machine, booking, clock):
        state_machine.assign_driver(booking.booking_id, "drv_1")
        state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 1.0, 5)
        )

        started = state_machine.start_trip(booking.booking_id, "drv_1")

        assert len(started.driver_assignment.driver_locations) == 1
        stored = state_machine.get(booking.booking_id)
        assert len(stored.driver_assignment.driver_locations) == 1

    def test_reassigned_driver_starts_fresh_track(self, state_machine, booking, clock):
        state_machine.assign_driver(booking.booking_id, "drv_1")
        state_machine.record_driver_location(
            booking.booking_id, "drv_1", self.sample(clock, 1.0, 60)
        )
        state_machine.release_driver(booking.booking_id, "drv_1", reason="Breakdown")
        reassigned = state_machine.assign_driver(booking.booking_id, "drv_2")

        assert reassigned.driver_assignment.driver_locations == []
        assert state_machine.get(booking.booking_id).driver_assignment.driver_locations == []

        # Older than drv_1's last sample but the first one for drv_2
        assert state_machine.record_driver_location(
            booking.booking_id, "drv_2", self.sample(clock, 0.5, 30)
        )
        samples = state_machine.get(booking.booking_id).driver_assignment.driver_locations
        assert [s.coordinates for s in samples] == [point_north_of(MUMBAI_PICKUP, 0.5)]


def drive_to(state_machine, booking_id, status):
    """Walk a pending booking into ``status`` through the public transitions."""
    if status == BookingStatus.PENDING:
        return
    if status == BookingStatus.EXPIRED:
        state_machine.expire(booking_id)
    elif status == BookingStatus.CANCELLED:
        state_machine.cancel(booking_id, "customer")
    elif status == BookingStatus.CONFIRMED:
        state_machine.assign_driver(booking_id, "drv_1", status=BookingStatus.CONFIRMED)
    else:
        state_machine.assign_driver(booking_id, "drv_1")
        if status in (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
            state_machine.start_trip(booking_id, "drv_1")
        if status == BookingStatus.COMPLETED:
            state_machine.complete_trip(booking_id, "drv_1")


INVALID_MOVES = [
    (source, target)
    for source, target in product(BookingStatus, BookingStatus)
    if target not in VALID_TRANSITIONS[source]
]


@pytest.mark.unit
class TestTransitionTable:
    @pytest.mark.parametrize(
        "source,target", INVALID_MOVES, ids=[f"{s.value}->{t.value}" for s, t in INVALID_MOVES]
    )
    def test_moves_outside_table_rejected(self, state_machine, booking, source, target):
        drive_to(state_machine, booking.booking_id, source)
        before = state_machine.get(booking.booking_id)
        assert before.status == source

        with pytest.raises(InvalidTransition) as exc_info:
            state_machine.transition(booking.booking_id, target)

        assert exc_info.value.current_status == source.value
        after = state_machine.get(booking.booking_id)
        assert after.status == before.status
        assert after.version == before.version
        assert after.timeline == before.timeline

    def test_timeline_only_grows(self, state_machine, booking):
        booking_id = booking.booking_id
        snapshots = [state_machine.get(booking_id).timeline]

        for step in (
            lambda: state_machine.assign_driver(booking_id, "drv_1"),
            lambda: state_machine.release_driver(booking_id, "drv_1"),
            lambda: state_machine.assign_driver(booking_id, "drv_2"),
            lambda: state_machine.start_trip(booking_id, "drv_2"),
            lambda: state_machine.complete_trip(booking_id, "drv_2"),
            lambda: state_machine.rate(booking_id, "customer", 5),
        ):
            step()
            snapshots.append(state_machine.get(booking_id).timeline)

        for earlier, later in zip(snapshots, snapshots[1:]):
            assert later[: len(earlier)] == earlier
        assert [entry.status for entry in snapshots[-1]] == [
            BookingStatus.PENDING,
            BookingStatus.DRIVER_ASSIGNED,
            BookingStatus.PENDING,
            BookingStatus.DRIVER_ASSIGNED,
            BookingStatus.IN_PROGRESS,
            BookingStatus.COMPLETED,
        ]
