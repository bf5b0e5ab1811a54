"""Booking state machine and models."""

import secrets
import string
from datetime import datetime
from enum import Enum
from typing import Literal, Self

from pydantic import BaseModel, Field, model_validator

from cargo_dispatch.core.exceptions import InvalidTransition, ValidationError
from cargo_dispatch.fare import Fare, Requirements
from cargo_dispatch.geo.coordinates import Coordinates
from cargo_dispatch.payment import PaymentMethod
from cargo_dispatch.vehicles import VehicleType

_ID_ALPHABET = string.ascii_uppercase + string.digits


class BookingStatus(str, Enum):
    """Booking lifecycle states."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    DRIVER_ASSIGNED = "driver_assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def to_event_type(self) -> str:
        """Convert status to notification event type (e.g., 'booking.expired')."""
        return f"booking.{self.value}"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# ``confirmed`` behaves exactly like ``driver_assigned``. A ``pending`` target
# from an assigned state means the driver released the booking.
VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.DRIVER_ASSIGNED,
        BookingStatus.CONFIRMED,
        BookingStatus.EXPIRED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.DRIVER_ASSIGNED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.PENDING,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.PENDING,
    },
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.EXPIRED: set(),
}

TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.EXPIRED}
)

ASSIGNED_STATUSES = frozenset({BookingStatus.DRIVER_ASSIGNED, BookingStatus.CONFIRMED})

DRIVER_BOUND_STATUSES = frozenset(
    {
        BookingStatus.DRIVER_ASSIGNED,
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
    }
)

CancelledBy = Literal["customer", "driver", "admin", "system"]


class Location(BaseModel):
    address: str = Field(min_length=1, max_length=500)
    coordinates: Coordinates
    landmark: str | None = Field(default=None, max_length=200)
    instructions: str | None = Field(default=None, max_length=500)


class Measurement(BaseModel):
    value: float = Field(ge=0)
    unit: str


class TimelineEntry(BaseModel):
    status: BookingStatus
    timestamp: datetime
    location: Coordinates | None = None
    note: str | None = None


class LocationSample(BaseModel):
    coordinates: Coordinates
    timestamp: datetime


class DriverAssignment(BaseModel):
    assigned_at: datetime
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    driver_locations: list[LocationSample] = Field(default_factory=list)


class Cancellation(BaseModel):
    cancelled_by: CancelledBy
    reason: str | None = None
    cancelled_at: datetime


class Rating(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str | None = Field(default=None, max_length=1000)
    rated_at: datetime


class Invoice(BaseModel):
    invoice_number: str
    generated_at: datetime


class Booking(BaseModel):
    """One customer transport request and its lifecycle record."""

    booking_id: str
    customer_id: str
    driver_id: str | None = None
    status: BookingStatus = Field(default=BookingStatus.PENDING)
    vehicle_type: VehicleType
    pickup: Location
    drop: Location
    distance: Measurement
    estimated_duration: Measurement
    fare: Fare
    requirements: Requirements = Field(default_factory=Requirements)
    payment_method: PaymentMethod = PaymentMethod.COD
    timeline: list[TimelineEntry] = Field(min_length=1)
    driver_assignment: DriverAssignment | None = None
    cancellation: Cancellation | None = None
    customer_rating: Rating | None = None
    driver_rating: Rating | None = None
    invoice: Invoice | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @model_validator(mode="after")
    def validate_driver_binding(self) -> Self:
        self.check_invariants()
        return self

    def check_invariants(self) -> None:
        if self.status in DRIVER_BOUND_STATUSES and self.driver_id is None:
            raise ValueError(f"Booking in status {self.status.value} must have a driver")
        if self.status in {BookingStatus.PENDING, BookingStatus.EXPIRED} and self.driver_id:
            raise ValueError(f"Booking in status {self.status.value} cannot have a driver")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(
        self,
        new_status: BookingStatus,
        at: datetime,
        location: Coordinates | None = None,
        note: str | None = None,
    ) -> TimelineEntry:
        """Move to ``new_status`` and append the matching timeline entry."""
        if self.status.is_terminal:
            raise InvalidTransition(
                f"Cannot transition from terminal state {self.status.value}",
                current_status=self.status.value,
            )

        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Invalid transition from {self.status.value} to {new_status.value}",
                current_status=self.status.value,
                details={"requested_status": new_status.value},
            )

        entry = TimelineEntry(status=new_status, timestamp=at, location=location, note=note)
        self.status = new_status
        self.timeline.append(entry)
        self.updated_at = at
        return entry


def generate_booking_id(now: datetime) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(5))
    return f"BK{now:%y%m%d%H%M%S}{suffix}"


def new_booking(
    customer_id: str,
    vehicle_type: VehicleType,
    pickup: Location,
    drop: Location,
    distance_km: float,
    duration_min: float,
    fare: Fare,
    now: datetime,
    payment_method: PaymentMethod = PaymentMethod.COD,
    requirements: Requirements | None = None,
) -> Booking:
    """Build a pending booking with its identifier and creation timeline entry."""
    if not customer_id:
        raise ValidationError("customer_id is required")

    return Booking(
        booking_id=generate_booking_id(now),
        customer_id=customer_id,
        vehicle_type=vehicle_type,
        pickup=pickup,
        drop=drop,
        distance=Measurement(value=distance_km, unit="km"),
        estimated_duration=Measurement(value=duration_min, unit="min"),
        fare=fare,
        requirements=requirements or Requirements(),
        payment_method=payment_method,
        timeline=[
            TimelineEntry(
                status=BookingStatus.PENDING,
                timestamp=now,
                location=pickup.coordinates,
                note="Booking created",
            )
        ],
        created_at=now,
        updated_at=now,
    )
