"""Test data factories and fakes for dispatch tests."""

import itertools
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from faker import Faker

from cargo_dispatch.booking import Location
from cargo_dispatch.core.exceptions import GatewayError
from cargo_dispatch.fare import Requirements
from cargo_dispatch.geo.coordinates import Coordinates
from cargo_dispatch.matching.dispatch_coordinator import BookingRequest
from cargo_dispatch.payment import PaymentMethod
from cargo_dispatch.payments.gateway import sign_reference
from cargo_dispatch.vehicles import VehicleType

# Mumbai, Chhatrapati Shivaji Terminus area
MUMBAI_PICKUP = Coordinates(lat=19.0760, lng=72.8777)
MUMBAI_DROP = Coordinates(lat=19.1000, lng=72.9000)

# One kilometre of latitude, close enough at this latitude for test geometry
KM_LAT = 1 / 111.195

GATEWAY_SECRET = "test-gateway-secret"


def point_north_of(origin: Coordinates, km: float) -> Coordinates:
    return Coordinates(lat=origin.lat + km * KM_LAT, lng=origin.lng)


class MutableClock:
    """Deterministic clock the tests move forward by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 10, 19, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeGateway:
    """In-memory online gateway that signs references with ``GATEWAY_SECRET``."""

    name = "razorpay"

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.fail_create = False
        self.fail_refund = False
        self.intents: list[dict[str, Any]] = []
        self.refunds: list[tuple[str, Decimal]] = []

    def create_intent(self, amount: Decimal, currency: str, metadata: dict[str, Any]) -> str:
        if self.fail_create:
            raise GatewayError("razorpay create_intent failed after retries")
        intent_id = f"pi_{next(self._ids):04d}"
        self.intents.append({"id": intent_id, "amount": amount, "currency": currency, **metadata})
        return intent_id

    def verify(self, gateway_ref: str, signature: str) -> bool:
        return signature == sign_reference(GATEWAY_SECRET, gateway_ref)

    def refund(self, gateway_ref: str, amount: Decimal) -> str:
        if self.fail_refund:
            raise GatewayError("razorpay refund failed after retries")
        self.refunds.append((gateway_ref, amount))
        return f"rf_{next(self._ids):04d}"


class DispatchFactory:
    """Factory for booking requests with seeded Faker."""

    def __init__(self, seed: int = 42):
        self.fake = Faker()
        Faker.seed(seed)

    def customer_id(self) -> str:
        return f"cust_{self.fake.uuid4()[:8]}"

    def driver_id(self) -> str:
        return f"drv_{self.fake.uuid4()[:8]}"

    def location(self, coordinates: Coordinates, **overrides: Any) -> Location:
        defaults: dict[str, Any] = {
            "address": self.fake.street_address(),
            "coordinates": coordinates,
            "landmark": None,
            "instructions": None,
        }
        defaults.update(overrides)
        return Location(**defaults)

    def booking_request(self, **overrides: Any) -> BookingRequest:
        defaults: dict[str, Any] = {
            "customer_id": self.customer_id(),
            "vehicle_type": VehicleType.MINI_TRUCK,
            "pickup": self.location(MUMBAI_PICKUP),
            "drop": self.location(MUMBAI_DROP),
            "requirements": Requirements(),
            "payment_method": PaymentMethod.COD,
        }
        defaults.update(overrides)
        return BookingRequest(**defaults)

    def booking_payload(self, **overrides: Any) -> dict[str, Any]:
        """JSON body for POST /bookings."""
        return self.booking_request(**overrides).model_dump(mode="json")
