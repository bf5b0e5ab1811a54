"""Request/response models for driver endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from cargo_dispatch.booking import Booking
from cargo_dispatch.geo.coordinates import Coordinates
from cargo_dispatch.matching.driver_geospatial_index import DriverState
from cargo_dispatch.vehicles import VehicleType


class DriverRegisterRequest(BaseModel):
    driver_id: str = Field(min_length=1, max_length=100)
    vehicle_type: VehicleType
    coordinates: Coordinates
    is_kyc_verified: bool = False
    is_available: bool = False


class LocationUpdateRequest(BaseModel):
    coordinates: Coordinates
    timestamp: datetime | None = Field(
        default=None, description="Device timestamp of the fix; defaults to server time"
    )


class LocationUpdateResponse(BaseModel):
    driver_id: str
    accepted: bool


class AvailabilityRequest(BaseModel):
    available: bool


class ReleaseRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class TripActionRequest(BaseModel):
    location: Coordinates | None = None


class DriverResponse(BaseModel):
    driver_id: str
    vehicle_type: VehicleType
    coordinates: Coordinates
    is_available: bool
    is_kyc_verified: bool
    last_updated: datetime

    @classmethod
    def from_state(cls, state: DriverState) -> "DriverResponse":
        return cls(
            driver_id=state.driver_id,
            vehicle_type=state.vehicle_type,
            coordinates=state.coordinates,
            is_available=state.is_available,
            is_kyc_verified=state.is_kyc_verified,
            last_updated=state.last_updated,
        )


class PendingOfferResponse(BaseModel):
    """A booking currently offered to the driver and still waiting for an answer."""

    booking: Booking
    offer_sequence: int
    expires_at: datetime
