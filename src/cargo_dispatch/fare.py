"""Fare computation for cargo bookings.

Every component is whole currency units. Distance and time charges are
rounded up, the surge is rounded half up, and ``total`` is derived from the
components so it can never drift from them.
"""

import math
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from cargo_dispatch.core.exceptions import ValidationError
from cargo_dispatch.money import ceil_units, round_half_up, to_decimal
from cargo_dispatch.vehicles import VehicleType

FARE_COMPONENTS = ("base", "distance", "time", "surge", "additional")


class VehicleRates(BaseModel):
    """Rate card entry for one vehicle type."""

    model_config = ConfigDict(frozen=True)

    base: Decimal = Field(ge=0)
    per_km: Decimal = Field(ge=0)
    per_min: Decimal = Field(ge=0)


DEFAULT_RATE_CARD: dict[VehicleType, VehicleRates] = {
    VehicleType.TWO_WHEELER: VehicleRates(base=Decimal(30), per_km=Decimal(8), per_min=Decimal(1)),
    VehicleType.THREE_WHEELER: VehicleRates(
        base=Decimal(40), per_km=Decimal(10), per_min=Decimal("1.5")
    ),
    VehicleType.MINI_TRUCK: VehicleRates(base=Decimal(50), per_km=Decimal(12), per_min=Decimal(2)),
    VehicleType.TEMPO: VehicleRates(base=Decimal(60), per_km=Decimal(15), per_min=Decimal("2.5")),
    VehicleType.LARGE_TRUCK: VehicleRates(
        base=Decimal(80), per_km=Decimal(20), per_min=Decimal(3)
    ),
}


class Requirements(BaseModel):
    """Handling requirements a customer can add to a booking."""

    helper: bool = False
    fragile: bool = False
    heavy: bool = False
    notes: str | None = Field(default=None, max_length=500)


class RequirementCharges(BaseModel):
    model_config = ConfigDict(frozen=True)

    helper: Decimal = Field(default=Decimal(50), ge=0)
    fragile: Decimal = Field(default=Decimal(30), ge=0)
    heavy: Decimal = Field(default=Decimal(100), ge=0)

    def for_requirements(self, requirements: Requirements | None) -> Decimal:
        if requirements is None:
            return Decimal(0)
        charge = Decimal(0)
        if requirements.helper:
            charge += self.helper
        if requirements.fragile:
            charge += self.fragile
        if requirements.heavy:
            charge += self.heavy
        return charge


class Fare(BaseModel):
    """Structured fare breakdown. ``total`` is always the sum of the components."""

    model_config = ConfigDict(frozen=True)

    base: Decimal = Field(ge=0)
    distance: Decimal = Field(ge=0)
    time: Decimal = Field(ge=0)
    surge: Decimal = Field(default=Decimal(0), ge=0)
    additional: Decimal = Field(default=Decimal(0), ge=0)
    currency: str = "INR"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> Decimal:
        return self.base + self.distance + self.time + self.surge + self.additional

    def with_components(self, **changes: Any) -> "Fare":
        """Return a new fare with some components replaced and the total recomputed."""
        unknown = set(changes) - set(FARE_COMPONENTS)
        if unknown:
            raise ValidationError(
                f"Unknown fare components: {', '.join(sorted(unknown))}",
                {"allowed": list(FARE_COMPONENTS)},
            )
        data = self.model_dump(exclude={"total"})
        data.update(changes)
        return Fare(**data)


class FareCalculator:
    """Computes fares from a per-vehicle rate card.

    Pure with respect to its inputs: the same arguments always produce the
    same breakdown, which lets a stored fare be recomputed for audit.
    """

    def __init__(
        self,
        rate_card: Mapping[VehicleType, VehicleRates] | None = None,
        max_demand_factor: float = 2.0,
        currency: str = "INR",
        requirement_charges: RequirementCharges | None = None,
    ) -> None:
        if max_demand_factor < 1.0:
            raise ValidationError(
                f"max_demand_factor must be >= 1.0, got {max_demand_factor}"
            )
        self._rate_card = dict(rate_card or DEFAULT_RATE_CARD)
        self._max_demand_factor = to_decimal(max_demand_factor)
        self._currency = currency
        self._requirement_charges = requirement_charges or RequirementCharges()

    @property
    def currency(self) -> str:
        return self._currency

    def rates_for(self, vehicle_type: VehicleType | str) -> VehicleRates:
        try:
            return self._rate_card[VehicleType(vehicle_type)]
        except (KeyError, ValueError) as e:
            raise ValidationError(
                f"Unknown vehicle type: {vehicle_type}",
                {"vehicle_type": str(vehicle_type)},
            ) from e

    def clamp_demand_factor(self, demand_factor: float) -> Decimal:
        if not math.isfinite(demand_factor):
            raise ValidationError(f"Demand factor must be finite, got {demand_factor}")
        factor = to_decimal(demand_factor)
        return min(max(factor, Decimal(1)), self._max_demand_factor)

    def compute_fare(
        self,
        distance_km: float,
        duration_min: float,
        vehicle_type: VehicleType | str,
        demand_factor: float = 1.0,
        requirements: Requirements | None = None,
    ) -> Fare:
        for name, value in (("distance_km", distance_km), ("duration_min", duration_min)):
            if not math.isfinite(value):
                raise ValidationError(f"{name} must be finite, got {value}")
            if value < 0:
                raise ValidationError(f"{name} must not be negative, got {value}")

        rates = self.rates_for(vehicle_type)
        factor = self.clamp_demand_factor(demand_factor)

        base = rates.base
        distance = ceil_units(to_decimal(distance_km) * rates.per_km)
        time = ceil_units(to_decimal(duration_min) * rates.per_min)
        surge = round_half_up(base * max(Decimal(0), factor - 1))

        return Fare(
            base=base,
            distance=distance,
            time=time,
            surge=surge,
            additional=self._requirement_charges.for_requirements(requirements),
            currency=self._currency,
        )
