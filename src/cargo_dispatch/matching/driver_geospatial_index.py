import logging
import math
import threading
from collections.abc import Collection
from dataclasses import dataclass, replace
from datetime import datetime

import h3

from cargo_dispatch.core.clock import ensure_utc
from cargo_dispatch.core.exceptions import NotFoundError
from cargo_dispatch.core.locks import KeyedLock
from cargo_dispatch.geo.coordinates import Coordinates
from cargo_dispatch.geo.distance import haversine_distance_m
from cargo_dispatch.vehicles import VehicleType

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_M = 10_000.0

# H3 cell sizes vary across the globe; only trust half the average edge length
# when deciding how far a grid disk is guaranteed to reach.
_EDGE_SAFETY_FACTOR = 0.5
_INITIAL_RING = 4
_MAX_RING = 400


@dataclass(frozen=True)
class DriverState:
    """Live index entry for one driver. Replaced wholesale on every write."""

    driver_id: str
    coordinates: Coordinates
    vehicle_type: VehicleType
    is_available: bool
    is_kyc_verified: bool
    last_updated: datetime
    cell: str

    @property
    def is_dispatchable(self) -> bool:
        return self.is_available and self.is_kyc_verified


class DriverGeospatialIndex:
    """Spatial index for driver locations using H3 hexagonal cells.

    Writes are serialized per driver; the cell map has its own short lock.
    Readers never wait on a driver lock and always see a complete
    ``DriverState`` because entries are swapped in a single assignment.
    """

    def __init__(self, h3_resolution: int = 8):
        self._h3_resolution = h3_resolution
        self._edge_m = h3.average_hexagon_edge_length(h3_resolution, unit="m")
        self._h3_cells: dict[str, set[str]] = {}
        self._drivers: dict[str, DriverState] = {}
        self._cells_lock = threading.Lock()
        self._driver_locks = KeyedLock()

    def register_driver(
        self,
        driver_id: str,
        vehicle_type: VehicleType,
        coordinates: Coordinates,
        timestamp: datetime,
        is_kyc_verified: bool = False,
        is_available: bool = False,
    ) -> DriverState:
        """Add a driver or replace their profile, keeping the newest known position."""
        timestamp = ensure_utc(timestamp)
        with self._driver_locks.hold(driver_id):
            current = self._drivers.get(driver_id)
            if current is not None and current.last_updated > timestamp:
                coordinates = current.coordinates
                timestamp = current.last_updated

            state = DriverState(
                driver_id=driver_id,
                coordinates=coordinates,
                vehicle_type=VehicleType(vehicle_type),
                is_available=is_available,
                is_kyc_verified=is_kyc_verified,
                last_updated=timestamp,
                cell=self._get_h3_cell(coordinates),
            )
            self._store(current, state)
            logger.info(
                f"Registered driver {driver_id} ({state.vehicle_type.value}, "
                f"kyc={is_kyc_verified}, available={is_available})"
            )
            return state

    def upsert_driver_location(
        self, driver_id: str, coordinates: Coordinates, timestamp: datetime
    ) -> bool:
        """Move a driver.

        Returns False when the driver is unknown or the update is older than
        the stored one.
        """
        timestamp = ensure_utc(timestamp)
        with self._driver_locks.hold(driver_id):
            current = self._drivers.get(driver_id)
            if current is None:
                logger.warning(f"Ignoring location for unregistered driver {driver_id}")
                return False
            if timestamp < current.last_updated:
                logger.debug(
                    f"Ignoring out-of-order location for driver {driver_id}: "
                    f"{timestamp.isoformat()} < {current.last_updated.isoformat()}"
                )
                return False

            state = replace(
                current,
                coordinates=coordinates,
                last_updated=timestamp,
                cell=self._get_h3_cell(coordinates),
            )
            self._store(current, state)
            return True

    def set_availability(self, driver_id: str, available: bool) -> DriverState:
        with self._driver_locks.hold(driver_id):
            current = self._require(driver_id)
            if current.is_available == available:
                return current
            state = replace(current, is_available=available)
            self._drivers[driver_id] = state
            return state

    def set_kyc_verified(self, driver_id: str, verified: bool) -> DriverState:
        with self._driver_locks.hold(driver_id):
            current = self._require(driver_id)
            state = replace(current, is_kyc_verified=verified)
            self._drivers[driver_id] = state
            return state

    def remove_driver(self, driver_id: str) -> None:
        with self._driver_locks.hold(driver_id):
            current = self._drivers.pop(driver_id, None)
            if current is None:
                return
            with self._cells_lock:
                self._discard_from_cell(current.cell, driver_id)

    def get_driver(self, driver_id: str) -> DriverState | None:
        return self._drivers.get(driver_id)

    def find_nearby(
        self,
        point: Coordinates,
        vehicle_type: VehicleType,
        max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
        limit: int = 10,
        exclude: Collection[str] = (),
    ) -> list[str]:
        """Dispatchable drivers of ``vehicle_type`` within range, nearest first."""
        return [
            driver_id
            for driver_id, _ in self.find_nearby_with_distance(
                point, vehicle_type, max_distance_m, limit, exclude
            )
        ]

    def find_nearby_with_distance(
        self,
        point: Coordinates,
        vehicle_type: VehicleType,
        max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
        limit: int = 10,
        exclude: Collection[str] = (),
    ) -> list[tuple[str, float]]:
        if limit <= 0 or max_distance_m < 0 or not self._drivers:
            return []

        vehicle_type = VehicleType(vehicle_type)
        center_cell = self._get_h3_cell(point)
        max_k = self._rings_to_cover(max_distance_m)

        candidates: dict[str, float] = {}
        checked_cells: set[str] = set()
        k = min(_INITIAL_RING, max_k)

        # Progressive ring expansion: stop once the disk provably contains
        # every driver closer than the limit-th candidate.
        while True:
            ring_cells = h3.grid_disk(center_cell, k)
            new_cells = [cell for cell in ring_cells if cell not in checked_cells]
            checked_cells.update(new_cells)

            with self._cells_lock:
                members = [
                    driver_id
                    for cell in new_cells
                    for driver_id in self._h3_cells.get(cell, ())
                ]

            for driver_id in members:
                if driver_id in exclude:
                    continue
                state = self._drivers.get(driver_id)
                if state is None or not state.is_dispatchable:
                    continue
                if state.vehicle_type != vehicle_type:
                    continue
                distance = haversine_distance_m(
                    point.lat, point.lng, state.coordinates.lat, state.coordinates.lng
                )
                if distance <= max_distance_m:
                    candidates[driver_id] = distance

            ranked = sorted(candidates.items(), key=lambda item: (item[1], item[0]))
            if k >= max_k:
                break
            if len(ranked) >= limit and ranked[limit - 1][1] <= self._covered_radius_m(k):
                break
            k = min(k * 2, max_k)

        return ranked[:limit]

    def count_available(
        self,
        point: Coordinates,
        vehicle_type: VehicleType,
        max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
    ) -> int:
        return len(
            self.find_nearby_with_distance(point, vehicle_type, max_distance_m, limit=len(self))
        )

    def clear(self) -> None:
        """Drop every driver from the index."""
        with self._cells_lock:
            self._h3_cells.clear()
            self._drivers.clear()

    def __len__(self) -> int:
        return len(self._drivers)

    def _require(self, driver_id: str) -> DriverState:
        state = self._drivers.get(driver_id)
        if state is None:
            raise NotFoundError(f"Driver {driver_id} is not registered", {"driver_id": driver_id})
        return state

    def _store(self, current: DriverState | None, state: DriverState) -> None:
        if current is None or current.cell != state.cell:
            with self._cells_lock:
                if current is not None:
                    self._discard_from_cell(current.cell, state.driver_id)
                self._h3_cells.setdefault(state.cell, set()).add(state.driver_id)
        self._drivers[state.driver_id] = state

    def _discard_from_cell(self, cell: str, driver_id: str) -> None:
        members = self._h3_cells.get(cell)
        if members is None:
            return
        members.discard(driver_id)
        if not members:
            del self._h3_cells[cell]

    def _covered_radius_m(self, k: int) -> float:
        """Distance from any point in the center cell that grid_disk(k) is sure to cover."""
        edge = self._edge_m * _EDGE_SAFETY_FACTOR
        return max(0.0, ((2 * k + 1) * math.sqrt(3) / 2 - 1) * edge)

    def _rings_to_cover(self, max_distance_m: float) -> int:
        edge = self._edge_m * _EDGE_SAFETY_FACTOR
        k = math.ceil(((max_distance_m / edge) + 1 - math.sqrt(3) / 2) / math.sqrt(3))
        return min(max(k, 1), _MAX_RING)

    def _get_h3_cell(self, coordinates: Coordinates) -> str:
        return h3.latlng_to_cell(coordinates.lat, coordinates.lng, self._h3_resolution)
