import logging
import threading

import h3

from cargo_dispatch.geo.coordinates import Coordinates
from cargo_dispatch.vehicles import VehicleType

from .driver_geospatial_index import DriverGeospatialIndex

logger = logging.getLogger(__name__)

# Demand factor returned when there are pending bookings but no free driver.
NO_SUPPLY_FACTOR = 2.5


class DemandEstimator:
    """Derives a demand factor from pending bookings versus free drivers near a pickup.

    Pending bookings are counted per H3 zone at a coarser resolution than the
    driver index. The fare engine clamps whatever factor comes out of here, so
    the curve can run past the configured maximum.
    """

    def __init__(
        self,
        geo_index: DriverGeospatialIndex,
        zone_resolution: int = 7,
        search_radius_m: float = 10_000.0,
    ) -> None:
        self._geo_index = geo_index
        self._zone_resolution = zone_resolution
        self._search_radius_m = search_radius_m
        self._lock = threading.Lock()
        self.pending_requests: dict[str, int] = {}

    def zone_for(self, point: Coordinates) -> str:
        return h3.latlng_to_cell(point.lat, point.lng, self._zone_resolution)

    def demand_factor(self, point: Coordinates, vehicle_type: VehicleType) -> float:
        zone_id = self.zone_for(point)
        with self._lock:
            # The booking being quoted counts as demand too.
            pending = self.pending_requests.get(zone_id, 0) + 1
        available = self._geo_index.count_available(point, vehicle_type, self._search_radius_m)

        if available == 0:
            factor = NO_SUPPLY_FACTOR
        else:
            factor = self._calculate_multiplier(pending / available)

        logger.debug(
            f"Demand in zone {zone_id}: pending={pending} available={available} factor={factor}"
        )
        return factor

    def _calculate_multiplier(self, ratio: float) -> float:
        if ratio <= 1.0:
            return 1.0
        elif ratio <= 2.0:
            return 1.0 + (ratio - 1.0) * 0.5
        elif ratio <= 3.0:
            return 1.5 + (ratio - 2.0) * 1.0
        else:
            return 2.5

    def get_pending(self, point: Coordinates) -> int:
        with self._lock:
            return self.pending_requests.get(self.zone_for(point), 0)

    def increment_pending_request(self, point: Coordinates) -> None:
        """Called when a booking starts waiting for a driver in this zone."""
        zone_id = self.zone_for(point)
        with self._lock:
            self.pending_requests[zone_id] = self.pending_requests.get(zone_id, 0) + 1

    def decrement_pending_request(self, point: Coordinates) -> None:
        """Called when a booking leaves pending (assigned, expired, cancelled)."""
        zone_id = self.zone_for(point)
        with self._lock:
            if self.pending_requests.get(zone_id, 0) > 0:
                self.pending_requests[zone_id] -= 1
                if self.pending_requests[zone_id] == 0:
                    del self.pending_requests[zone_id]

    def clear(self) -> None:
        with self._lock:
            self.pending_requests.clear()
