"""Trip distance and duration estimation used when quoting a booking."""

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel, Field

from cargo_dispatch.core.exceptions import (
    NetworkError,
    ServiceUnavailableError,
    ValidationError,
)
from cargo_dispatch.core.retry import RetryConfig, with_retry_sync

from .coordinates import Coordinates
from .distance import haversine_distance_km

logger = logging.getLogger(__name__)


class RouteEstimate(BaseModel):
    distance_km: float = Field(ge=0)
    duration_min: float = Field(ge=0)
    source: str = "haversine"


class NoRouteFoundError(ValidationError):
    """No route found between coordinates. Inherits from ValidationError (non-retryable)."""


class OSRMServiceError(ServiceUnavailableError):
    """OSRM service error (5xx). Inherits from ServiceUnavailableError (retryable)."""


class OSRMTimeoutError(NetworkError):
    """OSRM request timeout. Inherits from NetworkError (retryable)."""


class RouteEstimator(Protocol):
    def estimate(self, origin: Coordinates, destination: Coordinates) -> RouteEstimate: ...


class HaversineRouteEstimator:
    """Straight-line distance inflated by a road factor, driven at a flat speed."""

    def __init__(self, road_factor: float = 1.3, average_speed_kmh: float = 25.0) -> None:
        self.road_factor = road_factor
        self.average_speed_kmh = average_speed_kmh

    def estimate(self, origin: Coordinates, destination: Coordinates) -> RouteEstimate:
        straight_km = haversine_distance_km(
            origin.lat, origin.lng, destination.lat, destination.lng
        )
        distance_km = round(straight_km * self.road_factor, 2)
        duration_min = round(distance_km / self.average_speed_kmh * 60, 1)
        return RouteEstimate(distance_km=distance_km, duration_min=duration_min)


class OSRMRouteEstimator:
    """Road distance from an OSRM server, falling back to an estimate when it fails."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        retry_config: RetryConfig | None = None,
        fallback: RouteEstimator | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.fallback = fallback or HaversineRouteEstimator()
        self._client = client or httpx.Client(timeout=timeout)

    def estimate(self, origin: Coordinates, destination: Coordinates) -> RouteEstimate:
        try:
            return with_retry_sync(
                lambda: self._fetch_route(origin, destination),
                config=self.retry_config,
                operation_name="osrm.route",
            )
        except (NetworkError, ServiceUnavailableError, NoRouteFoundError) as e:
            logger.warning(f"OSRM route lookup failed, using fallback estimate: {e}")
            return self.fallback.estimate(origin, destination)

    def _fetch_route(self, origin: Coordinates, destination: Coordinates) -> RouteEstimate:
        url = (
            f"{self.base_url}/route/v1/driving/"
            f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        )
        try:
            response = self._client.get(url, params={"overview": "false"})
        except httpx.TimeoutException as e:
            raise OSRMTimeoutError(f"Request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise OSRMServiceError(f"Network error: {e}") from e

        if response.status_code >= 500:
            raise OSRMServiceError(f"OSRM server error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise NoRouteFoundError("OSRM returned a non-JSON body") from e
        if not isinstance(data, dict) or data.get("code") != "Ok" or not data.get("routes"):
            raise NoRouteFoundError("No route found between coordinates")

        route = data["routes"][0]
        return RouteEstimate(
            distance_km=round(float(route["distance"]) / 1000.0, 2),
            duration_min=round(float(route["duration"]) / 60.0, 1),
            source="osrm",
        )

    def close(self) -> None:
        self._client.close()
