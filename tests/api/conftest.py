from collections.abc import Callable
from typing import Any

import pytest

from tests.factories import MUMBAI_PICKUP, point_north_of


@pytest.fixture
def register_driver(test_client, auth_headers) -> Callable[..., dict[str, Any]]:
    """Register an available, verified driver through the API."""

    def _register(driver_id: str = "drv_near", km: float = 0.5, **overrides: Any):
        coordinates = point_north_of(MUMBAI_PICKUP, km)
        body = {
            "driver_id": driver_id,
            "vehicle_type": "mini-truck",
            "coordinates": {"lat": coordinates.lat, "lng": coordinates.lng},
            "is_kyc_verified": True,
            "is_available": True,
            **overrides,
        }
        response = test_client.post("/drivers", json=body, headers=auth_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _register


@pytest.fixture
def create_booking(test_client, auth_headers, dispatch_factory) -> Callable[..., dict[str, Any]]:
    """Create a booking through the API and return its JSON."""

    def _create(**overrides: Any):
        response = test_client.post(
            "/bookings", json=dispatch_factory.booking_payload(**overrides), headers=auth_headers
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def driver_action(test_client, auth_headers):
    """POST one of the driver booking actions (accept, decline, release, start, complete)."""

    def _action(driver_id: str, booking_id: str, action: str, body: dict | None = None):
        return test_client.post(
            f"/drivers/{driver_id}/bookings/{booking_id}/{action}",
            json=body if body is not None else {},
            headers=auth_headers,
        )

    return _action


@pytest.fixture
def completed_booking(register_driver, create_booking, driver_action) -> Callable[..., dict]:
    """Run a booking through accept, start and complete."""

    def _complete(**overrides: Any):
        register_driver()
        booking = create_booking(**overrides)
        for action in ("accept", "start", "complete"):
            response = driver_action("drv_near", booking["booking_id"], action)
            assert response.status_code == 200, response.text
        return response.json()

    return _complete
