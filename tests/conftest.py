import os

# The API key has no default (the service must fail without it).
# Provide a test value so APISettings() and the auth dependency work in tests.
os.environ.setdefault("API_KEY", "test-api-key")

from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from cargo_dispatch.api.app import create_app
from cargo_dispatch.api.rate_limit import limiter, ws_limiter
from cargo_dispatch.bookings.state_machine import BookingStateMachine
from cargo_dispatch.db import init_database
from cargo_dispatch.fare import FareCalculator
from cargo_dispatch.geo.routing import HaversineRouteEstimator
from cargo_dispatch.matching.demand import DemandEstimator
from cargo_dispatch.matching.dispatch_coordinator import DispatchCoordinator
from cargo_dispatch.matching.driver_geospatial_index import DriverGeospatialIndex
from cargo_dispatch.notifications.connections import ConnectionRegistry
from cargo_dispatch.payment import PaymentGateway
from cargo_dispatch.payments.gateway import CashGatewayAdapter
from cargo_dispatch.payments.ledger import PaymentLedger
from cargo_dispatch.settings import DispatchSettings
from tests.factories import DispatchFactory, FakeGateway, MutableClock


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary SQLite database file, removed with the test's tmp dir."""
    return tmp_path / "test.db"


@pytest.fixture
def session_maker(db_path: Path) -> sessionmaker[Any]:
    """Session factory bound to a fresh file-backed database."""
    return init_database(f"sqlite:///{db_path}")


@pytest.fixture
def clock() -> MutableClock:
    """Clock pinned to a fixed instant; tests advance it explicitly."""
    return MutableClock()


@pytest.fixture
def dispatch_factory() -> DispatchFactory:
    """Factory for booking requests with seeded Faker."""
    return DispatchFactory(seed=42)


@pytest.fixture
def mock_notifier() -> Mock:
    """Mock notification gateway recording every notify() call."""
    return Mock()


@pytest.fixture
def geo_index() -> DriverGeospatialIndex:
    return DriverGeospatialIndex(h3_resolution=8)


@pytest.fixture
def fare_calculator() -> FareCalculator:
    return FareCalculator()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """Online gateway double; flip ``fail_create``/``fail_refund`` to simulate outages."""
    return FakeGateway()


@pytest.fixture
def state_machine(session_maker: sessionmaker[Any], clock: MutableClock) -> BookingStateMachine:
    return BookingStateMachine(session_maker, clock=clock)


@pytest.fixture
def ledger(
    session_maker: sessionmaker[Any],
    fake_gateway: FakeGateway,
    mock_notifier: Mock,
    clock: MutableClock,
) -> PaymentLedger:
    return PaymentLedger(
        session_maker,
        {PaymentGateway.RAZORPAY: fake_gateway, PaymentGateway.COD: CashGatewayAdapter()},
        notifier=mock_notifier,
        clock=clock,
    )


@pytest.fixture
def dispatch_settings() -> DispatchSettings:
    return DispatchSettings(
        offer_timeout_seconds=15.0,
        booking_expiry_seconds=300.0,
        max_offer_attempts=5,
        max_reassignments=2,
    )


@pytest.fixture
def coordinator(
    state_machine: BookingStateMachine,
    geo_index: DriverGeospatialIndex,
    fare_calculator: FareCalculator,
    ledger: PaymentLedger,
    mock_notifier: Mock,
    dispatch_settings: DispatchSettings,
    clock: MutableClock,
) -> DispatchCoordinator:
    """Coordinator wired to real storage and index with a mock notifier."""
    return DispatchCoordinator(
        state_machine=state_machine,
        geo_index=geo_index,
        fare_calculator=fare_calculator,
        ledger=ledger,
        notifier=mock_notifier,
        route_estimator=HaversineRouteEstimator(),
        demand_estimator=DemandEstimator(geo_index),
        settings=dispatch_settings,
        clock=clock,
    )


@pytest.fixture
def connection_registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def app(
    coordinator: DispatchCoordinator,
    state_machine: BookingStateMachine,
    ledger: PaymentLedger,
    geo_index: DriverGeospatialIndex,
    session_maker: sessionmaker[Any],
    connection_registry: ConnectionRegistry,
):
    """App with the timeout sweeper disabled; tests drive timeouts directly."""
    return create_app(
        coordinator=coordinator,
        state_machine=state_machine,
        ledger=ledger,
        geo_index=geo_index,
        session_maker=session_maker,
        connection_registry=connection_registry,
        sweep_interval_seconds=None,
        cors_origins=["http://localhost:3000"],
    )


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Rate limit windows are module-global; start every test with a clean slate."""
    limiter.reset()
    ws_limiter.reset()
    yield
    limiter.reset()
    ws_limiter.reset()


@pytest.fixture
def test_client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": "test-api-key"}
