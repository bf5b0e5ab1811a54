"""FastAPI dependency injection providers."""

from typing import Annotated

from fastapi import Depends, Query, Request

from cargo_dispatch.bookings.state_machine import BookingStateMachine
from cargo_dispatch.matching.dispatch_coordinator import DispatchCoordinator
from cargo_dispatch.matching.driver_geospatial_index import DriverGeospatialIndex
from cargo_dispatch.notifications.connections import ConnectionRegistry
from cargo_dispatch.payments.ledger import PaymentLedger


def get_coordinator(request: Request) -> DispatchCoordinator:
    """Retrieve DispatchCoordinator from app state."""
    return request.app.state.coordinator


def get_state_machine(request: Request) -> BookingStateMachine:
    return request.app.state.state_machine


def get_ledger(request: Request) -> PaymentLedger:
    return request.app.state.ledger


def get_geo_index(request: Request) -> DriverGeospatialIndex:
    return request.app.state.geo_index


def get_connection_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.connection_registry


CoordinatorDep = Annotated[DispatchCoordinator, Depends(get_coordinator)]
StateMachineDep = Annotated[BookingStateMachine, Depends(get_state_machine)]
LedgerDep = Annotated[PaymentLedger, Depends(get_ledger)]
GeoIndexDep = Annotated[DriverGeospatialIndex, Depends(get_geo_index)]
ConnectionRegistryDep = Annotated[ConnectionRegistry, Depends(get_connection_registry)]

PageQuery = Annotated[int, Query(ge=1, description="1-based page number")]
LimitQuery = Annotated[int, Query(ge=1, le=100, description="Items per page")]
