"""FastAPI application factory for the dispatch API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from cargo_dispatch.api.auth import verify_api_key
from cargo_dispatch.api.errors import register_exception_handlers
from cargo_dispatch.api.middleware.security_headers import SecurityHeadersMiddleware
from cargo_dispatch.api.models.health import HealthResponse
from cargo_dispatch.api.rate_limit import limiter, rate_limit_exceeded_handler
from cargo_dispatch.api.routes import bookings, drivers, payments
from cargo_dispatch.api.websocket import router as websocket_router
from cargo_dispatch.matching.sweeper import TimeoutSweeper
from cargo_dispatch.notifications.connections import ConnectionRegistry
from cargo_dispatch.settings import CORSSettings

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from cargo_dispatch.bookings.state_machine import BookingStateMachine
    from cargo_dispatch.matching.dispatch_coordinator import DispatchCoordinator
    from cargo_dispatch.matching.driver_geospatial_index import DriverGeospatialIndex
    from cargo_dispatch.notifications.connections import WebSocketNotifier
    from cargo_dispatch.payments.ledger import PaymentLedger

logger = logging.getLogger(__name__)


def create_app(
    coordinator: DispatchCoordinator,
    state_machine: BookingStateMachine,
    ledger: PaymentLedger,
    geo_index: DriverGeospatialIndex,
    session_maker: sessionmaker[Any],
    connection_registry: ConnectionRegistry | None = None,
    websocket_notifier: WebSocketNotifier | None = None,
    sweep_interval_seconds: float | None = 1.0,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create FastAPI application with injected dependencies.

    Args:
        coordinator: DispatchCoordinator driving matching and the trip lifecycle
        state_machine: BookingStateMachine for reads and ratings
        ledger: PaymentLedger for payment routes
        geo_index: DriverGeospatialIndex for driver lookups
        session_maker: Session factory, used by the health check
        connection_registry: Per-user WebSocket registry (created if omitted)
        websocket_notifier: Notifier to bind to the running event loop
        sweep_interval_seconds: Offer/booking timeout sweep period, None disables it
        cors_origins: Allowed origins, defaults to CORS_ORIGINS
    """
    registry = connection_registry or ConnectionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        """Manage application startup and shutdown."""
        if websocket_notifier is not None:
            websocket_notifier.set_event_loop(asyncio.get_running_loop())

        sweeper: TimeoutSweeper | None = None
        if sweep_interval_seconds is not None:
            sweeper = TimeoutSweeper(coordinator, sweep_interval_seconds)
            sweeper.start()
        app.state.sweeper = sweeper

        yield

        if sweeper is not None:
            await sweeper.stop()
        if websocket_notifier is not None:
            websocket_notifier.set_event_loop(None)

    app = FastAPI(
        title="Cargo Dispatch API",
        version="1.0.0",
        description="Booking, driver matching and payment API for cargo deliveries",
        lifespan=lifespan,
    )

    FastAPIInstrumentor.instrument_app(app)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
    register_exception_handlers(app)

    # Set core dependencies immediately (not in lifespan) so they're available for testing
    app.state.coordinator = coordinator
    app.state.state_machine = state_machine
    app.state.ledger = ledger
    app.state.geo_index = geo_index
    app.state.session_maker = session_maker
    app.state.connection_registry = registry

    origins = cors_origins or CORSSettings().origins.split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
    app.include_router(drivers.router, prefix="/drivers", tags=["drivers"])
    app.include_router(payments.router, prefix="/payments", tags=["payments"])
    app.include_router(websocket_router)

    @app.get("/health", response_model=HealthResponse)
    def health_check(request: Request) -> HealthResponse:
        """Health check endpoint for monitoring (unauthenticated for infrastructure)."""
        try:
            with request.app.state.session_maker() as session:
                session.execute(text("SELECT 1"))
            database = "healthy"
        except SQLAlchemyError as e:
            logger.error(f"Health check database query failed: {e}")
            database = "unhealthy"

        return HealthResponse(
            status="healthy" if database == "healthy" else "unhealthy",
            database=database,
            drivers_indexed=len(request.app.state.geo_index),
            websocket_connections=request.app.state.connection_registry.connection_count,
        )

    @app.get("/stats")
    def dispatch_stats(
        request: Request,
        _: str = Depends(verify_api_key),
    ) -> dict[str, Any]:
        """Matching outcome counters and live dispatch state."""
        return request.app.state.coordinator.get_stats()

    return app
