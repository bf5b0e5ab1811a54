"""
Cargo Dispatch - service entry point

Wires storage, the driver index, matching, payments and notifiers together
and serves the FastAPI app with uvicorn.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any

import uvicorn
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy.orm import sessionmaker

from cargo_dispatch.api.app import create_app
from cargo_dispatch.app_logging import setup_logging
from cargo_dispatch.bookings import BookingStateMachine
from cargo_dispatch.core.retry import RetryConfig
from cargo_dispatch.db import init_database
from cargo_dispatch.fare import FareCalculator
from cargo_dispatch.geo.routing import HaversineRouteEstimator, OSRMRouteEstimator, RouteEstimator
from cargo_dispatch.matching.demand import DemandEstimator
from cargo_dispatch.matching.dispatch_coordinator import DispatchCoordinator
from cargo_dispatch.matching.driver_geospatial_index import DriverGeospatialIndex
from cargo_dispatch.notifications import CompositeNotifier, LoggingNotifier, NotificationGateway
from cargo_dispatch.notifications.connections import ConnectionRegistry, WebSocketNotifier
from cargo_dispatch.notifications.redis_notifier import RedisNotifier
from cargo_dispatch.payment import PaymentGateway
from cargo_dispatch.payments import CashGatewayAdapter, GatewayAdapter, HttpGatewayAdapter
from cargo_dispatch.payments.ledger import PaymentLedger
from cargo_dispatch.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def init_otel_sdk() -> None:
    """Initialize OpenTelemetry SDK for metrics and traces.

    Configures TracerProvider and MeterProvider with OTLP gRPC exporters
    pointing to the OTel Collector. Must be called before creating the
    FastAPI app so auto-instrumentation can pick up the providers.
    """
    resource = Resource.create(
        {
            "service.name": "cargo-dispatch",
            "service.version": "1.0.0",
            "deployment.environment": os.getenv("DEPLOYMENT_ENV", "local"),
        }
    )

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel-collector:4317")
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
    )
    trace.set_tracer_provider(trace_provider)
    logger.info("OpenTelemetry tracing initialized (endpoint=%s)", otlp_endpoint)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
        export_interval_millis=15_000,
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    logger.info("OpenTelemetry metrics initialized")


@dataclass
class Services:
    session_maker: sessionmaker[Any]
    geo_index: DriverGeospatialIndex
    state_machine: BookingStateMachine
    ledger: PaymentLedger
    coordinator: DispatchCoordinator
    connection_registry: ConnectionRegistry
    websocket_notifier: WebSocketNotifier | None


def create_route_estimator(settings: Settings) -> RouteEstimator:
    fallback = HaversineRouteEstimator(
        road_factor=settings.routing.road_factor,
        average_speed_kmh=settings.routing.average_speed_kmh,
    )
    if not settings.routing.base_url:
        return fallback
    logger.info(f"OSRM routing configured: {settings.routing.base_url}")
    return OSRMRouteEstimator(
        settings.routing.base_url,
        timeout=settings.routing.timeout_seconds,
        retry_config=RetryConfig(max_attempts=settings.routing.max_retries),
        fallback=fallback,
    )


def create_gateways(settings: Settings) -> dict[PaymentGateway, GatewayAdapter]:
    retry_config = RetryConfig(
        max_attempts=settings.payment.gateway_max_retries,
        base_delay=settings.payment.gateway_retry_base_delay,
    )
    online = PaymentGateway(settings.payment.default_gateway)
    return {
        online: HttpGatewayAdapter(
            name=online.value,
            base_url=settings.payment.gateway_url,
            api_key=settings.payment.gateway_key,
            secret=settings.payment.gateway_secret,
            timeout=settings.payment.gateway_timeout_seconds,
            retry_config=retry_config,
        ),
        PaymentGateway.COD: CashGatewayAdapter(),
    }


def create_notifier(
    settings: Settings, registry: ConnectionRegistry
) -> tuple[NotificationGateway, WebSocketNotifier | None]:
    notifiers: list[NotificationGateway] = []
    websocket_notifier: WebSocketNotifier | None = None

    for name in settings.notifications.backend_names:
        if name == "log":
            notifiers.append(LoggingNotifier())
        elif name == "redis":
            notifiers.append(
                RedisNotifier.from_config(
                    host=settings.redis.host,
                    port=settings.redis.port,
                    db=settings.redis.db,
                    password=settings.redis.password,
                    ssl=settings.redis.ssl,
                    channel=settings.redis.channel,
                )
            )
            logger.info(f"Redis notifier publishing to {settings.redis.channel}")
        elif name == "websocket":
            websocket_notifier = WebSocketNotifier(registry)
            notifiers.append(websocket_notifier)

    return CompositeNotifier(notifiers), websocket_notifier


def build_services(settings: Settings) -> Services:
    session_maker = init_database(settings.database.url, echo=settings.database.echo)
    geo_index = DriverGeospatialIndex(h3_resolution=settings.dispatch.h3_resolution)
    state_machine = BookingStateMachine(session_maker)

    registry = ConnectionRegistry()
    notifier, websocket_notifier = create_notifier(settings, registry)

    ledger = PaymentLedger(
        session_maker,
        create_gateways(settings),
        notifier=notifier,
        commission_rate=settings.payment.commission_rate,
        default_gateway=PaymentGateway(settings.payment.default_gateway),
        currency=settings.fare.currency,
    )

    fare_calculator = FareCalculator(
        rate_card=settings.fare.rate_card,
        max_demand_factor=settings.fare.max_demand_factor,
        currency=settings.fare.currency,
        requirement_charges=settings.fare.requirement_charges,
    )
    demand_estimator = DemandEstimator(
        geo_index,
        zone_resolution=settings.dispatch.demand_zone_resolution,
        search_radius_m=settings.dispatch.search_radius_m,
    )

    coordinator = DispatchCoordinator(
        state_machine=state_machine,
        geo_index=geo_index,
        fare_calculator=fare_calculator,
        ledger=ledger,
        notifier=notifier,
        route_estimator=create_route_estimator(settings),
        demand_estimator=demand_estimator,
        settings=settings.dispatch,
    )

    return Services(
        session_maker=session_maker,
        geo_index=geo_index,
        state_machine=state_machine,
        ledger=ledger,
        coordinator=coordinator,
        connection_registry=registry,
        websocket_notifier=websocket_notifier,
    )


def main() -> None:
    """Main entry point - initializes and runs the dispatch service."""
    settings = get_settings()

    setup_logging(
        level=settings.service.log_level,
        json_output=settings.service.log_format == "json",
        environment=settings.service.environment,
    )

    # Providers must exist before the app is instrumented
    init_otel_sdk()
    HTTPXClientInstrumentor().instrument()

    logger.info("Starting cargo dispatch service...")
    services = build_services(settings)

    restored = services.coordinator.recover()
    logger.info(f"Dispatch state restored for {restored} open bookings")

    app = create_app(
        coordinator=services.coordinator,
        state_machine=services.state_machine,
        ledger=services.ledger,
        geo_index=services.geo_index,
        session_maker=services.session_maker,
        connection_registry=services.connection_registry,
        websocket_notifier=services.websocket_notifier,
        sweep_interval_seconds=settings.dispatch.sweep_interval_seconds,
        cors_origins=settings.cors.origins.split(","),
    )

    logger.info(f"Serving on {settings.service.host}:{settings.service.port}")
    uvicorn.run(
        app,
        host=settings.service.host,
        port=settings.service.port,
        log_level=settings.service.log_level.lower(),
    )


if __name__ == "__main__":
    main()
