"""OpenTelemetry counters for dispatch and payment activity.

Without a configured SDK the API hands out no-op instruments, so recording is
always safe.
"""

from opentelemetry import metrics

meter = metrics.get_meter("cargo_dispatch")

bookings_created = meter.create_counter(
    name="bookings_created_total",
    description="Bookings accepted for dispatch",
    unit="1",
)

offers_sent = meter.create_counter(
    name="offers_sent_total",
    description="Booking offers sent to drivers",
    unit="1",
)

offers_resolved = meter.create_counter(
    name="offers_resolved_total",
    description="Booking offers resolved, by outcome",
    unit="1",
)

bookings_expired = meter.create_counter(
    name="bookings_expired_total",
    description="Bookings that expired without a driver",
    unit="1",
)

payments_completed = meter.create_counter(
    name="payments_completed_total",
    description="Payments that reached completed",
    unit="1",
)
