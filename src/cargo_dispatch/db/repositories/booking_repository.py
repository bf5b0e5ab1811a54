"""Booking repository with compare-and-set updates and append-only children."""

import json
from collections.abc import Collection, Sequence

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from cargo_dispatch.booking import Booking as BookingDomain
from cargo_dispatch.booking import BookingStatus, LocationSample, TimelineEntry
from cargo_dispatch.core.clock import ensure_utc

from ..schema import Booking, BookingLocation, BookingTimeline

_DOCUMENT_EXCLUDE = {
    "timeline": True,
    "version": True,
    "driver_assignment": {"driver_locations"},
}


def _format_point(entry: TimelineEntry) -> str | None:
    if entry.location is None:
        return None
    return f"{entry.location.lat},{entry.location.lng}"


def _parse_point(value: str | None) -> dict[str, float] | None:
    if not value:
        return None
    lat, lng = value.split(",")
    return {"lat": float(lat), "lng": float(lng)}


class BookingRepository:
    """Repository for booking persistence."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, booking: BookingDomain) -> None:
        """Insert a new booking together with its initial timeline."""
        record = Booking(
            booking_id=booking.booking_id,
            customer_id=booking.customer_id,
            driver_id=booking.driver_id,
            status=booking.status.value,
            vehicle_type=booking.vehicle_type.value,
            document=self._to_document(booking),
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )
        self.session.add(record)
        self.session.flush()
        self._append_timeline(booking.booking_id, booking.timeline, start_sequence=0)

    def get(self, booking_id: str) -> BookingDomain | None:
        """Get booking by ID, returning domain model."""
        record = self.session.get(Booking, booking_id)
        if record is None:
            return None
        return self._to_domain(record)

    def list_bookings(
        self,
        status: BookingStatus | None = None,
        customer_id: str | None = None,
        driver_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
        statuses: Collection[BookingStatus] | None = None,
    ) -> list[BookingDomain]:
        """Newest first. ``status`` and ``statuses`` both narrow the result when given."""
        stmt = (
            select(Booking)
            .where(*self._filters(status, customer_id, driver_id, statuses))
            .order_by(Booking.created_at.desc(), Booking.booking_id)
            .offset(offset)
            .limit(limit)
        )
        return [self._to_domain(record) for record in self.session.scalars(stmt)]

    def count_bookings(
        self,
        status: BookingStatus | None = None,
        customer_id: str | None = None,
        driver_id: str | None = None,
        statuses: Collection[BookingStatus] | None = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(Booking)
            .where(*self._filters(status, customer_id, driver_id, statuses))
        )
        return self.session.scalar(stmt) or 0

    @staticmethod
    def _filters(
        status: BookingStatus | None,
        customer_id: str | None,
        driver_id: str | None,
        statuses: Collection[BookingStatus] | None,
    ) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if status is not None:
            clauses.append(Booking.status == status.value)
        if statuses is not None:
            clauses.append(Booking.status.in_([s.value for s in statuses]))
        if customer_id is not None:
            clauses.append(Booking.customer_id == customer_id)
        if driver_id is not None:
            clauses.append(Booking.driver_id == driver_id)
        return clauses

    def compare_and_set(
        self,
        booking: BookingDomain,
        expected_status: BookingStatus,
        expected_version: int,
        new_entries: Sequence[TimelineEntry] = (),
    ) -> bool:
        """Write ``booking`` only if storage still holds the expected status and version.

        ``booking.timeline`` must already end with ``new_entries``; they are
        appended in the same transaction. Returns False when another writer
        got there first, in which case nothing is written.
        """
        result = self.session.execute(
            update(Booking)
            .where(
                Booking.booking_id == booking.booking_id,
                Booking.status == expected_status.value,
                Booking.version == expected_version,
            )
            .values(
                status=booking.status.value,
                driver_id=booking.driver_id,
                document=self._to_document(booking),
                version=expected_version + 1,
                updated_at=booking.updated_at,
            )
        )
        if result.rowcount != 1:
            return False

        if new_entries:
            self._append_timeline(
                booking.booking_id,
                new_entries,
                start_sequence=len(booking.timeline) - len(new_entries),
            )
        return True

    def append_location(self, booking_id: str, driver_id: str, sample: LocationSample) -> int:
        """Append a location sample for the serving driver and return its sequence number.

        Sequence numbers run across the whole booking; samples are read back
        only for the driver currently assigned.
        """
        next_sequence = self.session.scalar(
            select(func.count()).select_from(BookingLocation).where(
                BookingLocation.booking_id == booking_id
            )
        )
        self.session.add(
            BookingLocation(
                booking_id=booking_id,
                driver_id=driver_id,
                sequence=next_sequence or 0,
                lat=sample.coordinates.lat,
                lng=sample.coordinates.lng,
                timestamp=sample.timestamp,
            )
        )
        return next_sequence or 0

    def _append_timeline(
        self, booking_id: str, entries: Sequence[TimelineEntry], start_sequence: int
    ) -> None:
        for offset, entry in enumerate(entries):
            self.session.add(
                BookingTimeline(
                    booking_id=booking_id,
                    sequence=start_sequence + offset,
                    status=entry.status.value,
                    timestamp=entry.timestamp,
                    location=_format_point(entry),
                    note=entry.note,
                )
            )

    def _to_document(self, booking: BookingDomain) -> str:
        return json.dumps(booking.model_dump(mode="json", exclude=_DOCUMENT_EXCLUDE))

    def _to_domain(self, record: Booking) -> BookingDomain:
        data = json.loads(record.document)
        data["version"] = record.version

        timeline_rows = self.session.scalars(
            select(BookingTimeline)
            .where(BookingTimeline.booking_id == record.booking_id)
            .order_by(BookingTimeline.sequence)
        )
        data["timeline"] = [
            {
                "status": row.status,
                "timestamp": ensure_utc(row.timestamp),
                "location": _parse_point(row.location),
                "note": row.note,
            }
            for row in timeline_rows
        ]

        if data.get("driver_assignment") is not None:
            location_rows = self.session.scalars(
                select(BookingLocation)
                .where(
                    BookingLocation.booking_id == record.booking_id,
                    BookingLocation.driver_id == record.driver_id,
                )
                .order_by(BookingLocation.sequence)
            )
            data["driver_assignment"]["driver_locations"] = [
                {
                    "coordinates": {"lat": row.lat, "lng": row.lng},
                    "timestamp": ensure_utc(row.timestamp),
                }
                for row in location_rows
            ]

        return BookingDomain.model_validate(data)
