"""Payment repository mirroring the booking storage discipline."""

import json
from collections.abc import Sequence

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from cargo_dispatch.core.clock import ensure_utc
from cargo_dispatch.payment import Payment as PaymentDomain
from cargo_dispatch.payment import PaymentStatus, PaymentTimelineEntry

from ..schema import Payment, PaymentTimeline

_DOCUMENT_EXCLUDE = {"timeline", "version"}


class PaymentRepository:
    """Repository for payment persistence."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, payment: PaymentDomain) -> None:
        self.session.add(
            Payment(
                payment_id=payment.payment_id,
                booking_id=payment.booking_id,
                customer_id=payment.customer_id,
                driver_id=payment.driver_id,
                status=payment.status.value,
                document=self._to_document(payment),
                version=payment.version,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
            )
        )
        self.session.flush()
        self._append_timeline(payment.payment_id, payment.timeline, start_sequence=0)

    def get(self, payment_id: str) -> PaymentDomain | None:
        record = self.session.get(Payment, payment_id)
        if record is None:
            return None
        return self._to_domain(record)

    def list_for_booking(self, booking_id: str) -> list[PaymentDomain]:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .order_by(Payment.created_at)
        )
        return [self._to_domain(record) for record in self.session.scalars(stmt)]

    def list_payments(
        self,
        customer_id: str | None = None,
        driver_id: str | None = None,
        status: PaymentStatus | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[PaymentDomain]:
        """Newest first. ``limit=None`` returns every match."""
        stmt = (
            select(Payment)
            .where(*self._filters(customer_id, driver_id, status))
            .order_by(Payment.created_at.desc(), Payment.payment_id)
            .offset(offset)
            .limit(limit)
        )
        return [self._to_domain(record) for record in self.session.scalars(stmt)]

    def count_payments(
        self,
        customer_id: str | None = None,
        driver_id: str | None = None,
        status: PaymentStatus | None = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(Payment)
            .where(*self._filters(customer_id, driver_id, status))
        )
        return self.session.scalar(stmt) or 0

    def compare_and_set(
        self,
        payment: PaymentDomain,
        expected_status: PaymentStatus,
        expected_version: int,
        new_entries: Sequence[PaymentTimelineEntry] = (),
    ) -> bool:
        """Write ``payment`` only if storage still holds the expected status and version."""
        result = self.session.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == expected_status.value,
                Payment.version == expected_version,
            )
            .values(
                status=payment.status.value,
                driver_id=payment.driver_id,
                document=self._to_document(payment),
                version=expected_version + 1,
                updated_at=payment.updated_at,
            )
        )
        if result.rowcount != 1:
            return False

        if new_entries:
            self._append_timeline(
                payment.payment_id,
                new_entries,
                start_sequence=len(payment.timeline) - len(new_entries),
            )
        return True

    @staticmethod
    def _filters(
        customer_id: str | None, driver_id: str | None, status: PaymentStatus | None
    ) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if customer_id is not None:
            clauses.append(Payment.customer_id == customer_id)
        if driver_id is not None:
            clauses.append(Payment.driver_id == driver_id)
        if status is not None:
            clauses.append(Payment.status == status.value)
        return clauses

    def _append_timeline(
        self, payment_id: str, entries: Sequence[PaymentTimelineEntry], start_sequence: int
    ) -> None:
        for offset, entry in enumerate(entries):
            self.session.add(
                PaymentTimeline(
                    payment_id=payment_id,
                    sequence=start_sequence + offset,
                    status=entry.status.value,
                    timestamp=entry.timestamp,
                    note=entry.note,
                )
            )

    def _to_document(self, payment: PaymentDomain) -> str:
        return json.dumps(payment.model_dump(mode="json", exclude=_DOCUMENT_EXCLUDE))

    def _to_domain(self, record: Payment) -> PaymentDomain:
        data = json.loads(record.document)
        data["version"] = record.version
        rows = self.session.scalars(
            select(PaymentTimeline)
            .where(PaymentTimeline.payment_id == record.payment_id)
            .order_by(PaymentTimeline.sequence)
        )
        data["timeline"] = [
            {"status": row.status, "timestamp": ensure_utc(row.timestamp), "note": row.note}
            for row in rows
        ]
        return PaymentDomain.model_validate(data)
