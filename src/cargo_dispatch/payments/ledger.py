"""Payment ledger: payment lifecycle, commission split and settlement bookkeeping."""

import logging
from collections.abc import Callable, Collection, Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import sessionmaker

from cargo_dispatch import metrics
from cargo_dispatch.core.clock import Clock, utc_now
from cargo_dispatch.core.correlation import with_correlation
from cargo_dispatch.core.exceptions import (
    AlreadySettled,
    ConfigurationError,
    GatewayError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from cargo_dispatch.core.locks import KeyedLock
from cargo_dispatch.db.repositories import PaymentRepository
from cargo_dispatch.db.transaction import unit_of_work
from cargo_dispatch.money import to_decimal
from cargo_dispatch.notifications import NotificationGateway, safe_notify
from cargo_dispatch.payment import (
    ACTIVE_PAYMENT_STATUSES,
    Commission,
    DriverEarnings,
    Payment,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    PaymentTimelineEntry,
    Refund,
    Settlement,
    SettlementStatus,
    gateway_for_method,
    new_payment,
)

from .gateway import GatewayAdapter

logger = logging.getLogger(__name__)

PaymentMutator = Callable[[Payment, datetime], None]


class PaymentLedger:
    """Owns payment entities. Status changes follow ``VALID_PAYMENT_TRANSITIONS``."""

    def __init__(
        self,
        session_maker: sessionmaker[Any],
        gateways: Mapping[PaymentGateway, GatewayAdapter],
        notifier: NotificationGateway | None = None,
        commission_rate: Decimal = Decimal("0.15"),
        default_gateway: PaymentGateway = PaymentGateway.RAZORPAY,
        currency: str = "INR",
        clock: Clock = utc_now,
    ) -> None:
        self._session_maker = session_maker
        self._gateways = dict(gateways)
        self._notifier = notifier
        self.commission_rate = commission_rate
        self.default_gateway = default_gateway
        self.currency = currency
        self._clock = clock
        self._locks = KeyedLock()
        self._booking_locks = KeyedLock()

    def initiate(
        self,
        booking_id: str,
        customer_id: str,
        amount: Decimal | float | str,
        method: PaymentMethod,
        gateway: PaymentGateway | None = None,
        driver_id: str | None = None,
    ) -> Payment:
        """Open a pending payment for a booking.

        Raises:
            ValidationError: non-positive amount, cod paid through an online
                gateway, or the booking already has an active payment
        """
        amount = to_decimal(amount)
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(f"Payment amount must be positive, got {amount}")

        gateway = gateway or gateway_for_method(method, self.default_gateway)
        if (method == PaymentMethod.COD) != (gateway == PaymentGateway.COD):
            raise ValidationError(
                f"Payment method {method.value} cannot use gateway {gateway.value}"
            )
        self._adapter(gateway)

        with self._booking_locks.hold(booking_id), with_correlation(booking_id):
            active = [
                p for p in self.list_for_booking(booking_id) if p.status in ACTIVE_PAYMENT_STATUSES
            ]
            if active:
                raise ValidationError(
                    f"Booking {booking_id} already has active payment {active[0].payment_id}",
                    {"payment_id": active[0].payment_id, "status": active[0].status.value},
                )

            payment = new_payment(
                booking_id=booking_id,
                customer_id=customer_id,
                amount=amount,
                method=method,
                gateway=gateway,
                now=self._clock(),
                currency=self.currency,
                driver_id=driver_id,
            )
            with unit_of_work(self._session_maker) as session:
                PaymentRepository(session).create(payment)

        logger.info(
            f"Initiated payment {payment.payment_id} for booking {booking_id}: "
            f"{amount} {self.currency} via {gateway.value}"
        )
        return payment

    def get(self, payment_id: str) -> Payment:
        with self._session_maker() as session:
            payment = PaymentRepository(session).get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
        return payment

    def list_for_booking(self, booking_id: str) -> list[Payment]:
        with self._session_maker() as session:
            return PaymentRepository(session).list_for_booking(booking_id)

    def get_for_booking(self, booking_id: str) -> Payment | None:
        """Latest active payment for a booking, else the latest payment, else None."""
        payments = self.list_for_booking(booking_id)
        for payment in reversed(payments):
            if payment.status in ACTIVE_PAYMENT_STATUSES:
                return payment
        return payments[-1] if payments else None

    def list_payments(
        self,
        customer_id: str | None = None,
        driver_id: str | None = None,
        status: PaymentStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Payment]:
        with self._session_maker() as session:
            return PaymentRepository(session).list_payments(
                customer_id=customer_id,
                driver_id=driver_id,
                status=status,
                limit=limit,
                offset=offset,
            )

    def count_payments(
        self,
        customer_id: str | None = None,
        driver_id: str | None = None,
        status: PaymentStatus | None = None,
    ) -> int:
        with self._session_maker() as session:
            return PaymentRepository(session).count_payments(
                customer_id=customer_id, driver_id=driver_id, status=status
            )

    def driver_earnings(self, driver_id: str, recent: int = 10) -> DriverEarnings:
        """Sum the driver share of every completed payment.

        Refunded payments drop out. A failed payout still counts as pending
        since the money is owed until a later payout succeeds.
        """
        with self._session_maker() as session:
            payments = PaymentRepository(session).list_payments(
                driver_id=driver_id, status=PaymentStatus.COMPLETED, limit=None
            )

        earnings = DriverEarnings(driver_id=driver_id, currency=self.currency)
        for payment in payments:
            if payment.commission is None:
                continue
            share = payment.commission.driver
            earnings.total += share
            settlement = payment.settlement
            if settlement is not None and settlement.status == SettlementStatus.PROCESSED:
                earnings.settled += share
            else:
                earnings.pending += share
            earnings.completed_payments += 1
        earnings.recent_booking_ids = [p.booking_id for p in payments[:recent]]
        return earnings

    def mark_processing(
        self, payment_id: str, gateway_response: dict[str, Any] | None = None
    ) -> Payment:
        return self._apply(
            payment_id,
            PaymentStatus.PROCESSING,
            note="Payment processing",
            mutate=self._merge_response(gateway_response),
        )

    def mark_completed(
        self, payment_id: str, gateway_response: dict[str, Any] | None = None
    ) -> Payment:
        """Capture the payment and fix the commission split."""
        merge = self._merge_response(gateway_response)

        def settle(payment: Payment, now: datetime) -> None:
            merge(payment, now)
            commission = Commission.compute(payment.amount, self.commission_rate)
            payment.commission = commission
            payment.settlement = Settlement(
                driver_amount=commission.driver, platform_amount=commission.platform
            )

        with self._locks.hold(payment_id):
            current = self.get(payment_id)
            if current.commission is not None or current.status == PaymentStatus.COMPLETED:
                raise AlreadySettled(
                    f"Payment {payment_id} is already completed",
                    {"payment_id": payment_id, "status": current.status.value},
                )
            payment = self._apply(
                payment_id, PaymentStatus.COMPLETED, note="Payment completed", mutate=settle
            )

        metrics.payments_completed.add(1, {"gateway": payment.gateway.value})
        safe_notify(
            self._notifier,
            payment.customer_id,
            PaymentStatus.COMPLETED.to_event_type(),
            {
                "payment_id": payment_id,
                "booking_id": payment.booking_id,
                "amount": str(payment.amount),
            },
        )
        return payment

    def mark_failed(
        self,
        payment_id: str,
        gateway_response: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> Payment:
        payment = self._apply(
            payment_id,
            PaymentStatus.FAILED,
            note=f"Payment failed: {reason}" if reason else "Payment failed",
            mutate=self._merge_response(gateway_response),
        )
        safe_notify(
            self._notifier,
            payment.customer_id,
            PaymentStatus.FAILED.to_event_type(),
            {"payment_id": payment_id, "booking_id": payment.booking_id, "reason": reason},
        )
        return payment

    def begin_gateway_payment(self, payment_id: str) -> Payment:
        """Create the gateway intent and move the payment to processing.

        A gateway failure marks the payment failed and is re-raised; the
        booking is left alone so the customer can retry with a new payment.
        """
        payment = self.get(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransition(
                f"Payment {payment_id} is {payment.status.value}, expected pending",
                current_status=payment.status.value,
            )

        adapter = self._adapter(payment.gateway)
        try:
            gateway_ref = adapter.create_intent(
                payment.amount,
                payment.currency,
                {"payment_id": payment.payment_id, "booking_id": payment.booking_id},
            )
        except GatewayError as e:
            self.mark_processing(payment_id, {"error": e.message})
            self.mark_failed(payment_id, {"error": e.message}, reason="gateway error")
            raise

        def bind_ref(p: Payment, now: datetime) -> None:
            p.gateway_ref = gateway_ref
            p.gateway_details["intent_id"] = gateway_ref

        return self._apply(
            payment_id,
            PaymentStatus.PROCESSING,
            note=f"Intent {gateway_ref} created",
            mutate=bind_ref,
        )

    def confirm(self, payment_id: str, gateway_ref: str, signature: str) -> Payment:
        """Handle the client's checkout callback."""
        payment = self.get(payment_id)
        if payment.status != PaymentStatus.PROCESSING:
            if payment.status == PaymentStatus.COMPLETED:
                raise AlreadySettled(f"Payment {payment_id} is already completed")
            raise InvalidTransition(
                f"Payment {payment_id} is {payment.status.value}, expected processing",
                current_status=payment.status.value,
            )
        if payment.gateway_ref != gateway_ref:
            raise ValidationError(
                f"Gateway reference does not match payment {payment_id}",
                {"payment_id": payment_id},
            )

        try:
            verified = self._adapter(payment.gateway).verify(gateway_ref, signature)
        except GatewayError as e:
            self.mark_failed(payment_id, {"error": e.message}, reason="verification error")
            raise

        if not verified:
            return self.mark_failed(
                payment_id, {"verified": False}, reason="signature mismatch"
            )
        return self.mark_completed(payment_id, {"verified": True, "signature": signature})

    def capture_cash(self, payment_id: str) -> Payment:
        """Record cash collected by the driver."""
        payment = self.get(payment_id)
        if payment.gateway != PaymentGateway.COD:
            raise ValidationError(f"Payment {payment_id} is not a cash payment")
        if payment.status == PaymentStatus.PENDING:
            gateway_ref = self._adapter(PaymentGateway.COD).create_intent(
                payment.amount, payment.currency, {"payment_id": payment_id}
            )

            def bind_ref(p: Payment, now: datetime) -> None:
                p.gateway_ref = gateway_ref

            self._apply(
                payment_id, PaymentStatus.PROCESSING, note="Cash collection", mutate=bind_ref
            )
        return self.mark_completed(payment_id, {"collected_by": payment.driver_id})

    def refund(
        self,
        payment_id: str,
        amount: Decimal | float | str | None = None,
        reason: str | None = None,
    ) -> Payment:
        """Refund a completed payment in full or in part.

        Raises:
            InvalidTransition: payment is not completed
            ValidationError: amount is not in (0, payment.amount]
            GatewayError: gateway refused; the payment is left unchanged
        """
        with self._locks.hold(payment_id):
            payment = self.get(payment_id)
            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidTransition(
                    f"Only completed payments can be refunded, payment {payment_id} is "
                    f"{payment.status.value}",
                    current_status=payment.status.value,
                )

            refund_amount = payment.amount if amount is None else to_decimal(amount)
            if not refund_amount.is_finite() or refund_amount <= 0:
                raise ValidationError(f"Refund amount must be positive, got {refund_amount}")
            if refund_amount > payment.amount:
                raise ValidationError(
                    f"Refund amount {refund_amount} exceeds payment amount {payment.amount}",
                    {"payment_id": payment_id, "amount": str(payment.amount)},
                )

            refund_ref = self._adapter(payment.gateway).refund(
                payment.gateway_ref or payment.payment_id, refund_amount
            )

            def record(p: Payment, now: datetime) -> None:
                p.refund = Refund(
                    amount=refund_amount,
                    reason=reason,
                    processed_at=now,
                    gateway_refund_id=refund_ref,
                )

            refunded = self._apply(
                payment_id,
                PaymentStatus.REFUNDED,
                note=f"Refunded {refund_amount}" + (f": {reason}" if reason else ""),
                mutate=record,
            )

        safe_notify(
            self._notifier,
            refunded.customer_id,
            PaymentStatus.REFUNDED.to_event_type(),
            {"payment_id": payment_id, "amount": str(refund_amount)},
        )
        return refunded

    def cancel(self, payment_id: str, reason: str | None = None) -> Payment:
        return self._apply(
            payment_id,
            PaymentStatus.CANCELLED,
            note=f"Payment cancelled: {reason}" if reason else "Payment cancelled",
        )

    def mark_settlement(
        self,
        payment_id: str,
        outcome: SettlementStatus,
        settlement_id: str | None = None,
    ) -> Payment:
        """Record the driver payout result reported by the payout process."""
        if outcome == SettlementStatus.PENDING:
            raise ValidationError("Settlement outcome must be processed or failed")

        def settle(payment: Payment, now: datetime) -> None:
            if payment.settlement is None:
                raise InvalidTransition(
                    f"Payment {payment_id} has no commission to settle",
                    current_status=payment.status.value,
                )
            if payment.settlement.status != SettlementStatus.PENDING:
                raise AlreadySettled(
                    f"Settlement for payment {payment_id} is already "
                    f"{payment.settlement.status.value}",
                    {"payment_id": payment_id},
                )
            payment.settlement.status = outcome
            payment.settlement.settlement_id = settlement_id
            payment.settlement.processed_at = now

        payment = self._apply(payment_id, None, mutate=settle)
        logger.info(f"Settlement for payment {payment_id}: {outcome.value}")
        if outcome == SettlementStatus.PROCESSED and payment.settlement is not None:
            safe_notify(
                self._notifier,
                payment.driver_id,
                "settlement.processed",
                {
                    "payment_id": payment_id,
                    "driver_amount": str(payment.settlement.driver_amount),
                },
            )
        return payment

    def _apply(
        self,
        payment_id: str,
        target: PaymentStatus | None,
        note: str | None = None,
        mutate: PaymentMutator | None = None,
        expected: Collection[PaymentStatus] | None = None,
    ) -> Payment:
        with self._locks.hold(payment_id), with_correlation(payment_id):
            current = self.get(payment_id)
            if expected is not None and current.status not in expected:
                raise InvalidTransition(
                    f"Payment {payment_id} is {current.status.value}",
                    current_status=current.status.value,
                )

            updated = current.model_copy(deep=True)
            now = self._clock()
            entries: list[PaymentTimelineEntry] = []
            if target is not None:
                entries.append(updated.transition_to(target, now, note=note))
            else:
                updated.updated_at = now
            if mutate is not None:
                mutate(updated, now)

            try:
                validated = Payment.model_validate(updated.model_dump())
            except ValueError as e:
                raise ValidationError(str(e), {"payment_id": payment_id}) from e

            self._persist(current, validated, entries)
            if target is not None:
                logger.info(f"Payment {payment_id}: {current.status.value} -> {target.value}")
            return validated

    def _persist(
        self, current: Payment, updated: Payment, entries: Sequence[PaymentTimelineEntry]
    ) -> None:
        with unit_of_work(self._session_maker) as session:
            written = PaymentRepository(session).compare_and_set(
                updated, current.status, current.version, entries
            )
        if not written:
            latest = self.get(current.payment_id)
            raise InvalidTransition(
                f"Payment {current.payment_id} changed concurrently (now {latest.status.value})",
                current_status=latest.status.value,
            )
        updated.version = current.version + 1

    def _adapter(self, gateway: PaymentGateway) -> GatewayAdapter:
        adapter = self._gateways.get(gateway)
        if adapter is None:
            raise ConfigurationError(f"No adapter configured for gateway {gateway.value}")
        return adapter

    @staticmethod
    def _merge_response(gateway_response: dict[str, Any] | None) -> PaymentMutator:
        def merge(payment: Payment, now: datetime) -> None:
            if gateway_response:
                payment.gateway_details.update(gateway_response)

        return merge
