"""Payment routes: checkout, gateway callback, refunds and payout results."""

from fastapi import APIRouter, Depends

from cargo_dispatch.api.auth import verify_api_key
from cargo_dispatch.api.dependencies import LedgerDep, LimitQuery, PageQuery, StateMachineDep
from cargo_dispatch.api.models.bookings import Pagination
from cargo_dispatch.api.models.payments import (
    PaymentConfirmRequest,
    PaymentCreateRequest,
    PaymentPage,
    RefundRequest,
    SettlementRequest,
)
from cargo_dispatch.booking import BookingStatus
from cargo_dispatch.core.exceptions import InvalidTransition
from cargo_dispatch.payment import Payment, PaymentGateway, PaymentStatus

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.post("", response_model=Payment, status_code=201)
def create_payment(
    body: PaymentCreateRequest, ledger: LedgerDep, state_machine: StateMachineDep
) -> Payment:
    """Check out a completed booking.

    Picks up the pending payment opened at trip completion, or opens a new
    one when there is none or the customer switched method. Online payments
    get a gateway intent straight away and come back in ``processing``; cash
    is captured on the spot.
    """
    booking = state_machine.get(body.booking_id)
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidTransition(
            f"Booking {booking.booking_id} is {booking.status.value}, payments open on completion",
            current_status=booking.status.value,
        )

    payment = ledger.get_for_booking(booking.booking_id)
    if payment is not None and payment.status == PaymentStatus.PENDING:
        switched = payment.method != body.method or (
            body.gateway is not None and payment.gateway != body.gateway
        )
        if switched:
            ledger.cancel(payment.payment_id, reason=f"Switched to {body.method.value}")
            payment = None

    if payment is None or payment.status != PaymentStatus.PENDING:
        payment = ledger.initiate(
            booking_id=booking.booking_id,
            customer_id=booking.customer_id,
            amount=booking.fare.total,
            method=body.method,
            gateway=body.gateway,
            driver_id=booking.driver_id,
        )
    if payment.gateway == PaymentGateway.COD:
        return ledger.capture_cash(payment.payment_id)
    return ledger.begin_gateway_payment(payment.payment_id)


@router.get("/history", response_model=PaymentPage)
def payment_history(
    customer_id: str,
    ledger: LedgerDep,
    status: PaymentStatus | None = None,
    page: PageQuery = 1,
    limit: LimitQuery = 10,
) -> PaymentPage:
    """A customer's payments, newest first."""
    payments = ledger.list_payments(
        customer_id=customer_id, status=status, limit=limit, offset=(page - 1) * limit
    )
    total = ledger.count_payments(customer_id=customer_id, status=status)
    return PaymentPage(payments=payments, pagination=Pagination.of(page, limit, total))


@router.get("/{payment_id}", response_model=Payment)
def get_payment(payment_id: str, ledger: LedgerDep) -> Payment:
    return ledger.get(payment_id)


@router.post("/{payment_id}/confirm", response_model=Payment)
def confirm_payment(payment_id: str, body: PaymentConfirmRequest, ledger: LedgerDep) -> Payment:
    return ledger.confirm(payment_id, body.gateway_ref, body.signature)


@router.post("/{payment_id}/refund", response_model=Payment)
def refund_payment(payment_id: str, body: RefundRequest, ledger: LedgerDep) -> Payment:
    return ledger.refund(payment_id, amount=body.amount, reason=body.reason)


@router.post("/{payment_id}/settlement", response_model=Payment)
def record_settlement(payment_id: str, body: SettlementRequest, ledger: LedgerDep) -> Payment:
    return ledger.mark_settlement(payment_id, body.outcome, settlement_id=body.settlement_id)
