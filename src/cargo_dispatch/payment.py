import secrets
import string
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Self

from pydantic import BaseModel, Field, model_validator

from cargo_dispatch.core.exceptions import InvalidTransition
from cargo_dispatch.money import round_half_up

_ID_ALPHABET = string.ascii_uppercase + string.digits


class PaymentMethod(str, Enum):
    UPI = "upi"
    CARD = "card"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    COD = "cod"


class PaymentGateway(str, Enum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    COD = "cod"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    def to_event_type(self) -> str:
        return f"payment.{self.value}"


VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.CANCELLED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

ACTIVE_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED}
)


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Commission(BaseModel):
    """Platform/driver split of a completed payment."""

    rate: Decimal
    platform: Decimal
    driver: Decimal

    @classmethod
    def compute(cls, amount: Decimal, rate: Decimal) -> "Commission":
        platform = round_half_up(amount * rate)
        return cls(rate=rate, platform=platform, driver=amount - platform)


class Settlement(BaseModel):
    status: SettlementStatus = SettlementStatus.PENDING
    settlement_id: str | None = None
    processed_at: datetime | None = None
    driver_amount: Decimal
    platform_amount: Decimal


class Refund(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str | None = None
    processed_at: datetime
    gateway_refund_id: str | None = None
    status: Literal["processed"] = "processed"


class PaymentTimelineEntry(BaseModel):
    status: PaymentStatus
    timestamp: datetime
    note: str | None = None


class Payment(BaseModel):
    """One monetary transaction tied to exactly one booking."""

    payment_id: str
    booking_id: str
    customer_id: str
    driver_id: str | None = None
    amount: Decimal = Field(gt=0)
    currency: str = "INR"
    method: PaymentMethod
    gateway: PaymentGateway
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_ref: str | None = None
    gateway_details: dict[str, Any] = Field(default_factory=dict)
    commission: Commission | None = None
    settlement: Settlement | None = None
    refund: Refund | None = None
    timeline: list[PaymentTimelineEntry] = Field(min_length=1)
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @model_validator(mode="after")
    def validate_amounts(self) -> Self:
        if self.commission is not None:
            if self.commission.platform + self.commission.driver != self.amount:
                raise ValueError("Commission split must add up to the payment amount")
        if self.refund is not None and self.refund.amount > self.amount:
            raise ValueError("Refund amount cannot exceed the payment amount")
        return self

    def transition_to(
        self, new_status: PaymentStatus, at: datetime, note: str | None = None
    ) -> PaymentTimelineEntry:
        if new_status not in VALID_PAYMENT_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Invalid payment transition from {self.status.value} to {new_status.value}",
                current_status=self.status.value,
                details={"requested_status": new_status.value},
            )

        entry = PaymentTimelineEntry(status=new_status, timestamp=at, note=note)
        self.status = new_status
        self.timeline.append(entry)
        self.updated_at = at
        return entry


class DriverEarnings(BaseModel):
    """Driver share of completed payments, split by payout state."""

    driver_id: str
    currency: str = "INR"
    total: Decimal = Decimal("0")
    pending: Decimal = Decimal("0")
    settled: Decimal = Decimal("0")
    completed_payments: int = 0
    recent_booking_ids: list[str] = Field(default_factory=list)


def gateway_for_method(method: PaymentMethod, default_gateway: PaymentGateway) -> PaymentGateway:
    if method == PaymentMethod.COD:
        return PaymentGateway.COD
    return default_gateway


def generate_payment_id(now: datetime) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"PAY{now:%y%m%d%H%M%S}{suffix}"


def new_payment(
    booking_id: str,
    customer_id: str,
    amount: Decimal,
    method: PaymentMethod,
    gateway: PaymentGateway,
    now: datetime,
    currency: str = "INR",
    driver_id: str | None = None,
) -> Payment:
    return Payment(
        payment_id=generate_payment_id(now),
        booking_id=booking_id,
        customer_id=customer_id,
        driver_id=driver_id,
        amount=amount,
        currency=currency,
        method=method,
        gateway=gateway,
        timeline=[
            PaymentTimelineEntry(
                status=PaymentStatus.PENDING, timestamp=now, note="Payment initiated"
            )
        ],
        created_at=now,
        updated_at=now,
    )
