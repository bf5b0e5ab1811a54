"""Request/response models for payment endpoints."""

from decimal import Decimal

from pydantic import BaseModel, Field

from cargo_dispatch.api.models.bookings import Pagination
from cargo_dispatch.payment import Payment, PaymentGateway, PaymentMethod, SettlementStatus


class PaymentCreateRequest(BaseModel):
    """Open a payment for a completed booking, e.g. to retry after a failed one."""

    booking_id: str = Field(min_length=1)
    method: PaymentMethod
    gateway: PaymentGateway | None = None


class PaymentConfirmRequest(BaseModel):
    gateway_ref: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)


class SettlementRequest(BaseModel):
    outcome: SettlementStatus
    settlement_id: str | None = None


class PaymentPage(BaseModel):
    payments: list[Payment]
    pagination: Pagination
