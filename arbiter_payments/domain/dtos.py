from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from pydantic import BaseModel, Field

from .statuses import RefundStatus, TransactionStatus


class PaymentCreateRequest(BaseModel):
    """Request body for creating a payment."""

    order_id: int = Field(..., gt=0, description="Order being paid")
    amount: Decimal = Field(..., description="Amount in major currency units")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO-4217 currency code")
    customer_email: str | None = Field(default=None, description="Receipt email")
    description: str | None = Field(default=None, description="Statement description")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentCreateResponse(BaseModel):
    """Client-facing result of a payment creation."""

    success: bool = True
    transaction_id: int
    status: TransactionStatus
    payment_url: str | None = None
    client_secret: str | None = None
    message: str | None = None


class TransactionSnapshot(BaseModel):
    transaction_id: int
    order_id: int
    gateway: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    refunded_amount: Decimal = Decimal("0")
    paid_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, description="Omit for a full remaining refund")
    reason: str | None = Field(default=None, max_length=255)


class RefundResponse(BaseModel):
    success: bool
    refund_id: str | None = None
    status: RefundStatus
    amount: Decimal
    transaction_status: TransactionStatus
    refunded_amount: Decimal
    message: str | None = None


class RefundSummary(BaseModel):
    refund_id: str | None = None
    amount: Decimal
    status: RefundStatus
    reason: str | None = None
    created_at: datetime | None = None


class CancelResponse(BaseModel):
    success: bool
    status: TransactionStatus
    message: str | None = None


class GatewayInfo(BaseModel):
    name: str
    currencies: list[str]
    minimum_amounts: dict[str, Decimal]


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    retryable: bool = False
