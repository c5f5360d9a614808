from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from .statuses import RefundStatus, TransactionStatus


@dataclass
class PaymentOrder:
    """The slice of an order the payment core needs to charge it."""

    order_id: int
    amount: Decimal
    currency: str
    customer_email: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Transaction:
    """Internal representation of one payment attempt."""

    order_id: int
    gateway: str
    amount: Decimal
    currency: str
    idempotency_key: str
    id: int | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_transaction_id: str | None = None
    payment_url: str | None = None
    client_secret: str | None = None
    customer_email: str | None = None
    description: str | None = None
    status_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    version: int = 0


@dataclass
class RefundRecord:
    """One refund attempt against a transaction."""

    transaction_id: int
    amount: Decimal
    status: RefundStatus
    refund_id: str | None = None
    reason: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class WebhookEvent:
    """A raw inbound gateway notification, kept for audit and replay safety."""

    gateway: str
    raw_payload: str
    signature_header: str | None = None
    id: int | None = None
    event_type: str | None = None
    gateway_transaction_id: str | None = None
    processed: bool = False
    error: str | None = None
    received_at: datetime | None = None
