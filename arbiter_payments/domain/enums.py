from __future__ import annotations

from enum import Enum


class GatewayName(str, Enum):
    """Supported payment gateways (strategy selector)."""

    GCASH = "gcash"
    MAYA = "maya"
    STRIPE = "stripe"
    PAYPAL = "paypal"


class WebhookEventType(str, Enum):
    """Gateway-neutral webhook event types."""

    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_APPROVED = "payment.approved"
    PAYMENT_REVERSED = "payment.reversed"
    REFUND_COMPLETED = "refund.completed"
    REFUND_UPDATED = "refund.updated"
    REFUND_FAILED = "refund.failed"
    UNKNOWN = "unknown"
