"""Payment error taxonomy.

Gateway clients translate provider failures into these classes before they
reach the orchestrator or the webhook dispatcher, so callers only ever see
``kind``, ``retryable`` and ``http_status``.
"""

from __future__ import annotations

from typing import Any


class PaymentError(Exception):
    """Base class for every error raised by the payment core."""

    kind = "payment_error"
    retryable = False
    http_status = 400
    default_message = "Payment error"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


# Validation

class InvalidAmount(PaymentError):
    kind = "invalid_amount"
    http_status = 422
    default_message = "Amount must be greater than zero"


class UnsupportedCurrency(PaymentError):
    kind = "unsupported_currency"
    http_status = 422
    default_message = "Currency not supported by gateway"


class BelowMinimumAmount(PaymentError):
    kind = "below_minimum_amount"
    http_status = 422
    default_message = "Amount is below the gateway minimum"


class MalformedWebhook(PaymentError):
    kind = "malformed_webhook"
    default_message = "Malformed webhook payload"


# Lookup

class UnknownGateway(PaymentError):
    kind = "unknown_gateway"
    http_status = 404
    default_message = "Unknown payment gateway"


class GatewayDisabled(PaymentError):
    kind = "gateway_disabled"
    http_status = 404
    default_message = "Payment gateway is disabled"


class UnknownTransaction(PaymentError):
    kind = "unknown_transaction"
    http_status = 404
    default_message = "Transaction not found"


# Gateway

class GatewayUnreachable(PaymentError):
    kind = "gateway_unreachable"
    retryable = True
    http_status = 503
    default_message = "Payment gateway unreachable"


class GatewayRejected(PaymentError):
    kind = "gateway_rejected"
    http_status = 502
    default_message = "Payment gateway rejected the request"


# State conflicts

class StateConflict(PaymentError):
    kind = "state_conflict"
    http_status = 409


class InvalidStateTransition(StateConflict):
    kind = "invalid_state_transition"
    default_message = "Invalid transaction state transition"


class DuplicatePendingPayment(StateConflict):
    kind = "duplicate_pending_payment"
    default_message = "Order already has an active payment"


class AlreadyFinalized(StateConflict):
    kind = "already_finalized"
    default_message = "Transaction is already finalized"


class AlreadyRefunded(StateConflict):
    kind = "already_refunded"
    default_message = "Transaction is already fully refunded"


class RefundExceedsAmount(StateConflict):
    kind = "refund_exceeds_amount"
    default_message = "Refund exceeds the remaining refundable amount"


class TransactionNotRefundable(StateConflict):
    kind = "transaction_not_refundable"
    default_message = "Transaction cannot be refunded in its current state"


# Security

class SignatureInvalid(PaymentError):
    kind = "signature_invalid"
    default_message = "Invalid webhook signature"


# Persistence

class TransactionStoreError(PaymentError):
    kind = "store_error"
    retryable = True
    http_status = 503
    default_message = "Transaction store unavailable"


class StaleTransaction(TransactionStoreError):
    kind = "stale_transaction"
    default_message = "Transaction was modified concurrently"


class DuplicateIdempotencyKey(StateConflict):
    kind = "duplicate_idempotency_key"
    default_message = "Idempotency key already used"


class DuplicateGatewayReference(StateConflict):
    kind = "duplicate_gateway_reference"
    default_message = "Gateway transaction id already belongs to another transaction"


class DuplicateRefund(StateConflict):
    kind = "duplicate_refund"
    default_message = "Refund already recorded"


class DuplicateWebhook(StateConflict):
    """Another worker already processed the same (gateway, transaction, event type)."""

    kind = "duplicate_webhook"
    default_message = "Webhook already processed"


# Configuration

class GatewayConfigurationError(ValueError):
    """Raised at startup when an enabled gateway lacks required settings."""
