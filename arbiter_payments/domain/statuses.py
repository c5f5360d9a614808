from __future__ import annotations

from enum import Enum


class TransactionStatus(str, Enum):
    """Status of a payment transaction."""

    PENDING = "pending"
    AWAITING_REDIRECT = "awaiting_redirect"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        """True while the customer has not finished paying."""
        return self in {TransactionStatus.PENDING, TransactionStatus.AWAITING_REDIRECT}

    @property
    def order_payment_status(self) -> str:
        """Payment status label written back to the order."""

        mapping = {
            self.PENDING: "pending",
            self.AWAITING_REDIRECT: "pending",
            self.COMPLETED: "paid",
            self.FAILED: "failed",
            self.CANCELLED: "cancelled",
            self.PARTIALLY_REFUNDED: "partially_refunded",
            self.REFUNDED: "refunded",
        }
        return mapping.get(self, self.value)


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.FAILED, TransactionStatus.CANCELLED, TransactionStatus.REFUNDED}
)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.AWAITING_REDIRECT,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        }
    ),
    TransactionStatus.AWAITING_REDIRECT: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.COMPLETED: frozenset(
        {TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.REFUNDED}
    ),
    # a further partial refund keeps the transaction partially refunded
    TransactionStatus.PARTIALLY_REFUNDED: frozenset(
        {TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.REFUNDED}
    ),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_noop_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    """Return True when applying ``target`` would not move the transaction.

    Re-applying the current status and a ``pending`` report for a transaction
    already waiting on the customer's redirect are both ignored.
    """
    if current == target:
        return True
    return current == TransactionStatus.AWAITING_REDIRECT and target == TransactionStatus.PENDING


class RefundStatus(str, Enum):
    """Status of one refund attempt."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def from_provider(cls, raw: str | None) -> "RefundStatus":
        value = (raw or "").strip().lower()
        if value in {"succeeded", "success", "completed", "refunded", "refund_success"}:
            return cls.SUCCEEDED
        if value in {"failed", "error", "denied", "canceled", "cancelled", "refund_failed"}:
            return cls.FAILED
        return cls.PENDING
