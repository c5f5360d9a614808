from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Optional

from arbiter_payments.domain.models import RefundRecord, Transaction, WebhookEvent
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus

# Statuses that block a new payment attempt for the same order
ACTIVE_STATUSES = frozenset(
    {
        TransactionStatus.PENDING,
        TransactionStatus.AWAITING_REDIRECT,
        TransactionStatus.COMPLETED,
        TransactionStatus.PARTIALLY_REFUNDED,
    }
)


class TransactionStore(ABC):
    """Persistence port for transactions, refunds and webhook events.

    Implementations raise TransactionStoreError (or StaleTransaction) on
    failure and never return partially written state.
    """

    @abstractmethod
    def create_transaction(self, transaction: Transaction) -> Transaction:
        """Insert ``transaction`` and return it with ``id`` and timestamps set.

        Raises DuplicateIdempotencyKey when the key is taken,
        DuplicatePendingPayment when the order already has an active payment
        and DuplicateGatewayReference when another transaction holds the same
        (gateway, gateway_transaction_id).
        """

    @abstractmethod
    def get(self, transaction_id: int) -> Optional[Transaction]: ...

    @abstractmethod
    def get_by_gateway_reference(
        self, gateway: str, gateway_transaction_id: str
    ) -> Optional[Transaction]: ...

    @abstractmethod
    def get_by_idempotency_key(self, key: str) -> Optional[Transaction]: ...

    @abstractmethod
    def find_open_for_order(self, order_id: int) -> Optional[Transaction]:
        """Return the order's transaction in an active status, if any."""

    @abstractmethod
    def count_for_order(self, order_id: int) -> int: ...

    @abstractmethod
    def update_transaction(
        self, transaction: Transaction, expected_status: TransactionStatus
    ) -> Transaction:
        """Compare-and-swap write.

        Succeeds only if the stored row still has ``expected_status`` and the
        same ``version``; otherwise raises StaleTransaction. Returns the row
        with its version bumped.
        """

    @abstractmethod
    def add_refund(self, refund: RefundRecord) -> RefundRecord:
        """Insert a refund; DuplicateRefund if its refund_id is already booked."""

    @abstractmethod
    def update_refund_status(
        self, transaction_id: int, refund_id: str, status: RefundStatus
    ) -> Optional[RefundRecord]:
        """Set the status of a booked refund; None when the refund is unknown."""

    @abstractmethod
    def list_refunds(self, transaction_id: int) -> list[RefundRecord]: ...

    @abstractmethod
    def refunded_total(self, transaction_id: int) -> Decimal:
        """Sum of pending and succeeded refunds for the transaction."""

    @abstractmethod
    def record_webhook_event(self, event: WebhookEvent) -> WebhookEvent: ...

    @abstractmethod
    def find_processed_webhook(
        self, gateway: str, gateway_transaction_id: str, event_type: str
    ) -> Optional[WebhookEvent]: ...

    @abstractmethod
    def mark_webhook_processed(self, event_id: int) -> None:
        """Raises DuplicateWebhook when an event with the same (gateway,
        gateway_transaction_id, event_type) is already processed.
        """

    @abstractmethod
    def update_webhook_event(self, event: WebhookEvent) -> None:
        """Persist parsed fields and ``error`` of a recorded event."""

    @abstractmethod
    def list_webhook_events(self, gateway: str | None = None) -> list[WebhookEvent]: ...

    @abstractmethod
    def status_counts(self) -> Dict[str, int]:
        """Number of transactions per status."""
