from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Tuple

from arbiter_payments.domain.errors import (
    DuplicateGatewayReference,
    DuplicateIdempotencyKey,
    DuplicatePendingPayment,
    DuplicateRefund,
    DuplicateWebhook,
    StaleTransaction,
)
from arbiter_payments.domain.models import RefundRecord, Transaction, WebhookEvent
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus

from .base import ACTIVE_STATUSES, TransactionStore


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTransactionStore(TransactionStore):
    """Simple in-memory repository.

    Objects are copied on the way in and out so callers cannot mutate stored
    state behind the compare-and-swap check.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.by_id: Dict[int, Transaction] = {}
        self.by_idempotency: Dict[str, int] = {}
        self.by_reference: Dict[Tuple[str, str], int] = {}
        self.refunds: Dict[int, list[RefundRecord]] = {}
        self.webhooks: Dict[int, WebhookEvent] = {}
        self._refund_seq = 0
        self._webhook_seq = 0

    def _check_reference(self, transaction: Transaction, own_id: Optional[int]) -> None:
        # caller holds the lock
        if not transaction.gateway_transaction_id:
            return
        holder = self.by_reference.get((transaction.gateway, transaction.gateway_transaction_id))
        if holder is not None and holder != own_id:
            raise DuplicateGatewayReference(
                gateway=transaction.gateway,
                gateway_transaction_id=transaction.gateway_transaction_id,
            )

    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            if transaction.idempotency_key in self.by_idempotency:
                raise DuplicateIdempotencyKey(idempotency_key=transaction.idempotency_key)
            if any(
                t.order_id == transaction.order_id and t.status in ACTIVE_STATUSES
                for t in self.by_id.values()
            ):
                raise DuplicatePendingPayment(order_id=transaction.order_id)
            self._check_reference(transaction, None)
            stored = copy.deepcopy(transaction)
            stored.id = max(self.by_id.keys(), default=0) + 1
            stored.created_at = stored.updated_at = _now()
            stored.version = 1
            self.by_id[stored.id] = stored
            self.by_idempotency[stored.idempotency_key] = stored.id
            if stored.gateway_transaction_id:
                self.by_reference[(stored.gateway, stored.gateway_transaction_id)] = stored.id
            return copy.deepcopy(stored)

    def get(self, transaction_id: int) -> Optional[Transaction]:
        with self._lock:
            stored = self.by_id.get(transaction_id)
            return copy.deepcopy(stored) if stored else None

    def get_by_gateway_reference(
        self, gateway: str, gateway_transaction_id: str
    ) -> Optional[Transaction]:
        with self._lock:
            tid = self.by_reference.get((gateway, gateway_transaction_id))
            return copy.deepcopy(self.by_id[tid]) if tid else None

    def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        with self._lock:
            tid = self.by_idempotency.get(key)
            return copy.deepcopy(self.by_id[tid]) if tid else None

    def find_open_for_order(self, order_id: int) -> Optional[Transaction]:
        with self._lock:
            for stored in self.by_id.values():
                if stored.order_id == order_id and stored.status in ACTIVE_STATUSES:
                    return copy.deepcopy(stored)
            return None

    def count_for_order(self, order_id: int) -> int:
        with self._lock:
            return sum(1 for t in self.by_id.values() if t.order_id == order_id)

    def update_transaction(
        self, transaction: Transaction, expected_status: TransactionStatus
    ) -> Transaction:
        if transaction.id is None:
            raise StaleTransaction("Transaction has not been persisted")
        with self._lock:
            current = self.by_id.get(transaction.id)
            if (
                current is None
                or current.status != expected_status
                or current.version != transaction.version
            ):
                raise StaleTransaction(transaction_id=transaction.id)
            self._check_reference(transaction, transaction.id)
            stored = copy.deepcopy(transaction)
            stored.version = current.version + 1
            stored.updated_at = _now()
            self.by_id[stored.id] = stored
            if stored.gateway_transaction_id:
                self.by_reference[(stored.gateway, stored.gateway_transaction_id)] = stored.id
            return copy.deepcopy(stored)

    def add_refund(self, refund: RefundRecord) -> RefundRecord:
        with self._lock:
            if refund.refund_id and any(
                r.refund_id == refund.refund_id for r in self.refunds.get(refund.transaction_id, [])
            ):
                raise DuplicateRefund(
                    transaction_id=refund.transaction_id, refund_id=refund.refund_id
                )
            self._refund_seq += 1
            stored = copy.deepcopy(refund)
            stored.id = self._refund_seq
            stored.created_at = stored.created_at or _now()
            self.refunds.setdefault(stored.transaction_id, []).append(stored)
            return copy.deepcopy(stored)

    def update_refund_status(
        self, transaction_id: int, refund_id: str, status: RefundStatus
    ) -> Optional[RefundRecord]:
        with self._lock:
            for stored in self.refunds.get(transaction_id, []):
                if stored.refund_id == refund_id:
                    stored.status = status
                    return copy.deepcopy(stored)
            return None

    def list_refunds(self, transaction_id: int) -> list[RefundRecord]:
        with self._lock:
            return copy.deepcopy(self.refunds.get(transaction_id, []))

    def refunded_total(self, transaction_id: int) -> Decimal:
        with self._lock:
            return sum(
                (
                    r.amount
                    for r in self.refunds.get(transaction_id, [])
                    if r.status in {RefundStatus.PENDING, RefundStatus.SUCCEEDED}
                ),
                Decimal("0"),
            )

    def record_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        with self._lock:
            self._webhook_seq += 1
            stored = copy.deepcopy(event)
            stored.id = self._webhook_seq
            stored.received_at = stored.received_at or _now()
            self.webhooks[stored.id] = stored
            return copy.deepcopy(stored)

    def find_processed_webhook(
        self, gateway: str, gateway_transaction_id: str, event_type: str
    ) -> Optional[WebhookEvent]:
        with self._lock:
            for event in self.webhooks.values():
                if (
                    event.processed
                    and event.gateway == gateway
                    and event.gateway_transaction_id == gateway_transaction_id
                    and event.event_type == event_type
                ):
                    return copy.deepcopy(event)
            return None

    def mark_webhook_processed(self, event_id: int) -> None:
        with self._lock:
            event = self.webhooks.get(event_id)
            if event is None:
                return
            for other in self.webhooks.values():
                if (
                    other.processed
                    and other.id != event_id
                    and other.gateway == event.gateway
                    and other.gateway_transaction_id == event.gateway_transaction_id
                    and other.event_type == event.event_type
                ):
                    raise DuplicateWebhook(event_id=event_id, processed_event_id=other.id)
            event.processed = True
            event.error = None

    def update_webhook_event(self, event: WebhookEvent) -> None:
        if event.id is None:
            return
        with self._lock:
            if event.id in self.webhooks:
                self.webhooks[event.id] = copy.deepcopy(event)

    def list_webhook_events(self, gateway: str | None = None) -> list[WebhookEvent]:
        with self._lock:
            events = [e for e in self.webhooks.values() if gateway is None or e.gateway == gateway]
            return copy.deepcopy(events)

    def status_counts(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {}
            for stored in self.by_id.values():
                counts[stored.status.value] = counts.get(stored.status.value, 0) + 1
            return counts
