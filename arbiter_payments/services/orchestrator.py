from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from arbiter_payments.config import Settings, settings
from arbiter_payments.domain.dtos import (
    CancelResponse,
    PaymentCreateResponse,
    RefundResponse,
    RefundSummary,
    TransactionSnapshot,
)
from arbiter_payments.domain.errors import (
    AlreadyFinalized,
    AlreadyRefunded,
    DuplicatePendingPayment,
    DuplicateRefund,
    GatewayUnreachable,
    InvalidAmount,
    InvalidStateTransition,
    RefundExceedsAmount,
    TransactionNotRefundable,
    UnknownTransaction,
)
from arbiter_payments.domain.models import PaymentOrder, RefundRecord, Transaction
from arbiter_payments.domain.money import quantize
from arbiter_payments.domain.statuses import (
    RefundStatus,
    TransactionStatus,
    can_transition,
    is_noop_transition,
)
from arbiter_payments.gateways.base import PaymentGateway, PaymentVerification
from arbiter_payments.gateways.factory import GatewayRegistry
from arbiter_payments.repositories.base import TransactionStore
from arbiter_payments.utils.idempotency import derive_idempotency_key
from arbiter_payments.utils.locks import KeyedLock

from .sinks import (
    LoggingNotificationSink,
    LoggingOrderStatusSink,
    NotificationSink,
    OrderStatusSink,
)

REFUNDABLE_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED})
REFUND_STATUSES = frozenset({TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.REFUNDED})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentOrchestrator:
    """Business logic for payments.

    Owns the Transaction state machine: every status change goes through
    ``_transition`` while the per-transaction lock is held, is written with a
    compare-and-swap on ``(status, version)`` and is reported to the order
    and notification sinks exactly once.
    """

    def __init__(
        self,
        store: TransactionStore,
        registry: GatewayRegistry,
        order_sink: OrderStatusSink | None = None,
        notification_sink: NotificationSink | None = None,
        cfg: Settings = settings,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = cfg
        self.order_sink = order_sink or LoggingOrderStatusSink()
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.logger = logging.getLogger(__name__)
        self._transaction_locks = KeyedLock()
        self._order_locks = KeyedLock()

    # Lookups

    def _load(self, transaction_id: int) -> Transaction:
        transaction = self.store.get(transaction_id)
        if transaction is None:
            raise UnknownTransaction(transaction_id=transaction_id)
        return transaction

    def resolve_gateway_reference(self, gateway: str, gateway_transaction_id: str) -> Transaction:
        transaction = self.store.get_by_gateway_reference(gateway, gateway_transaction_id)
        if transaction is None:
            raise UnknownTransaction(
                f"No {gateway} transaction {gateway_transaction_id}",
                gateway=gateway,
                gateway_transaction_id=gateway_transaction_id,
            )
        return transaction

    def snapshot(self, transaction: Transaction) -> TransactionSnapshot:
        return TransactionSnapshot(
            transaction_id=transaction.id,
            order_id=transaction.order_id,
            gateway=transaction.gateway,
            amount=transaction.amount,
            currency=transaction.currency,
            status=transaction.status,
            refunded_amount=self.store.refunded_total(transaction.id),
            paid_at=transaction.paid_at,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )

    def get_transaction(self, transaction_id: int) -> TransactionSnapshot:
        return self.snapshot(self._load(transaction_id))

    def list_refunds(self, transaction_id: int) -> list[RefundSummary]:
        self._load(transaction_id)
        return [
            RefundSummary(
                refund_id=r.refund_id,
                amount=r.amount,
                status=r.status,
                reason=r.reason,
                created_at=r.created_at,
            )
            for r in self.store.list_refunds(transaction_id)
        ]

    @staticmethod
    def _creation_response(transaction: Transaction, message: str) -> PaymentCreateResponse:
        return PaymentCreateResponse(
            transaction_id=transaction.id,
            status=transaction.status,
            payment_url=transaction.payment_url,
            client_secret=transaction.client_secret,
            message=message,
        )

    # Create

    async def initiate_payment(
        self,
        order: PaymentOrder,
        gateway_name: str,
        idempotency_key: str | None = None,
    ) -> PaymentCreateResponse:
        gateway = self.registry.get(gateway_name)
        if idempotency_key:
            existing = self.store.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._idempotency_hit(existing, idempotency_key)

        async with self._order_locks.hold(order.order_id):
            if idempotency_key:
                # a concurrent request with the same key may have won the lock first
                existing = self.store.get_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return self._idempotency_hit(existing, idempotency_key)
            active = self.store.find_open_for_order(order.order_id)
            if active is not None:
                raise DuplicatePendingPayment(
                    f"Order {order.order_id} already has a {active.status.value} payment",
                    order_id=order.order_id,
                    transaction_id=active.id,
                )
            currency = gateway.validate_amount(order.amount, order.currency)
            amount = quantize(order.amount, currency)
            key = idempotency_key or derive_idempotency_key(
                order.order_id, gateway.name, self.store.count_for_order(order.order_id) + 1
            )
            self.logger.info(
                "creating transaction with gateway",
                extra={
                    "order_id": order.order_id,
                    "amount": amount,
                    "currency": currency,
                    "gateway": gateway.name,
                    "idempotency_key": key,
                },
            )
            creation = await gateway.create_payment(
                amount,
                currency,
                order.order_id,
                customer_email=order.customer_email,
                description=order.description,
                metadata=order.metadata,
            )
            status = (
                TransactionStatus.AWAITING_REDIRECT
                if creation.payment_url
                else TransactionStatus.PENDING
            )
            transaction = self.store.create_transaction(
                Transaction(
                    order_id=order.order_id,
                    gateway=gateway.name,
                    amount=amount,
                    currency=currency,
                    idempotency_key=key,
                    status=status,
                    gateway_transaction_id=creation.transaction_id,
                    payment_url=creation.payment_url,
                    client_secret=creation.client_secret,
                    customer_email=order.customer_email,
                    description=order.description,
                    metadata=dict(order.metadata or {}),
                )
            )
        self.logger.info(
            "payment stored",
            extra={
                "transaction_id": transaction.id,
                "order_id": transaction.order_id,
                "gateway": transaction.gateway,
                "gateway_transaction_id": transaction.gateway_transaction_id,
                "status": transaction.status,
            },
        )
        return self._creation_response(transaction, creation.message)

    def _idempotency_hit(self, existing: Transaction, key: str) -> PaymentCreateResponse:
        self.logger.info(
            "idempotency hit; returning existing payment",
            extra={
                "transaction_id": existing.id,
                "order_id": existing.order_id,
                "idempotency_key": key,
                "status": existing.status,
            },
        )
        return self._creation_response(existing, "Existing payment returned")

    # Confirm / capture

    async def _verify_with_retry(self, gateway: PaymentGateway, reference: str) -> PaymentVerification:
        attempts = max(1, self.settings.verify_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await gateway.verify_payment(reference)
            except GatewayUnreachable:
                if attempt == attempts:
                    raise
                self.logger.warning(
                    "verify retry",
                    extra={"gateway": gateway.name, "gateway_transaction_id": reference},
                )
                await asyncio.sleep(self.settings.verify_retry_backoff_seconds * attempt)
        raise GatewayUnreachable(gateway=gateway.name)

    async def confirm_payment(self, transaction_id: int) -> TransactionSnapshot:
        """Re-read the payment at the gateway and apply what it reports."""
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            if transaction.status.is_terminal or not transaction.gateway_transaction_id:
                return self.snapshot(transaction)
            gateway = self.registry.get(transaction.gateway)
            verification = await self._verify_with_retry(gateway, transaction.gateway_transaction_id)
            if verification.status in REFUND_STATUSES:
                transaction = await self._apply_polled_refund(transaction, verification)
                return self.snapshot(transaction)
            transaction = await self._transition(
                transaction,
                verification.status,
                paid_at=verification.paid_at,
                metadata=verification.metadata,
                strict=False,
            )
        return self.snapshot(transaction)

    async def _apply_polled_refund(
        self, transaction: Transaction, verification: PaymentVerification
    ) -> Transaction:
        """Book the difference between the gateway's refunded total and ours."""
        # caller holds the transaction lock
        if transaction.status not in REFUNDABLE_STATUSES:
            self.logger.info(
                "gateway refund status ignored",
                extra={
                    "transaction_id": transaction.id,
                    "from_status": transaction.status,
                    "to_status": verification.status,
                },
            )
            return transaction
        already = self.store.refunded_total(transaction.id)
        if verification.refunded_amount is not None:
            missing: Decimal | None = verification.refunded_amount - already
        elif verification.status == TransactionStatus.REFUNDED:
            missing = None
        else:
            self.logger.info(
                "gateway reports a partial refund without an amount; ignored",
                extra={"transaction_id": transaction.id, "status": verification.status},
            )
            return transaction
        if missing is not None and missing <= 0:
            return transaction
        return await self._book_gateway_refund(
            transaction,
            missing,
            reason=f"gateway reports {verification.status.value}",
        )

    async def capture_payment(self, transaction_id: int) -> TransactionSnapshot:
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            if transaction.status in REFUNDABLE_STATUSES or transaction.status == TransactionStatus.REFUNDED:
                return self.snapshot(transaction)
            if transaction.status.is_terminal:
                raise AlreadyFinalized(
                    f"Transaction is {transaction.status.value}", transaction_id=transaction_id
                )
            gateway = self.registry.get(transaction.gateway)
            verification = await gateway.capture_payment(transaction.gateway_transaction_id or "")
            transaction = await self._transition(
                transaction,
                verification.status,
                paid_at=verification.paid_at,
                metadata=verification.metadata,
                strict=False,
            )
        return self.snapshot(transaction)

    # Refund / cancel

    async def refund(
        self,
        transaction_id: int,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> RefundResponse:
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            if transaction.status == TransactionStatus.REFUNDED:
                raise AlreadyRefunded(transaction_id=transaction_id)
            if transaction.status not in REFUNDABLE_STATUSES:
                raise TransactionNotRefundable(
                    f"Cannot refund a {transaction.status.value} transaction",
                    transaction_id=transaction_id,
                )
            already = self.store.refunded_total(transaction_id)
            remaining = transaction.amount - already
            if remaining <= 0:
                raise AlreadyRefunded(transaction_id=transaction_id)
            refund_amount = remaining if amount is None else quantize(amount, transaction.currency)
            if refund_amount <= 0:
                raise InvalidAmount("Refund amount must be at least one minor unit")
            if refund_amount > remaining:
                raise RefundExceedsAmount(
                    f"Refund of {refund_amount} exceeds remaining {remaining}",
                    transaction_id=transaction_id,
                    remaining=remaining,
                )
            gateway = self.registry.get(transaction.gateway)
            outcome = await gateway.refund_payment(
                transaction.gateway_transaction_id or "",
                refund_amount,
                reason=reason,
                currency=transaction.currency,
            )
            try:
                self.store.add_refund(
                    RefundRecord(
                        transaction_id=transaction_id,
                        amount=refund_amount,
                        status=outcome.status,
                        refund_id=outcome.refund_id,
                        reason=reason,
                    )
                )
            except DuplicateRefund:
                # the provider's refund webhook was booked by another worker first
                transaction = self._load(transaction_id)
            self.logger.info(
                "refund recorded",
                extra={
                    "transaction_id": transaction_id,
                    "refund_id": outcome.refund_id,
                    "amount": refund_amount,
                    "status": outcome.status,
                },
            )
            if outcome.status != RefundStatus.FAILED:
                target = (
                    TransactionStatus.REFUNDED
                    if self.store.refunded_total(transaction_id) >= transaction.amount
                    else TransactionStatus.PARTIALLY_REFUNDED
                )
                transaction = await self._transition(transaction, target, reason=reason)
            return RefundResponse(
                success=outcome.status != RefundStatus.FAILED,
                refund_id=outcome.refund_id,
                status=outcome.status,
                amount=refund_amount,
                transaction_status=transaction.status,
                refunded_amount=self.store.refunded_total(transaction_id),
                message=outcome.message,
            )

    async def record_gateway_refund(
        self,
        transaction_id: int,
        amount: Decimal | None = None,
        refund_id: str | None = None,
        reason: str | None = None,
        status: RefundStatus | None = None,
    ) -> Transaction:
        """Book a refund the gateway reports (our own or one made on its dashboard)."""
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            return await self._book_gateway_refund(
                transaction, amount, refund_id=refund_id, status=status, reason=reason
            )

    async def _book_gateway_refund(
        self,
        transaction: Transaction,
        amount: Decimal | None,
        *,
        refund_id: str | None = None,
        status: RefundStatus | None = None,
        reason: str | None = None,
    ) -> Transaction:
        # caller holds the transaction lock
        status = status or RefundStatus.SUCCEEDED
        if status == RefundStatus.FAILED:
            return transaction
        if refund_id and any(
            r.refund_id == refund_id for r in self.store.list_refunds(transaction.id)
        ):
            return transaction
        if transaction.status == TransactionStatus.REFUNDED:
            return transaction
        if transaction.status not in REFUNDABLE_STATUSES:
            raise TransactionNotRefundable(
                f"Gateway refund for a {transaction.status.value} transaction",
                transaction_id=transaction.id,
            )
        already = self.store.refunded_total(transaction.id)
        remaining = transaction.amount - already
        refund_amount = remaining if amount is None else quantize(amount, transaction.currency)
        if refund_amount > remaining:
            self.logger.warning(
                "gateway refund exceeds remaining amount; capping",
                extra={"transaction_id": transaction.id, "amount": refund_amount},
            )
            refund_amount = remaining
        if refund_amount <= 0:
            return transaction
        try:
            self.store.add_refund(
                RefundRecord(
                    transaction_id=transaction.id,
                    amount=refund_amount,
                    status=status,
                    refund_id=refund_id,
                    reason=reason or "gateway refund",
                )
            )
        except DuplicateRefund:
            # booked by another worker between our check and the insert
            self.logger.info(
                "gateway refund already booked",
                extra={"transaction_id": transaction.id, "refund_id": refund_id},
            )
            return self._load(transaction.id)
        self.logger.info(
            "gateway refund booked",
            extra={
                "transaction_id": transaction.id,
                "refund_id": refund_id,
                "amount": refund_amount,
                "status": status,
            },
        )
        target = (
            TransactionStatus.REFUNDED
            if already + refund_amount >= transaction.amount
            else TransactionStatus.PARTIALLY_REFUNDED
        )
        return await self._transition(transaction, target, reason=reason)

    async def update_gateway_refund(
        self,
        transaction_id: int,
        refund_id: str,
        status: RefundStatus,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> Transaction:
        """Apply a later status change of a refund (e.g. a refund that failed after acceptance).

        A refund that failed stops counting toward the refunded total, so the
        amount can be refunded again. The transaction status itself only moves
        forward; a failure is reported to the notification sink instead.
        """
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            known = next(
                (r for r in self.store.list_refunds(transaction_id) if r.refund_id == refund_id),
                None,
            )
            if known is None:
                if status == RefundStatus.FAILED:
                    self.logger.info(
                        "failed refund was never booked",
                        extra={"transaction_id": transaction_id, "refund_id": refund_id},
                    )
                    return transaction
                return await self._book_gateway_refund(
                    transaction, amount, refund_id=refund_id, status=status, reason=reason
                )
            if known.status == status:
                return transaction
            self.store.update_refund_status(transaction_id, refund_id, status)
            log = self.logger.warning if status == RefundStatus.FAILED else self.logger.info
            log(
                "refund status changed",
                extra={
                    "transaction_id": transaction_id,
                    "refund_id": refund_id,
                    "from_status": known.status,
                    "to_status": status,
                    "amount": known.amount,
                },
            )
            if status == RefundStatus.FAILED:
                await self._notify(transaction, "refund.failed")
            return transaction

    async def record_reversal(self, transaction_id: int, reason: str | None = None) -> Transaction:
        """Flag a chargeback or dispute on a paid transaction.

        The status is left alone; the reversal is written to the metadata and
        reported to the order and notification sinks.
        """
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            if transaction.status not in REFUNDABLE_STATUSES | {TransactionStatus.REFUNDED}:
                raise InvalidStateTransition(
                    f"Cannot reverse a {transaction.status.value} transaction",
                    transaction_id=transaction_id,
                )
            if transaction.metadata.get("reversed"):
                return transaction
            transaction.metadata = {
                **transaction.metadata,
                "reversed": True,
                "reversed_at": _now().isoformat(),
                "reversal_reason": reason,
            }
            updated = self.store.update_transaction(transaction, expected_status=transaction.status)
            self.logger.warning(
                "payment reversed",
                extra={
                    "transaction_id": updated.id,
                    "order_id": updated.order_id,
                    "gateway": updated.gateway,
                    "status": updated.status,
                    "error": reason,
                },
            )
            try:
                await self.order_sink.payment_reversed(updated, reason)
            except Exception as exc:  # noqa: BLE001
                self.logger.error(
                    "order status sink failed",
                    extra={"transaction_id": updated.id, "error": str(exc)},
                    exc_info=True,
                )
            await self._notify(updated, "payment.reversed")
            return updated

    async def cancel(self, transaction_id: int) -> CancelResponse:
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            if not transaction.status.is_open:
                raise AlreadyFinalized(
                    f"Transaction is {transaction.status.value}", transaction_id=transaction_id
                )
            gateway = self.registry.get(transaction.gateway)
            outcome = await gateway.cancel_payment(transaction.gateway_transaction_id or "")
            transaction = await self._transition(
                transaction, TransactionStatus.CANCELLED, reason="cancelled by request"
            )
        return CancelResponse(success=True, status=transaction.status, message=outcome.message)

    # State machine

    async def apply_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        paid_at: datetime | None = None,
        reason: str | None = None,
    ) -> Transaction:
        """Move a transaction to ``status``; raises InvalidStateTransition when not allowed."""
        async with self._transaction_locks.hold(transaction_id):
            transaction = self._load(transaction_id)
            return await self._transition(transaction, status, paid_at=paid_at, reason=reason)

    async def _transition(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        *,
        paid_at: datetime | None = None,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        strict: bool = True,
    ) -> Transaction:
        # caller holds the transaction lock
        previous = transaction.status
        if is_noop_transition(previous, target):
            return transaction
        if not can_transition(previous, target):
            if strict:
                raise InvalidStateTransition(
                    f"Cannot move transaction from {previous.value} to {target.value}",
                    transaction_id=transaction.id,
                )
            self.logger.info(
                "gateway status ignored",
                extra={
                    "transaction_id": transaction.id,
                    "from_status": previous,
                    "to_status": target,
                },
            )
            return transaction
        transaction.status = target
        if target == TransactionStatus.COMPLETED:
            transaction.paid_at = paid_at or transaction.paid_at or _now()
        if reason:
            transaction.status_reason = reason
        if metadata:
            transaction.metadata = {**transaction.metadata, **dict(metadata)}
        updated = self.store.update_transaction(transaction, expected_status=previous)
        self.logger.info(
            "transaction status changed",
            extra={
                "transaction_id": updated.id,
                "order_id": updated.order_id,
                "gateway": updated.gateway,
                "from_status": previous,
                "to_status": target,
            },
        )
        await self._emit(updated, previous)
        return updated

    async def _emit(self, transaction: Transaction, previous: TransactionStatus) -> None:
        try:
            await self.order_sink.payment_status_changed(transaction, previous)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(
                "order status sink failed",
                extra={"transaction_id": transaction.id, "error": str(exc)},
                exc_info=True,
            )
        await self._notify(transaction, f"payment.{transaction.status.value}")

    async def _notify(self, transaction: Transaction, event: str) -> None:
        try:
            await self.notification_sink.notify(transaction, event)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(
                "notification sink failed",
                extra={"transaction_id": transaction.id, "error": str(exc)},
                exc_info=True,
            )
