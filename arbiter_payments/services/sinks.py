"""Outbound ports toward the order and notification subsystems."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

import httpx

from arbiter_payments.domain.models import Transaction
from arbiter_payments.domain.money import format_amount
from arbiter_payments.domain.statuses import TransactionStatus

logger = logging.getLogger(__name__)


class OrderStatusSink(ABC):
    @abstractmethod
    async def payment_status_changed(
        self, transaction: Transaction, previous_status: TransactionStatus
    ) -> None:
        """Called once per committed status transition."""

    @abstractmethod
    async def payment_reversed(self, transaction: Transaction, reason: str | None) -> None:
        """Called when the provider reports a chargeback or dispute on a paid transaction."""


class NotificationSink(ABC):
    @abstractmethod
    async def notify(self, transaction: Transaction, event: str) -> None:
        """Tell the customer/staff about ``event`` (e.g. ``payment.completed``)."""


def transaction_payload(transaction: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": transaction.id,
        "order_id": transaction.order_id,
        "gateway": transaction.gateway,
        "amount": format_amount(transaction.amount, transaction.currency),
        "currency": transaction.currency,
        "status": transaction.status.value,
        "payment_status": transaction.status.order_payment_status,
        "paid_at": transaction.paid_at.isoformat() if transaction.paid_at else None,
    }


class LoggingOrderStatusSink(OrderStatusSink):
    async def payment_status_changed(
        self, transaction: Transaction, previous_status: TransactionStatus
    ) -> None:
        logger.info(
            "order payment status changed",
            extra={
                "order_id": transaction.order_id,
                "transaction_id": transaction.id,
                "from_status": previous_status,
                "to_status": transaction.status,
                "status": transaction.status.order_payment_status,
            },
        )

    async def payment_reversed(self, transaction: Transaction, reason: str | None) -> None:
        logger.warning(
            "order payment reversed",
            extra={
                "order_id": transaction.order_id,
                "transaction_id": transaction.id,
                "status": "reversed",
                "error": reason,
            },
        )


class LoggingNotificationSink(NotificationSink):
    async def notify(self, transaction: Transaction, event: str) -> None:
        logger.info(
            "payment notification",
            extra={
                "order_id": transaction.order_id,
                "transaction_id": transaction.id,
                "event": event,
                "status": transaction.status,
            },
        )


class _CallbackMixin:
    """POST a JSON document to a collaborator URL; non-2xx raises."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def _post(self, body: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json=body)
        resp.raise_for_status()


class HttpOrderStatusSink(_CallbackMixin, OrderStatusSink):
    async def payment_status_changed(
        self, transaction: Transaction, previous_status: TransactionStatus
    ) -> None:
        body = transaction_payload(transaction)
        body["previous_status"] = previous_status.value
        await self._post(body)

    async def payment_reversed(self, transaction: Transaction, reason: str | None) -> None:
        body = transaction_payload(transaction)
        body["payment_status"] = "reversed"
        body["reason"] = reason
        await self._post(body)


class HttpNotificationSink(_CallbackMixin, NotificationSink):
    async def notify(self, transaction: Transaction, event: str) -> None:
        body = transaction_payload(transaction)
        body["event"] = event
        await self._post(body)
