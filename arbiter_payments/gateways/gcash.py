from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping

from arbiter_payments.domain.enums import WebhookEventType
from arbiter_payments.domain.errors import (
    AlreadyFinalized,
    AlreadyRefunded,
    RefundExceedsAmount,
    TransactionNotRefundable,
)
from arbiter_payments.domain.money import format_amount, to_decimal
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus
from arbiter_payments.utils.signatures import hmac_sha256_hex, signatures_match

from .base import (
    CancelOutcome,
    PaymentCreation,
    PaymentGateway,
    PaymentVerification,
    RefundOutcome,
    WebhookNotification,
)

logger = logging.getLogger(__name__)

STATUS_MAP: Dict[str, TransactionStatus] = {
    "pending": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "paid": TransactionStatus.COMPLETED,
    "success": TransactionStatus.COMPLETED,
    "completed": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "error": TransactionStatus.FAILED,
    "expired": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.CANCELLED,
    "canceled": TransactionStatus.CANCELLED,
}

EVENT_MAP: Dict[str, WebhookEventType] = {
    "payment.success": WebhookEventType.PAYMENT_COMPLETED,
    "payment.paid": WebhookEventType.PAYMENT_COMPLETED,
    "payment.completed": WebhookEventType.PAYMENT_COMPLETED,
    "payment.failed": WebhookEventType.PAYMENT_FAILED,
    "payment.expired": WebhookEventType.PAYMENT_FAILED,
    "payment.cancelled": WebhookEventType.PAYMENT_CANCELLED,
    "payment.reversed": WebhookEventType.PAYMENT_REVERSED,
    "refund.success": WebhookEventType.REFUND_COMPLETED,
    "refund.completed": WebhookEventType.REFUND_COMPLETED,
    "refund.failed": WebhookEventType.REFUND_FAILED,
}


def map_status(raw: str | None) -> TransactionStatus:
    return STATUS_MAP.get(str(raw or "").lower(), TransactionStatus.PENDING)


class GCashGateway(PaymentGateway):
    """GCash redirect checkout over its REST API (bearer key auth).

    create_payment() returns the hosted ``payment_url`` the customer is sent to;
    webhooks are signed with a hex HMAC-SHA256 of the raw body.
    """

    name = "gcash"
    signature_header = "X-GCash-Signature"
    supported_currencies = ("PHP",)
    minimum_amounts = {"PHP": Decimal("1.00")}
    required_settings = ("api_base_url", "api_key", "merchant_id", "webhook_secret")
    error_codes = {
        "ALREADY_REFUNDED": AlreadyRefunded,
        "REFUND_EXCEEDS_AMOUNT": RefundExceedsAmount,
        "AMOUNT_EXCEEDED": RefundExceedsAmount,
        "NOT_REFUNDABLE": TransactionNotRefundable,
        "PAYMENT_NOT_COMPLETED": TransactionNotRefundable,
        "ALREADY_PAID": AlreadyFinalized,
        "INVALID_STATE": AlreadyFinalized,
    }

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        order_id: int,
        customer_email: str | None = None,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> PaymentCreation:
        code = self.validate_amount(amount, currency)
        payload = {
            "merchant_id": self.config.merchant_id,
            "amount": format_amount(amount, code),
            "currency": code,
            "description": description or "Order Payment",
            "customer_email": customer_email,
            "reference_number": f"ORD-{order_id}",
            "redirect_url": self.config.return_url,
            "webhook_url": self.config.notify_url,
            "metadata": {"order_id": order_id, **dict(metadata or {})},
        }
        resp = await self._send("CREATE", "POST", "/payments", headers=self._headers(), json=payload)
        data = self._json_body(resp)
        transaction_id = str(data.get("transaction_id") or data.get("id") or "")
        if not transaction_id:
            raise self._rejection("CREATE", resp)
        logger.info(
            "gcash payment created",
            extra={"order_id": order_id, "gateway_transaction_id": transaction_id},
        )
        return PaymentCreation(
            transaction_id=transaction_id,
            status=map_status(data.get("status")),
            amount=amount,
            currency=code,
            payment_url=data.get("payment_url") or data.get("checkout_url"),
        )

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        resp = await self._send(
            "VERIFY",
            "GET",
            f"/payments/{transaction_id}",
            headers=self._headers(),
            transaction_id=transaction_id,
        )
        data = self._json_body(resp)
        return PaymentVerification(
            transaction_id=str(data.get("transaction_id") or data.get("id") or transaction_id),
            status=map_status(data.get("status")),
            amount=to_decimal(data.get("amount")),
            currency=data.get("currency") or "PHP",
            paid_at=self._parse_timestamp(data.get("paid_at")),
            metadata=data.get("metadata") or {},
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str | None = None,
    ) -> RefundOutcome:
        payload: Dict[str, Any] = {
            "transaction_id": transaction_id,
            "reason": reason or "Customer request",
        }
        if amount is not None:
            payload["amount"] = format_amount(amount, currency or "PHP")
        resp = await self._send(
            "REFUND",
            "POST",
            "/refunds",
            headers=self._headers(),
            json=payload,
            transaction_id=transaction_id,
        )
        data = self._json_body(resp)
        refunded = to_decimal(data.get("amount"))
        return RefundOutcome(
            refund_id=str(data.get("refund_id") or data.get("id") or "") or None,
            status=RefundStatus.from_provider(data.get("status")),
            amount=refunded if refunded is not None else (amount or Decimal("0")),
            message="Refund initiated successfully",
        )

    async def cancel_payment(self, transaction_id: str) -> CancelOutcome:
        await self._send(
            "CANCEL",
            "POST",
            f"/payments/{transaction_id}/cancel",
            headers=self._headers(),
            transaction_id=transaction_id,
        )
        return CancelOutcome()

    async def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        expected = hmac_sha256_hex(self.config.webhook_secret, payload)
        return signatures_match(expected, signature)

    def parse_webhook(self, payload: bytes) -> WebhookNotification:
        data = self._load_webhook(payload)
        payment = self._object(data.get("payment"), "payment")
        raw_event = self._text(data.get("event_type"), "event_type") or "unknown"
        event_type = EVENT_MAP.get(raw_event, WebhookEventType.UNKNOWN)
        transaction_id = self._require(
            data.get("transaction_id") or payment.get("id"), "transaction_id"
        )
        raw_status = self._text(data.get("status") or payment.get("status"), "status")
        refund_id = self._text(data.get("refund_id"), "refund_id")
        refund_status = None
        if event_type == WebhookEventType.REFUND_FAILED:
            refund_id = self._require(refund_id, "refund_id")
            refund_status = RefundStatus.FAILED
        elif event_type == WebhookEventType.REFUND_COMPLETED:
            refund_status = RefundStatus.SUCCEEDED
        return WebhookNotification(
            event_type=event_type,
            transaction_id=transaction_id,
            raw_event_type=raw_event,
            status=map_status(raw_status) if raw_status else None,
            amount=self._amount(data.get("amount") or payment.get("amount"), "amount"),
            currency=self._text(data.get("currency") or payment.get("currency"), "currency") or "PHP",
            event_id=self._text(data.get("event_id") or data.get("id"), "event_id"),
            refund_id=refund_id,
            refund_status=refund_status,
            paid_at=self._parse_timestamp(data.get("paid_at") or payment.get("paid_at")),
            metadata=self._object(data.get("metadata") or payment.get("metadata"), "metadata"),
        )
