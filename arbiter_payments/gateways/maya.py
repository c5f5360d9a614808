from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Mapping

from arbiter_payments.domain.enums import WebhookEventType
from arbiter_payments.domain.errors import AlreadyFinalized, AlreadyRefunded, RefundExceedsAmount
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

PAYMENTS_PATH = "/payby/v2/paymaya/payments"

STATUS_MAP: Dict[str, TransactionStatus] = {
    "PAYMENT_SUCCESS": TransactionStatus.COMPLETED,
    "PAYMENT_COMPLETED": TransactionStatus.COMPLETED,
    "PAYMENT_FAILED": TransactionStatus.FAILED,
    "PAYMENT_EXPIRED": TransactionStatus.FAILED,
    "PAYMENT_CANCELLED": TransactionStatus.CANCELLED,
    "PAYMENT_PENDING": TransactionStatus.PENDING,
    "PAYMENT_PROCESSING": TransactionStatus.PENDING,
}

EVENT_MAP: Dict[str, WebhookEventType] = {
    "PAYMENT_SUCCESS": WebhookEventType.PAYMENT_COMPLETED,
    "PAYMENT_COMPLETED": WebhookEventType.PAYMENT_COMPLETED,
    "PAYMENT_FAILED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT_EXPIRED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT_CANCELLED": WebhookEventType.PAYMENT_CANCELLED,
    "PAYMENT_PENDING": WebhookEventType.PAYMENT_PENDING,
    "PAYMENT_PROCESSING": WebhookEventType.PAYMENT_PENDING,
    "REFUND_SUCCESS": WebhookEventType.REFUND_COMPLETED,
    "REFUND_COMPLETED": WebhookEventType.REFUND_COMPLETED,
    "REFUND_FAILED": WebhookEventType.REFUND_FAILED,
}


def map_status(raw: str | None) -> TransactionStatus:
    return STATUS_MAP.get(str(raw or "").upper(), TransactionStatus.PENDING)


class MayaGateway(PaymentGateway):
    """Maya (PayMaya) Pay-by-link checkout, basic-auth with public/secret keys."""

    name = "maya"
    signature_header = "X-Maya-Signature"
    supported_currencies = ("PHP",)
    minimum_amounts = {"PHP": Decimal("1.00")}
    required_settings = ("api_base_url", "api_key", "api_secret", "webhook_secret")
    error_codes = {
        "PY0030": AlreadyFinalized,
        "ALREADY_REFUNDED": AlreadyRefunded,
        "REFUND_AMOUNT_EXCEEDED": RefundExceedsAmount,
    }

    @property
    def _auth(self) -> tuple[str, str]:
        return (self.config.api_key, self.config.api_secret)

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
        payload: Dict[str, Any] = {
            "totalAmount": {"value": format_amount(amount, code), "currency": code},
            "redirectUrl": {
                "success": self.config.return_url,
                "failure": self.config.failure_url,
                "cancel": self.config.cancel_url,
            },
            "requestReferenceNumber": f"ORD-{order_id}",
            "metadata": {"order_id": order_id, **dict(metadata or {})},
        }
        if customer_email:
            payload["buyer"] = {"contact": {"email": customer_email}}
        if description:
            payload["description"] = description
        resp = await self._send("CREATE", "POST", PAYMENTS_PATH, json=payload, auth=self._auth)
        data = self._json_body(resp)
        transaction_id = str(data.get("paymentId") or data.get("id") or "")
        if not transaction_id:
            raise self._rejection("CREATE", resp)
        return PaymentCreation(
            transaction_id=transaction_id,
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=code,
            payment_url=data.get("redirectUrl"),
        )

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        resp = await self._send(
            "VERIFY",
            "GET",
            f"{PAYMENTS_PATH}/{transaction_id}",
            auth=self._auth,
            transaction_id=transaction_id,
        )
        data = self._json_body(resp)
        total = data.get("totalAmount") or {}
        status = map_status(data.get("status"))
        paid_at = None
        if status == TransactionStatus.COMPLETED:
            paid_at = self._parse_timestamp(data.get("paymentAt") or data.get("updatedAt"))
        return PaymentVerification(
            transaction_id=str(data.get("id") or transaction_id),
            status=status,
            amount=to_decimal(total.get("value") or total.get("amount")),
            currency=total.get("currency") or "PHP",
            paid_at=paid_at,
            metadata=data.get("metadata") or {},
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str | None = None,
    ) -> RefundOutcome:
        code = currency or "PHP"
        payload: Dict[str, Any] = {"reason": reason or "Customer request"}
        if amount is not None:
            payload["totalAmount"] = {"amount": format_amount(amount, code), "currency": code}
        resp = await self._send(
            "REFUND",
            "POST",
            f"{PAYMENTS_PATH}/{transaction_id}/refunds",
            json=payload,
            auth=self._auth,
            transaction_id=transaction_id,
        )
        data = self._json_body(resp)
        total = data.get("totalAmount") or {}
        refunded = to_decimal(total.get("amount") or total.get("value"))
        return RefundOutcome(
            refund_id=str(data.get("id") or "") or None,
            status=RefundStatus.from_provider(data.get("status") or "SUCCESS"),
            amount=refunded if refunded is not None else (amount or Decimal("0")),
        )

    async def cancel_payment(self, transaction_id: str) -> CancelOutcome:
        await self._send(
            "CANCEL",
            "POST",
            f"{PAYMENTS_PATH}/{transaction_id}/cancel",
            auth=self._auth,
            transaction_id=transaction_id,
        )
        return CancelOutcome()

    async def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        expected = hmac_sha256_hex(self.config.webhook_secret, payload)
        return signatures_match(expected, signature)

    def parse_webhook(self, payload: bytes) -> WebhookNotification:
        data = self._load_webhook(payload)
        total = self._object(data.get("totalAmount"), "totalAmount")
        raw_status = (self._text(data.get("status"), "status") or "").upper()
        raw_event = self._text(data.get("eventType"), "eventType") or raw_status or "unknown"
        event_type = EVENT_MAP.get(raw_event.upper()) or EVENT_MAP.get(
            raw_status, WebhookEventType.UNKNOWN
        )
        transaction_id = self._require(data.get("transactionId") or data.get("id"), "id")
        refund_id = self._text(data.get("refundId"), "refundId")
        refund_status = None
        if event_type == WebhookEventType.REFUND_FAILED:
            refund_id = self._require(refund_id, "refundId")
            refund_status = RefundStatus.FAILED
        elif event_type == WebhookEventType.REFUND_COMPLETED:
            refund_status = RefundStatus.SUCCEEDED
        return WebhookNotification(
            event_type=event_type,
            transaction_id=transaction_id,
            raw_event_type=raw_event,
            status=map_status(raw_status) if raw_status else None,
            amount=self._amount(
                data.get("amount") or total.get("value") or total.get("amount"), "amount"
            ),
            currency=self._text(data.get("currency") or total.get("currency"), "currency") or "PHP",
            event_id=self._text(data.get("eventId"), "eventId"),
            refund_id=refund_id,
            refund_status=refund_status,
            paid_at=self._parse_timestamp(data.get("paymentAt")),
            metadata=self._object(data.get("metadata"), "metadata"),
        )
