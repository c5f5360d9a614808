from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, TypeVar

import stripe  # type: ignore[import-untyped]

from arbiter_payments.domain.enums import WebhookEventType
from arbiter_payments.domain.errors import (
    AlreadyFinalized,
    AlreadyRefunded,
    GatewayRejected,
    GatewayUnreachable,
    MalformedWebhook,
    PaymentError,
    RefundExceedsAmount,
    TransactionNotRefundable,
)
from arbiter_payments.domain.money import from_minor_units, normalize_currency, to_minor_units
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus

from .base import (
    CancelOutcome,
    PaymentCreation,
    PaymentGateway,
    PaymentVerification,
    RefundOutcome,
    WebhookNotification,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTENT_STATUS_MAP: Dict[str, TransactionStatus] = {
    "succeeded": TransactionStatus.COMPLETED,
    "canceled": TransactionStatus.CANCELLED,
}

EVENT_MAP: Dict[str, WebhookEventType] = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_COMPLETED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.canceled": WebhookEventType.PAYMENT_CANCELLED,
    "payment_intent.processing": WebhookEventType.PAYMENT_PENDING,
    "charge.refunded": WebhookEventType.REFUND_COMPLETED,
    "charge.refund.updated": WebhookEventType.REFUND_UPDATED,
    "refund.updated": WebhookEventType.REFUND_UPDATED,
    "charge.dispute.created": WebhookEventType.PAYMENT_REVERSED,
}

EVENT_STATUS: Dict[WebhookEventType, TransactionStatus] = {
    WebhookEventType.PAYMENT_COMPLETED: TransactionStatus.COMPLETED,
    WebhookEventType.PAYMENT_FAILED: TransactionStatus.FAILED,
    WebhookEventType.PAYMENT_CANCELLED: TransactionStatus.CANCELLED,
    WebhookEventType.PAYMENT_PENDING: TransactionStatus.PENDING,
}


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents implementation.

    The SDK is synchronous, so every call runs in a worker thread bounded by
    the gateway timeout. The secret key is passed per call; the global
    ``stripe.api_key`` is never touched. Card details are collected client
    side with the returned ``client_secret``.
    """

    name = "stripe"
    signature_header = "Stripe-Signature"
    supported_currencies = ("PHP", "USD", "EUR", "GBP", "JPY", "SGD", "HKD", "AUD", "CAD")
    minimum_amounts = {
        "PHP": Decimal("50.00"),
        "USD": Decimal("0.50"),
        "EUR": Decimal("0.50"),
        "GBP": Decimal("0.30"),
        "JPY": Decimal("50"),
        "SGD": Decimal("0.50"),
        "HKD": Decimal("4.00"),
        "AUD": Decimal("0.50"),
        "CAD": Decimal("0.50"),
    }
    default_minimum = Decimal("0.50")
    required_settings = ("api_secret", "webhook_secret")

    async def _call(
        self,
        operation: str,
        endpoint: str,
        func: Callable[[], T],
        transaction_id: str | None = None,
    ) -> T:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func), timeout=self.config.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            self._log_call(operation, "SDK", endpoint, None, started, transaction_id, error="timeout")
            msg = f"stripe timed out during {operation.lower()}"
            raise GatewayUnreachable(msg, gateway=self.name) from exc
        except stripe.StripeError as exc:
            status = getattr(exc, "http_status", None)
            self._log_call(operation, "SDK", endpoint, status, started, transaction_id, error=str(exc))
            raise self._translate(operation, exc) from exc
        self._log_call(operation, "SDK", endpoint, 200, started, transaction_id)
        return result

    def _translate(self, operation: str, exc: Exception) -> PaymentError:
        message = getattr(exc, "user_message", None) or str(exc) or "Stripe error"
        status = getattr(exc, "http_status", None)
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)) or (
            status is not None and status >= 500
        ):
            return GatewayUnreachable(message, gateway=self.name, response_code=status)
        code = getattr(exc, "code", None) or ""
        if code == "charge_already_refunded":
            return AlreadyRefunded(message, gateway=self.name)
        if code == "amount_too_large":
            return RefundExceedsAmount(message, gateway=self.name)
        if code == "payment_intent_unexpected_state":
            if operation == "CANCEL":
                return AlreadyFinalized(message, gateway=self.name)
            return TransactionNotRefundable(message, gateway=self.name)
        return GatewayRejected(message, gateway=self.name, response_code=status)

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
        intent_kwargs: Dict[str, Any] = {
            "amount": to_minor_units(amount, code),
            "currency": code.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                "order_id": str(order_id),
                **{str(k): str(v) for k, v in dict(metadata or {}).items()},
            },
        }
        if description:
            intent_kwargs["description"] = description
        if customer_email:
            intent_kwargs["receipt_email"] = customer_email

        def _create() -> Any:
            return stripe.PaymentIntent.create(api_key=self.config.api_secret, **intent_kwargs)

        intent = await self._call("CREATE", "stripe.PaymentIntent.create", _create)
        logger.info(
            "stripe payment intent created",
            extra={"order_id": order_id, "gateway_transaction_id": intent.id},
        )
        return PaymentCreation(
            transaction_id=str(intent.id),
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=code,
            client_secret=getattr(intent, "client_secret", None),
        )

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        def _retrieve() -> Any:
            return stripe.PaymentIntent.retrieve(transaction_id, api_key=self.config.api_secret)

        intent = await self._call(
            "VERIFY", "stripe.PaymentIntent.retrieve", _retrieve, transaction_id
        )
        currency = normalize_currency(getattr(intent, "currency", "") or "")
        raw_amount = getattr(intent, "amount_received", None) or getattr(intent, "amount", None)
        status = INTENT_STATUS_MAP.get(str(getattr(intent, "status", "")), TransactionStatus.PENDING)
        paid_at = None
        if status == TransactionStatus.COMPLETED:
            paid_at = self._parse_timestamp(getattr(intent, "created", None))
        return PaymentVerification(
            transaction_id=str(intent.id),
            status=status,
            amount=from_minor_units(int(raw_amount), currency) if raw_amount is not None else None,
            currency=currency or None,
            paid_at=paid_at,
            metadata=dict(getattr(intent, "metadata", None) or {}),
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str | None = None,
    ) -> RefundOutcome:
        refund_kwargs: Dict[str, Any] = {
            "payment_intent": transaction_id,
            "reason": "requested_by_customer",
        }
        if reason:
            refund_kwargs["metadata"] = {"reason": reason}
        if amount is not None:
            refund_kwargs["amount"] = to_minor_units(amount, currency or "USD")

        def _refund() -> Any:
            return stripe.Refund.create(api_key=self.config.api_secret, **refund_kwargs)

        refund = await self._call("REFUND", "stripe.Refund.create", _refund, transaction_id)
        refund_currency = normalize_currency(getattr(refund, "currency", "") or currency or "USD")
        refund_amount = getattr(refund, "amount", None)
        recorded = (
            from_minor_units(int(refund_amount), refund_currency)
            if refund_amount is not None
            else (amount or Decimal("0"))
        )
        status = RefundStatus.from_provider(getattr(refund, "status", None))
        return RefundOutcome(
            refund_id=str(getattr(refund, "id", "") or "") or None,
            status=status,
            amount=recorded,
            success=status != RefundStatus.FAILED,
            message="Refund processed successfully"
            if status != RefundStatus.FAILED
            else "Refund was declined",
        )

    async def cancel_payment(self, transaction_id: str) -> CancelOutcome:
        def _cancel() -> Any:
            return stripe.PaymentIntent.cancel(transaction_id, api_key=self.config.api_secret)

        await self._call("CANCEL", "stripe.PaymentIntent.cancel", _cancel, transaction_id)
        return CancelOutcome()

    async def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def parse_webhook(self, payload: bytes) -> WebhookNotification:
        event = self._load_webhook(payload)
        raw_event = self._require(event.get("type"), "type")
        obj = self._object(self._object(event.get("data"), "data").get("object"), "data.object")
        if not obj:
            raise MalformedWebhook("stripe webhook missing data.object", gateway=self.name)
        event_type = EVENT_MAP.get(raw_event, WebhookEventType.UNKNOWN)
        currency = normalize_currency(self._text(obj.get("currency"), "currency") or "")
        refund_id = None
        refund_status = None
        if raw_event == "charge.refunded":
            transaction_id = self._require(obj.get("payment_intent"), "payment_intent")
            refund_list = self._object(obj.get("refunds"), "refunds")
            refunds = self._array(refund_list.get("data"), "refunds.data")
            if refunds:
                latest = self._object(refunds[-1], "refunds.data[]")
                raw_amount = latest.get("amount")
                refund_id = self._text(latest.get("id"), "refund id")
                refund_status = RefundStatus.from_provider(
                    self._text(latest.get("status"), "refund status") or "succeeded"
                )
            else:
                raw_amount = obj.get("amount_refunded")
                refund_status = RefundStatus.SUCCEEDED
        elif raw_event in {"charge.refund.updated", "refund.updated"}:
            transaction_id = self._require(obj.get("payment_intent"), "payment_intent")
            raw_amount = obj.get("amount")
            refund_id = self._require(obj.get("id"), "refund id")
            refund_status = RefundStatus.from_provider(
                self._text(obj.get("status"), "refund status")
            )
            if refund_status == RefundStatus.FAILED:
                event_type = WebhookEventType.REFUND_FAILED
        elif raw_event.startswith("charge.dispute."):
            transaction_id = self._require(obj.get("payment_intent"), "payment_intent")
            raw_amount = obj.get("amount")
        else:
            transaction_id = self._require(obj.get("id"), "data.object.id")
            raw_amount = obj.get("amount_received") or obj.get("amount")
        amount = None
        if raw_amount is not None:
            if isinstance(raw_amount, bool) or not isinstance(raw_amount, (int, str)):
                raise MalformedWebhook("stripe webhook amount is invalid", gateway=self.name)
            try:
                amount = from_minor_units(int(raw_amount), currency)
            except (TypeError, ValueError) as exc:
                raise MalformedWebhook("stripe webhook amount is invalid", gateway=self.name) from exc
        status = EVENT_STATUS.get(event_type)
        return WebhookNotification(
            event_type=event_type,
            transaction_id=transaction_id,
            raw_event_type=raw_event,
            status=status,
            amount=amount,
            currency=currency or None,
            event_id=self._text(event.get("id"), "id"),
            refund_id=refund_id,
            refund_status=refund_status,
            paid_at=self._parse_timestamp(event.get("created"))
            if status == TransactionStatus.COMPLETED
            else None,
            metadata=dict(self._object(obj.get("metadata"), "metadata")),
        )
