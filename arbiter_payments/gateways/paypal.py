from __future__ import annotations

import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Mapping

import httpx

from arbiter_payments.config import GatewayConfig
from arbiter_payments.domain.enums import WebhookEventType
from arbiter_payments.domain.errors import (
    AlreadyFinalized,
    AlreadyRefunded,
    GatewayRejected,
    MalformedWebhook,
    RefundExceedsAmount,
    TransactionNotRefundable,
)
from arbiter_payments.domain.money import format_amount, normalize_currency, to_decimal
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

ORDER_STATUS_MAP: Dict[str, TransactionStatus] = {
    "COMPLETED": TransactionStatus.COMPLETED,
    "VOIDED": TransactionStatus.CANCELLED,
}

CAPTURE_STATUS_MAP: Dict[str, TransactionStatus] = {
    "COMPLETED": TransactionStatus.COMPLETED,
    "DECLINED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
    "PARTIALLY_REFUNDED": TransactionStatus.PARTIALLY_REFUNDED,
    "REFUNDED": TransactionStatus.REFUNDED,
}

EVENT_MAP: Dict[str, WebhookEventType] = {
    "CHECKOUT.ORDER.APPROVED": WebhookEventType.PAYMENT_APPROVED,
    "CHECKOUT.ORDER.COMPLETED": WebhookEventType.PAYMENT_COMPLETED,
    "CHECKOUT.ORDER.VOIDED": WebhookEventType.PAYMENT_CANCELLED,
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.PAYMENT_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.PENDING": WebhookEventType.PAYMENT_PENDING,
    "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.REFUND_COMPLETED,
    "PAYMENT.CAPTURE.REVERSED": WebhookEventType.PAYMENT_REVERSED,
    "PAYMENT.AUTHORIZATION.VOIDED": WebhookEventType.PAYMENT_CANCELLED,
    "PAYMENT.SALE.COMPLETED": WebhookEventType.PAYMENT_COMPLETED,
    "PAYMENT.SALE.DENIED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.SALE.PENDING": WebhookEventType.PAYMENT_PENDING,
    "PAYMENT.SALE.REFUNDED": WebhookEventType.REFUND_COMPLETED,
    "PAYMENT.SALE.REVERSED": WebhookEventType.PAYMENT_REVERSED,
}

EVENT_STATUS: Dict[WebhookEventType, TransactionStatus] = {
    WebhookEventType.PAYMENT_COMPLETED: TransactionStatus.COMPLETED,
    WebhookEventType.PAYMENT_FAILED: TransactionStatus.FAILED,
    WebhookEventType.PAYMENT_CANCELLED: TransactionStatus.CANCELLED,
    WebhookEventType.PAYMENT_PENDING: TransactionStatus.PENDING,
}

# Transmission headers PayPal signs every webhook delivery with
TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}


class PayPalGateway(PaymentGateway):
    """PayPal Checkout using Orders v2.

    - create_payment(): creates an order (intent CAPTURE) and returns its approve link
    - capture_payment(): captures an approved order
    - webhooks are authenticated by PayPal's verify-webhook-signature API
    """

    name = "paypal"
    signature_header = "PAYPAL-TRANSMISSION-SIG"
    supported_currencies = ("PHP", "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "SGD", "HKD", "CNY")
    minimum_amounts = {
        "PHP": Decimal("50.00"),
        "USD": Decimal("1.00"),
        "EUR": Decimal("1.00"),
        "GBP": Decimal("1.00"),
        "CAD": Decimal("1.00"),
        "AUD": Decimal("1.00"),
        "SGD": Decimal("1.00"),
        "JPY": Decimal("100"),
        "HKD": Decimal("10.00"),
        "CNY": Decimal("10.00"),
    }
    required_settings = ("api_base_url", "api_key", "api_secret", "webhook_secret")
    error_codes = {
        "ORDER_ALREADY_CAPTURED": AlreadyFinalized,
        "CAPTURE_FULLY_REFUNDED": AlreadyRefunded,
        "REFUND_AMOUNT_EXCEEDED": RefundExceedsAmount,
        "REFUND_NOT_ALLOWED": TransactionNotRefundable,
        "CAPTURE_NOT_REFUNDABLE": TransactionNotRefundable,
    }

    def __init__(
        self,
        config: GatewayConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config, transport=transport)
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        resp = await self._send(
            "TOKEN",
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.config.api_key, self.config.api_secret),
        )
        payload = self._json_body(resp)
        token = payload.get("access_token")
        if not token:
            raise GatewayRejected("PayPal did not return an access token", gateway=self.name)
        expires_in = int(payload.get("expires_in") or 0)
        self._access_token = str(token)
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        return self._access_token

    async def _headers(self, request_id: str | None = None) -> Dict[str, str]:
        access_token = await self._get_access_token()
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def _get_order(self, order_id: str) -> Dict[str, Any]:
        resp = await self._send(
            "VERIFY",
            "GET",
            f"/v2/checkout/orders/{order_id}",
            headers=await self._headers(),
            transaction_id=order_id,
        )
        return self._json_body(resp)

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
        purchase_unit: Dict[str, Any] = {
            "reference_id": f"ORD-{order_id}",
            "custom_id": str(order_id),
            "amount": {"currency_code": code, "value": format_amount(amount, code)},
        }
        if description:
            purchase_unit["description"] = description[:127]
        payload: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "return_url": self.config.return_url,
                "cancel_url": self.config.cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        if customer_email:
            payload["payer"] = {"email_address": customer_email}
        resp = await self._send(
            "CREATE", "POST", "/v2/checkout/orders", headers=await self._headers(), json=payload
        )
        data = self._json_body(resp)
        paypal_order_id = str(data.get("id") or "")
        approve_url = next(
            (
                link.get("href")
                for link in data.get("links", [])
                if link.get("rel") in {"approve", "payer-action"}
            ),
            None,
        )
        if not paypal_order_id or not approve_url:
            raise GatewayRejected("PayPal approve URL not found", gateway=self.name)
        logger.info(
            "paypal order created",
            extra={"order_id": order_id, "gateway_transaction_id": paypal_order_id},
        )
        return PaymentCreation(
            transaction_id=paypal_order_id,
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=code,
            payment_url=approve_url,
        )

    def _verification_from_order(self, order_id: str, data: Dict[str, Any]) -> PaymentVerification:
        units = data.get("purchase_units") or [{}]
        unit = units[0] if isinstance(units[0], dict) else {}
        captures = ((unit.get("payments") or {}).get("captures")) or []
        capture = captures[-1] if captures else {}
        order_status = str(data.get("status") or "").upper()
        if capture:
            status = CAPTURE_STATUS_MAP.get(
                str(capture.get("status") or "").upper(), TransactionStatus.PENDING
            )
        else:
            status = ORDER_STATUS_MAP.get(order_status, TransactionStatus.PENDING)
        amount_info = capture.get("amount") or unit.get("amount") or {}
        paid_at = None
        if status in {TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.REFUNDED}:
            paid_at = self._parse_timestamp(capture.get("create_time") or data.get("update_time"))
        metadata: Dict[str, Any] = {"order_status": order_status}
        if capture.get("id"):
            metadata["capture_id"] = capture["id"]
        refunds = (unit.get("payments") or {}).get("refunds") or []
        refunded_amount = None
        if refunds:
            refunded_amount = sum(
                (
                    to_decimal((refund.get("amount") or {}).get("value")) or Decimal("0")
                    for refund in refunds
                    if RefundStatus.from_provider(refund.get("status")) != RefundStatus.FAILED
                ),
                Decimal("0"),
            )
        return PaymentVerification(
            transaction_id=str(data.get("id") or order_id),
            status=status,
            amount=to_decimal(amount_info.get("value")),
            currency=amount_info.get("currency_code"),
            paid_at=paid_at,
            metadata=metadata,
            refunded_amount=refunded_amount,
        )

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        data = await self._get_order(transaction_id)
        return self._verification_from_order(transaction_id, data)

    async def capture_payment(self, transaction_id: str) -> PaymentVerification:
        """Capture a PayPal order by ID; an already captured order is just re-read."""
        try:
            resp = await self._send(
                "CAPTURE",
                "POST",
                f"/v2/checkout/orders/{transaction_id}/capture",
                headers=await self._headers(request_id=f"capture-{transaction_id}"),
                json={},
                transaction_id=transaction_id,
            )
        except AlreadyFinalized:
            return await self.verify_payment(transaction_id)
        data = self._json_body(resp)
        logger.info(
            "paypal capture status",
            extra={"gateway_transaction_id": transaction_id, "status": data.get("status")},
        )
        return self._verification_from_order(transaction_id, data)

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str | None = None,
    ) -> RefundOutcome:
        verification = await self.verify_payment(transaction_id)
        capture_id = verification.metadata.get("capture_id")
        if not capture_id:
            raise TransactionNotRefundable("PayPal order has no capture to refund", gateway=self.name)
        payload: Dict[str, Any] = {}
        if amount is not None:
            code = normalize_currency(currency or verification.currency or "USD")
            payload["amount"] = {"value": format_amount(amount, code), "currency_code": code}
        if reason:
            payload["note_to_payer"] = reason[:255]
        resp = await self._send(
            "REFUND",
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            headers=await self._headers(),
            json=payload,
            transaction_id=transaction_id,
        )
        data = self._json_body(resp)
        refunded = to_decimal((data.get("amount") or {}).get("value"))
        status = RefundStatus.from_provider(data.get("status"))
        return RefundOutcome(
            refund_id=str(data.get("id") or "") or None,
            status=status,
            amount=refunded if refunded is not None else (amount or Decimal("0")),
            success=status != RefundStatus.FAILED,
        )

    async def cancel_payment(self, transaction_id: str) -> CancelOutcome:
        # Uncaptured orders cannot be voided; they expire on PayPal's side
        data = await self._get_order(transaction_id)
        order_status = str(data.get("status") or "").upper()
        if order_status in {"COMPLETED", "APPROVED"}:
            raise AlreadyFinalized(
                f"PayPal order is {order_status.lower()}", gateway=self.name
            )
        return CancelOutcome()

    def extract_signature(self, headers: Mapping[str, str]) -> str | None:
        values = {key: headers.get(header) for key, header in TRANSMISSION_HEADERS.items()}
        if not values["transmission_sig"]:
            return None
        return json.dumps(values, sort_keys=True)

    async def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        try:
            transmission = json.loads(signature)
            event = json.loads(payload)
        except (TypeError, ValueError):
            return False
        if not isinstance(transmission, dict) or not all(transmission.values()):
            return False
        body = {**transmission, "webhook_id": self.config.webhook_secret, "webhook_event": event}
        try:
            resp = await self._send(
                "VERIFY_WEBHOOK",
                "POST",
                "/v1/notifications/verify-webhook-signature",
                headers=await self._headers(),
                json=body,
            )
        except GatewayRejected:
            return False
        return str(self._json_body(resp).get("verification_status") or "") == "SUCCESS"

    def parse_webhook(self, payload: bytes) -> WebhookNotification:
        event = self._load_webhook(payload)
        raw_event = self._require(event.get("event_type"), "event_type")
        resource = self._object(event.get("resource"), "resource")
        if not resource:
            raise MalformedWebhook("paypal webhook missing resource", gateway=self.name)
        event_type = EVENT_MAP.get(raw_event, WebhookEventType.UNKNOWN)
        supplementary = self._object(resource.get("supplementary_data"), "supplementary_data")
        related = self._object(supplementary.get("related_ids"), "related_ids")
        refund_id = None
        refund_status = None
        if raw_event.startswith("CHECKOUT.ORDER."):
            transaction_id = self._require(resource.get("id"), "resource.id")
        elif raw_event.startswith("PAYMENT.SALE."):
            transaction_id = self._require(resource.get("parent_payment"), "resource.parent_payment")
        elif event_type == WebhookEventType.REFUND_COMPLETED:
            transaction_id = self._require(related.get("order_id"), "related order_id")
        else:
            transaction_id = self._require(
                related.get("order_id") or resource.get("id"), "related order_id"
            )
        if event_type == WebhookEventType.REFUND_COMPLETED:
            refund_id = self._text(resource.get("id"), "resource.id")
            refund_status = RefundStatus.from_provider(
                self._text(resource.get("status"), "resource.status") or "completed"
            )
        amount_info = self._object(resource.get("amount"), "resource.amount")
        if not amount_info:
            units = self._array(resource.get("purchase_units"), "purchase_units")
            if units:
                unit = self._object(units[0], "purchase_units[0]")
                amount_info = self._object(unit.get("amount"), "purchase_units[0].amount")
        status = EVENT_STATUS.get(event_type)
        return WebhookNotification(
            event_type=event_type,
            transaction_id=transaction_id,
            raw_event_type=raw_event,
            status=status,
            amount=self._amount(amount_info.get("value") or amount_info.get("total"), "amount"),
            currency=self._text(
                amount_info.get("currency_code") or amount_info.get("currency"), "currency"
            ),
            event_id=self._text(event.get("id"), "id"),
            refund_id=refund_id,
            refund_status=refund_status,
            paid_at=self._parse_timestamp(resource.get("create_time"))
            if status == TransactionStatus.COMPLETED
            else None,
            metadata={
                "resource_id": self._text(resource.get("id"), "resource.id"),
                "resource_status": self._text(resource.get("status"), "resource.status"),
            },
        )
