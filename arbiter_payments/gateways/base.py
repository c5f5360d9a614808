from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping

import httpx

from arbiter_payments.config import GatewayConfig
from arbiter_payments.domain.enums import WebhookEventType
from arbiter_payments.domain.errors import (
    AlreadyFinalized,
    BelowMinimumAmount,
    GatewayConfigurationError,
    GatewayRejected,
    GatewayUnreachable,
    InvalidAmount,
    MalformedWebhook,
    PaymentError,
    TransactionNotRefundable,
    UnsupportedCurrency,
)
from arbiter_payments.domain.money import normalize_currency, quantize, to_decimal
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus

logger = logging.getLogger(__name__)


@dataclass
class PaymentCreation:
    """Normalized result of a successful payment creation."""

    transaction_id: str
    status: TransactionStatus
    amount: Decimal
    currency: str
    payment_url: str | None = None
    client_secret: str | None = None
    message: str = "Payment created successfully"
    success: bool = True


@dataclass
class PaymentVerification:
    """Normalized provider view of a payment."""

    transaction_id: str
    status: TransactionStatus
    amount: Decimal | None = None
    currency: str | None = None
    paid_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # cumulative amount the provider reports as refunded, when it says
    refunded_amount: Decimal | None = None
    success: bool = True


@dataclass
class RefundOutcome:
    """Normalized result for provider refund attempts."""

    refund_id: str | None
    status: RefundStatus
    amount: Decimal
    message: str = "Refund processed successfully"
    success: bool = True


@dataclass
class CancelOutcome:
    status: TransactionStatus = TransactionStatus.CANCELLED
    message: str = "Payment cancelled successfully"
    success: bool = True


@dataclass
class WebhookNotification:
    """Gateway-neutral view of an authenticated webhook payload."""

    event_type: WebhookEventType
    transaction_id: str
    raw_event_type: str
    status: TransactionStatus | None = None
    amount: Decimal | None = None
    currency: str | None = None
    event_id: str | None = None
    refund_id: str | None = None
    refund_status: RefundStatus | None = None
    paid_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Contract every payment gateway client implements.

    Subclasses declare their name, signature header, currencies, minimum
    amounts and the configuration fields they cannot run without. Provider
    failures are translated into :mod:`arbiter_payments.domain.errors`
    before leaving the client.
    """

    name: str = ""
    signature_header: str = ""
    supported_currencies: tuple[str, ...] = ()
    minimum_amounts: Dict[str, Decimal] = {}
    default_minimum = Decimal("1.00")
    required_settings: tuple[str, ...] = ()
    # provider error code -> error class, checked against 4xx response bodies
    error_codes: Dict[str, type[PaymentError]] = {}

    def __init__(
        self,
        config: GatewayConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        missing = [
            setting
            for setting in self.required_settings
            if not str(getattr(config, setting, "") or "").strip()
        ]
        if missing:
            msg = f"{self.name} gateway missing configuration: {', '.join(missing)}"
            raise GatewayConfigurationError(msg)
        self.config = config
        self.timeout = httpx.Timeout(config.timeout_seconds)
        self._transport = transport

    # Contract

    @abstractmethod
    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        order_id: int,
        customer_email: str | None = None,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> PaymentCreation:
        """Create a payment at the provider.

        Raises UnsupportedCurrency / BelowMinimumAmount before any network
        call, GatewayUnreachable on network failure or timeout.
        """

    @abstractmethod
    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        """Read the provider's current view of the payment without mutating it."""

    async def capture_payment(self, transaction_id: str) -> PaymentVerification:
        """Finalize an approved payment; providers without a capture step just verify."""
        return await self.verify_payment(transaction_id)

    @abstractmethod
    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        currency: str | None = None,
    ) -> RefundOutcome:
        """Refund ``amount`` (None = full remaining amount)."""

    @abstractmethod
    async def cancel_payment(self, transaction_id: str) -> CancelOutcome:
        """Cancel a payment the customer has not completed."""

    @abstractmethod
    async def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """Return True only if ``signature`` authenticates the exact ``payload`` bytes."""

    @abstractmethod
    def parse_webhook(self, payload: bytes) -> WebhookNotification:
        """Parse an authenticated payload; raise MalformedWebhook rather than guess."""

    def extract_signature(self, headers: Mapping[str, str]) -> str | None:
        return headers.get(self.signature_header)

    # Metadata

    def get_gateway_name(self) -> str:
        return self.name

    def get_supported_currencies(self) -> list[str]:
        return list(self.supported_currencies)

    def supports_currency(self, currency: str) -> bool:
        return normalize_currency(currency) in self.supported_currencies

    def get_minimum_amount(self, currency: str) -> Decimal:
        return self.minimum_amounts.get(normalize_currency(currency), self.default_minimum)

    def validate_amount(self, amount: Decimal, currency: str) -> str:
        """Check amount and currency against the gateway limits; return the ISO code."""
        code = normalize_currency(currency)
        if amount is None or amount <= 0:
            raise InvalidAmount(gateway=self.name)
        if not self.supports_currency(code):
            raise UnsupportedCurrency(
                f"{self.name} does not support {code or 'empty currency'}",
                gateway=self.name,
                currency=code,
            )
        minimum = self.get_minimum_amount(code)
        if quantize(amount, code) < minimum:
            raise BelowMinimumAmount(
                f"{self.name} minimum for {code} is {minimum}",
                gateway=self.name,
                currency=code,
                minimum=minimum,
            )
        return code

    # HTTP helpers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        headers: Dict[str, str] | None = None,
        json: Any = None,
        data: Dict[str, str] | None = None,
        auth: Any = None,
        transaction_id: str | None = None,
    ) -> httpx.Response:
        """Send one provider request; network failures and 5xx become GatewayUnreachable."""
        started = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.request(
                    method, url, headers=headers, json=json, data=data, auth=auth
                )
        except httpx.TimeoutException as exc:
            self._log_call(operation, method, url, None, started, transaction_id, error="timeout")
            msg = f"{self.name} timed out during {operation.lower()}"
            raise GatewayUnreachable(msg, gateway=self.name) from exc
        except httpx.TransportError as exc:
            self._log_call(operation, method, url, None, started, transaction_id, error=str(exc))
            msg = f"{self.name} unreachable during {operation.lower()}"
            raise GatewayUnreachable(msg, gateway=self.name) from exc
        self._log_call(operation, method, url, resp.status_code, started, transaction_id)
        if resp.status_code >= 500 or resp.status_code == 429:
            msg = f"{self.name} returned {resp.status_code} during {operation.lower()}"
            raise GatewayUnreachable(msg, gateway=self.name, response_code=resp.status_code)
        if resp.status_code >= 400:
            raise self._rejection(operation, resp)
        return resp

    def _rejection(self, operation: str, resp: httpx.Response) -> PaymentError:
        body = self._json_body(resp)
        message = str(
            body.get("message")
            or body.get("error_description")
            or body.get("detail")
            or body.get("error")
            or f"{self.name} {operation.lower()} failed ({resp.status_code})"
        )
        codes = [str(body.get("code") or body.get("name") or "").upper()]
        for detail in body.get("details") or []:
            if isinstance(detail, dict) and detail.get("issue"):
                codes.append(str(detail["issue"]).upper())
        error_cls = next((self.error_codes[c] for c in codes if c in self.error_codes), None)
        if error_cls is None and resp.status_code == 409:
            error_cls = AlreadyFinalized if operation == "CANCEL" else TransactionNotRefundable
        if error_cls is None:
            error_cls = GatewayRejected
        return error_cls(message, gateway=self.name, response_code=resp.status_code)

    @staticmethod
    def _json_body(resp: httpx.Response) -> Dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError:
            return {"text": resp.text[:512]}
        return payload if isinstance(payload, dict) else {"data": payload}

    def _log_call(
        self,
        operation: str,
        method: str,
        url: str,
        response_status: int | None,
        started: float,
        transaction_id: str | None,
        *,
        error: str | None = None,
    ) -> None:
        latency_ms = int((time.monotonic() - started) * 1000)
        extra = {
            "gateway": self.name,
            "operation": operation,
            "method": method,
            "endpoint": url,
            "response_code": response_status,
            "latency_ms": latency_ms,
            "gateway_transaction_id": transaction_id or "",
        }
        if error:
            logger.warning("gateway call failed", extra={**extra, "error": error})
        else:
            logger.info("gateway call", extra=extra)

    # Webhook helpers

    def _load_webhook(self, payload: bytes) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError, UnicodeDecodeError) as exc:
            raise MalformedWebhook(f"{self.name} webhook is not valid JSON", gateway=self.name) from exc
        if not isinstance(data, dict):
            raise MalformedWebhook(f"{self.name} webhook must be a JSON object", gateway=self.name)
        return data

    def _require(self, value: Any, what: str) -> str:
        text = self._text(value, what)
        if not text:
            raise MalformedWebhook(f"{self.name} webhook missing {what}", gateway=self.name)
        return text

    def _malformed(self, what: str, expected: str) -> MalformedWebhook:
        return MalformedWebhook(f"{self.name} webhook {what} must be {expected}", gateway=self.name)

    def _text(self, value: Any, what: str) -> str | None:
        if value is None:
            return None
        if isinstance(value, (dict, list, bool)):
            raise self._malformed(what, "a string")
        return str(value).strip() or None

    def _object(self, value: Any, what: str) -> Dict[str, Any]:
        """Nested JSON object; absent means empty, any other type is malformed."""
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise self._malformed(what, "an object")
        return value

    def _array(self, value: Any, what: str) -> list[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise self._malformed(what, "a list")
        return value

    def _amount(self, value: Any, what: str) -> Decimal | None:
        if value is None or value == "":
            return None
        if isinstance(value, (dict, list, bool)):
            raise self._malformed(what, "a number")
        amount = to_decimal(value)
        if amount is None or not amount.is_finite():
            raise self._malformed(what, "a number")
        return amount

    @staticmethod
    def _parse_timestamp(value: Any) -> datetime | None:
        if isinstance(value, (int, float)):
            try:
                return datetime.fromtimestamp(float(value), tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        if isinstance(value, str) and value:
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return None

