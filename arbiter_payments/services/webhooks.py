from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

import httpx

from arbiter_payments.domain.enums import WebhookEventType
from arbiter_payments.domain.errors import (
    DuplicateWebhook,
    GatewayDisabled,
    GatewayUnreachable,
    MalformedWebhook,
    PaymentError,
    SignatureInvalid,
    StateConflict,
    TransactionStoreError,
    UnknownGateway,
    UnknownTransaction,
)
from arbiter_payments.domain.models import WebhookEvent
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus
from arbiter_payments.gateways.base import PaymentGateway, WebhookNotification
from arbiter_payments.gateways.factory import GatewayRegistry
from arbiter_payments.repositories.base import TransactionStore
from arbiter_payments.utils.locks import KeyedLock

from .orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

STATUS_EVENTS: Dict[WebhookEventType, TransactionStatus] = {
    WebhookEventType.PAYMENT_COMPLETED: TransactionStatus.COMPLETED,
    WebhookEventType.PAYMENT_FAILED: TransactionStatus.FAILED,
    WebhookEventType.PAYMENT_CANCELLED: TransactionStatus.CANCELLED,
}

REFUND_UPDATE_EVENTS = frozenset({WebhookEventType.REFUND_UPDATED, WebhookEventType.REFUND_FAILED})


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def _ok(message: str = "Webhook processed") -> WebhookResult:
    return WebhookResult(200, {"success": True, "message": message})


class WebhookDispatcher:
    """Authenticate, de-duplicate and apply inbound gateway notifications.

    Every delivery is persisted, including rejected ones. Responses follow
    what providers expect: 4xx for requests that will never succeed, 200 for
    anything handled or deliberately ignored, and 500 only when a retry could
    help (store or gateway unavailable).
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        registry: GatewayRegistry,
        store: TransactionStore,
    ) -> None:
        self.orchestrator = orchestrator
        self.registry = registry
        self.store = store
        self._locks = KeyedLock()

    async def dispatch(
        self, gateway_name: str, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookResult:
        try:
            gateway = self.registry.get(gateway_name)
        except (UnknownGateway, GatewayDisabled) as exc:
            logger.warning("webhook for unavailable gateway", extra={"gateway": gateway_name})
            return WebhookResult(404, {"error": exc.message})
        try:
            return await self._dispatch(gateway, payload, httpx.Headers(list(headers.items())))
        except TransactionStoreError as exc:
            logger.error(
                "webhook store failure",
                extra={"gateway": gateway.name, "error": exc.message},
                exc_info=True,
            )
            return WebhookResult(500, {"error": "Webhook processing failed"})

    async def _dispatch(
        self, gateway: PaymentGateway, payload: bytes, headers: httpx.Headers
    ) -> WebhookResult:
        signature = gateway.extract_signature(headers)
        event = WebhookEvent(
            gateway=gateway.name,
            raw_payload=payload.decode("utf-8", errors="replace"),
            signature_header=signature,
        )
        try:
            verified = await gateway.verify_webhook_signature(payload, signature)
        except GatewayUnreachable as exc:
            event.error = exc.kind
            self.store.record_webhook_event(event)
            logger.error("webhook signature check unavailable", extra={"gateway": gateway.name})
            return WebhookResult(500, {"error": "Webhook processing failed"})
        if not verified:
            event.error = SignatureInvalid.__name__
            self.store.record_webhook_event(event)
            logger.error("webhook signature invalid", extra={"gateway": gateway.name})
            return WebhookResult(400, {"error": "Invalid signature"})

        try:
            notification = gateway.parse_webhook(payload)
        except MalformedWebhook as exc:
            event.error = MalformedWebhook.__name__
            self.store.record_webhook_event(event)
            logger.warning(
                "webhook payload malformed", extra={"gateway": gateway.name, "error": exc.message}
            )
            return WebhookResult(400, {"error": exc.message})

        event.event_type = notification.event_type.value
        event.gateway_transaction_id = notification.transaction_id
        log_extra = {
            "gateway": gateway.name,
            "gateway_transaction_id": notification.transaction_id,
            "event_type": notification.event_type,
        }

        async with self._locks.hold((gateway.name, notification.transaction_id)):
            if self.store.find_processed_webhook(
                gateway.name, notification.transaction_id, notification.event_type.value
            ):
                return self._duplicate(event, log_extra)

            event = self.store.record_webhook_event(event)
            try:
                await self._apply(gateway, notification)
            except UnknownTransaction:
                event.error = UnknownTransaction.__name__
                self.store.update_webhook_event(event)
                logger.warning("webhook for unknown transaction", extra=log_extra)
                return _ok("Unknown transaction")
            except StateConflict as exc:
                event.processed = True
                event.error = exc.kind
                try:
                    self.store.update_webhook_event(event)
                except DuplicateWebhook:
                    return self._duplicate(event, log_extra)
                logger.warning("webhook state conflict", extra={**log_extra, "error": exc.message})
                return _ok("Webhook acknowledged")
            except (TransactionStoreError, GatewayUnreachable) as exc:
                event.error = exc.kind
                try:
                    self.store.update_webhook_event(event)
                except TransactionStoreError:
                    logger.error("webhook event update failed", extra=log_extra)
                logger.error("webhook processing failed", extra={**log_extra, "error": exc.message})
                return WebhookResult(500, {"error": "Webhook processing failed"})
            except PaymentError as exc:
                event.error = exc.kind
                self.store.update_webhook_event(event)
                logger.warning("webhook rejected by gateway", extra={**log_extra, "error": exc.message})
                return _ok("Webhook acknowledged")
            try:
                self.store.mark_webhook_processed(event.id)
            except DuplicateWebhook:
                # another worker processed the same delivery concurrently
                return self._duplicate(event, log_extra)
        logger.info("webhook processed", extra=log_extra)
        return _ok()

    def _duplicate(self, event: WebhookEvent, log_extra: Dict[str, Any]) -> WebhookResult:
        event.processed = False
        event.error = "Duplicate"
        if event.id is None:
            self.store.record_webhook_event(event)
        else:
            self.store.update_webhook_event(event)
        logger.info("duplicate webhook ignored", extra=log_extra)
        return _ok("Duplicate webhook ignored")

    async def _apply(self, gateway: PaymentGateway, notification: WebhookNotification) -> None:
        transaction = self.orchestrator.resolve_gateway_reference(
            gateway.name, notification.transaction_id
        )
        event_type = notification.event_type
        reason = f"webhook {notification.raw_event_type}"
        if event_type in STATUS_EVENTS:
            await self.orchestrator.apply_status(
                transaction.id,
                STATUS_EVENTS[event_type],
                paid_at=notification.paid_at,
                reason=reason,
            )
        elif event_type == WebhookEventType.PAYMENT_APPROVED:
            await self.orchestrator.capture_payment(transaction.id)
        elif event_type == WebhookEventType.REFUND_COMPLETED:
            await self.orchestrator.record_gateway_refund(
                transaction.id,
                notification.amount,
                refund_id=notification.refund_id,
                reason=reason,
                status=notification.refund_status,
            )
        elif event_type in REFUND_UPDATE_EVENTS:
            if not notification.refund_id:
                raise MalformedWebhook(
                    f"{gateway.name} refund update without a refund id", gateway=gateway.name
                )
            status = notification.refund_status or (
                RefundStatus.FAILED
                if event_type == WebhookEventType.REFUND_FAILED
                else RefundStatus.PENDING
            )
            await self.orchestrator.update_gateway_refund(
                transaction.id,
                notification.refund_id,
                status,
                amount=notification.amount,
                reason=reason,
            )
        elif event_type == WebhookEventType.PAYMENT_REVERSED:
            await self.orchestrator.record_reversal(transaction.id, reason=reason)
        else:
            logger.info(
                "webhook acknowledged without transition",
                extra={
                    "gateway": gateway.name,
                    "transaction_id": transaction.id,
                    "event_type": notification.raw_event_type,
                },
            )
