from __future__ import annotations

import asyncio
import pathlib
import sys
from decimal import Decimal

import httpx
import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from arbiter_payments.config import Settings
from arbiter_payments.domain.errors import (
    AlreadyFinalized,
    AlreadyRefunded,
    BelowMinimumAmount,
    DuplicateGatewayReference,
    DuplicatePendingPayment,
    DuplicateRefund,
    DuplicateWebhook,
    GatewayDisabled,
    GatewayUnreachable,
    InvalidAmount,
    InvalidStateTransition,
    RefundExceedsAmount,
    StaleTransaction,
    TransactionNotRefundable,
    UnknownGateway,
)
from arbiter_payments.domain.models import PaymentOrder, RefundRecord, Transaction, WebhookEvent
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus
from arbiter_payments.gateways.factory import GatewayRegistry
from arbiter_payments.repositories.memory_store import InMemoryTransactionStore
from arbiter_payments.services.orchestrator import PaymentOrchestrator

from conftest import FakeProviders, RecordingNotificationSink, RecordingOrderSink


def _order(order_id: int = 1001, amount: str = "250", currency: str = "PHP") -> PaymentOrder:
    return PaymentOrder(order_id=order_id, amount=Decimal(amount), currency=currency)


async def _completed_gcash(orchestrator: PaymentOrchestrator) -> int:
    created = await orchestrator.initiate_payment(_order(), "gcash")
    await orchestrator.apply_status(created.transaction_id, TransactionStatus.COMPLETED)
    return created.transaction_id


def _refund_route(providers: FakeProviders) -> None:
    def refund(request: httpx.Request) -> httpx.Response:
        count = len(providers.calls("POST", "/v1/refunds"))
        return httpx.Response(200, json={"refund_id": f"rf_{count}", "status": "success"})

    providers.add("POST", "/v1/refunds", refund)


def test_create_gcash_payment_awaits_redirect(
    orchestrator: PaymentOrchestrator, store: InMemoryTransactionStore
) -> None:
    response = asyncio.run(orchestrator.initiate_payment(_order(), "gcash"))
    assert response.success is True
    assert response.status == TransactionStatus.AWAITING_REDIRECT
    assert response.payment_url == "https://pay.gcash.test/gc_txn_1"
    stored = store.get(response.transaction_id)
    assert stored is not None
    assert stored.amount == Decimal("250.00")
    assert stored.idempotency_key == "order-1001-gcash-1"
    assert store.get_by_gateway_reference("gcash", "gc_txn_1").id == stored.id


def test_below_minimum_persists_nothing(
    orchestrator: PaymentOrchestrator, store: InMemoryTransactionStore, providers: FakeProviders
) -> None:
    with pytest.raises(BelowMinimumAmount):
        asyncio.run(orchestrator.initiate_payment(_order(amount="0.50"), "gcash"))
    assert store.by_id == {}
    assert providers.requests == []


def test_gateway_timeout_persists_nothing(
    orchestrator: PaymentOrchestrator, store: InMemoryTransactionStore, providers: FakeProviders
) -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timeout", request=request)

    providers.add("POST", "/v1/payments", timeout)
    with pytest.raises(GatewayUnreachable):
        asyncio.run(orchestrator.initiate_payment(_order(), "gcash"))
    assert store.by_id == {}


def test_unknown_and_disabled_gateways(
    cfg: Settings, store: InMemoryTransactionStore, registry: GatewayRegistry
) -> None:
    orchestrator = PaymentOrchestrator(store, registry, cfg=cfg)
    with pytest.raises(UnknownGateway):
        asyncio.run(orchestrator.initiate_payment(_order(), "bitcoin"))

    without_maya = GatewayRegistry({"gcash": registry.get("gcash")})
    orchestrator = PaymentOrchestrator(store, without_maya, cfg=cfg)
    with pytest.raises(GatewayDisabled):
        asyncio.run(orchestrator.initiate_payment(_order(), "maya"))


def test_duplicate_pending_payment_rejected(orchestrator: PaymentOrchestrator) -> None:
    asyncio.run(orchestrator.initiate_payment(_order(), "gcash"))
    with pytest.raises(DuplicatePendingPayment):
        asyncio.run(orchestrator.initiate_payment(_order(), "gcash"))


def test_new_attempt_allowed_after_failure(
    orchestrator: PaymentOrchestrator, store: InMemoryTransactionStore
) -> None:
    async def scenario() -> int:
        first = await orchestrator.initiate_payment(_order(), "gcash")
        await orchestrator.apply_status(first.transaction_id, TransactionStatus.FAILED)
        second = await orchestrator.initiate_payment(_order(), "gcash")
        return second.transaction_id

    second_id = asyncio.run(scenario())
    assert store.get(second_id).idempotency_key == "order-1001-gcash-2"


def test_idempotency_key_returns_existing_payment(
    orchestrator: PaymentOrchestrator, providers: FakeProviders
) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        first = await orchestrator.initiate_payment(_order(), "gcash", idempotency_key="abc")
        second = await orchestrator.initiate_payment(_order(), "gcash", idempotency_key="abc")
        return first, second

    first, second = asyncio.run(scenario())
    assert first.transaction_id == second.transaction_id
    assert second.message == "Existing payment returned"
    assert len(providers.calls("POST", "/v1/payments")) == 1


def test_confirm_payment_applies_gateway_status(
    orchestrator: PaymentOrchestrator,
    providers: FakeProviders,
    order_sink: RecordingOrderSink,
) -> None:
    providers.json("GET", "/v1/payments/gc_txn_1", {"transaction_id": "gc_txn_1", "status": "paid"})

    async def scenario():  # type: ignore[no-untyped-def]
        created = await orchestrator.initiate_payment(_order(), "gcash")
        first = await orchestrator.confirm_payment(created.transaction_id)
        second = await orchestrator.confirm_payment(created.transaction_id)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status == TransactionStatus.COMPLETED
    assert first.paid_at is not None
    assert second.status == TransactionStatus.COMPLETED
    assert len(order_sink.calls) == 1


def test_confirm_payment_retries_verify(
    orchestrator: PaymentOrchestrator, providers: FakeProviders
) -> None:
    attempts: list[int] = []

    def flaky(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(502, json={"message": "bad gateway"})
        return httpx.Response(200, json={"status": "paid"})

    providers.add("GET", "/v1/payments/gc_txn_1", flaky)

    async def scenario():  # type: ignore[no-untyped-def]
        created = await orchestrator.initiate_payment(_order(), "gcash")
        return await orchestrator.confirm_payment(created.transaction_id)

    snapshot = asyncio.run(scenario())
    assert snapshot.status == TransactionStatus.COMPLETED
    assert len(attempts) == 3


def test_confirm_ignores_stale_gateway_status(
    orchestrator: PaymentOrchestrator, providers: FakeProviders
) -> None:
    providers.json("GET", "/v1/payments/gc_txn_1", {"status": "pending"})

    async def scenario():  # type: ignore[no-untyped-def]
        tid = await _completed_gcash(orchestrator)
        await orchestrator.refund(tid, Decimal("50"))
        return await orchestrator.confirm_payment(tid)

    _refund_route(providers)
    snapshot = asyncio.run(scenario())
    assert snapshot.status == TransactionStatus.PARTIALLY_REFUNDED


def test_refund_partial_then_excess_is_rejected(
    orchestrator: PaymentOrchestrator,
    providers: FakeProviders,
    store: InMemoryTransactionStore,
) -> None:
    _refund_route(providers)

    async def scenario() -> int:
        tid = await _completed_gcash(orchestrator)
        first = await orchestrator.refund(tid, Decimal("100"), "wrong order")
        assert first.success is True
        assert first.transaction_status == TransactionStatus.PARTIALLY_REFUNDED
        with pytest.raises(RefundExceedsAmount):
            await orchestrator.refund(tid, Decimal("200"))
        return tid

    tid = asyncio.run(scenario())
    transaction = store.get(tid)
    assert transaction.status == TransactionStatus.PARTIALLY_REFUNDED
    assert store.refunded_total(tid) == Decimal("100.00")
    assert len(providers.calls("POST", "/v1/refunds")) == 1


def test_full_refund_in_two_steps(
    orchestrator: PaymentOrchestrator,
    providers: FakeProviders,
    notification_sink: RecordingNotificationSink,
) -> None:
    _refund_route(providers)

    async def scenario():  # type: ignore[no-untyped-def]
        tid = await _completed_gcash(orchestrator)
        await orchestrator.refund(tid, Decimal("100"))
        last = await orchestrator.refund(tid)
        with pytest.raises(AlreadyRefunded):
            await orchestrator.refund(tid)
        return tid, last

    tid, last = asyncio.run(scenario())
    assert last.amount == Decimal("150.00")
    assert last.transaction_status == TransactionStatus.REFUNDED
    assert last.refunded_amount == Decimal("250.00")
    assert [event for _, event in notification_sink.events] == [
        "payment.completed",
        "payment.partially_refunded",
        "payment.refunded",
    ]


def test_failed_refund_leaves_status(
    orchestrator: PaymentOrchestrator, providers: FakeProviders, store: InMemoryTransactionStore
) -> None:
    providers.json("POST", "/v1/refunds", {"refund_id": "rf_x", "status": "failed"})

    async def scenario():  # type: ignore[no-untyped-def]
        tid = await _completed_gcash(orchestrator)
        return tid, await orchestrator.refund(tid, Decimal("50"))

    tid, response = asyncio.run(scenario())
    assert response.success is False
    assert response.status == RefundStatus.FAILED
    assert store.get(tid).status == TransactionStatus.COMPLETED
    assert store.refunded_total(tid) == Decimal("0")


def test_refund_pending_transaction_not_refundable(orchestrator: PaymentOrchestrator) -> None:
    async def scenario() -> None:
        created = await orchestrator.initiate_payment(_order(), "gcash")
        await orchestrator.refund(created.transaction_id)

    with pytest.raises(TransactionNotRefundable):
        asyncio.run(scenario())


def test_cancel_completed_is_already_finalized(
    orchestrator: PaymentOrchestrator, providers: FakeProviders, store: InMemoryTransactionStore
) -> None:
    async def scenario() -> int:
        tid = await _completed_gcash(orchestrator)
        with pytest.raises(AlreadyFinalized):
            await orchestrator.cancel(tid)
        return tid

    tid = asyncio.run(scenario())
    assert store.get(tid).status == TransactionStatus.COMPLETED
    assert providers.calls("POST", "/v1/payments/gc_txn_1/cancel") == []


def test_cancel_open_payment(
    orchestrator: PaymentOrchestrator, providers: FakeProviders, order_sink: RecordingOrderSink
) -> None:
    providers.json("POST", "/v1/payments/gc_txn_1/cancel", {"status": "cancelled"})

    async def scenario():  # type: ignore[no-untyped-def]
        created = await orchestrator.initiate_payment(_order(), "gcash")
        return await orchestrator.cancel(created.transaction_id)

    response = asyncio.run(scenario())
    assert response.status == TransactionStatus.CANCELLED
    assert order_sink.calls[-1][1:] == (TransactionStatus.AWAITING_REDIRECT, TransactionStatus.CANCELLED)


def test_apply_status_rejects_invalid_transition(orchestrator: PaymentOrchestrator) -> None:
    async def scenario() -> None:
        tid = await _completed_gcash(orchestrator)
        await orchestrator.apply_status(tid, TransactionStatus.FAILED)

    with pytest.raises(InvalidStateTransition):
        asyncio.run(scenario())


def test_sink_failure_does_not_roll_back(
    cfg: Settings, store: InMemoryTransactionStore, registry: GatewayRegistry
) -> None:
    class BrokenSink(RecordingOrderSink):
        async def payment_status_changed(self, transaction, previous_status):  # type: ignore[no-untyped-def]
            raise RuntimeError("orders service down")

    orchestrator = PaymentOrchestrator(store, registry, order_sink=BrokenSink(), cfg=cfg)
    tid = asyncio.run(_completed_gcash(orchestrator))
    assert store.get(tid).status == TransactionStatus.COMPLETED


def test_concurrent_completion_emits_once(
    orchestrator: PaymentOrchestrator, providers: FakeProviders, order_sink: RecordingOrderSink
) -> None:
    providers.json("GET", "/v1/payments/gc_txn_1", {"status": "paid"})

    async def scenario() -> None:
        created = await orchestrator.initiate_payment(_order(), "gcash")
        tid = created.transaction_id
        await asyncio.gather(
            orchestrator.confirm_payment(tid),
            orchestrator.apply_status(tid, TransactionStatus.COMPLETED),
            orchestrator.confirm_payment(tid),
        )

    asyncio.run(scenario())
    assert len(order_sink.calls) == 1


def test_store_compare_and_swap(store: InMemoryTransactionStore, orchestrator: PaymentOrchestrator) -> None:
    created = asyncio.run(orchestrator.initiate_payment(_order(), "gcash"))
    first = store.get(created.transaction_id)
    second = store.get(created.transaction_id)
    first.status = TransactionStatus.COMPLETED
    store.update_transaction(first, expected_status=TransactionStatus.AWAITING_REDIRECT)
    second.status = TransactionStatus.CANCELLED
    with pytest.raises(StaleTransaction):
        store.update_transaction(second, expected_status=TransactionStatus.AWAITING_REDIRECT)


def test_paypal_capture_completes_transaction(
    orchestrator: PaymentOrchestrator, providers: FakeProviders
) -> None:
    providers.json(
        "POST",
        "/v2/checkout/orders",
        {"id": "O-1", "status": "CREATED", "links": [{"rel": "approve", "href": "https://paypal.test/approve/O-1"}]},
    )
    providers.json(
        "POST",
        "/v2/checkout/orders/O-1/capture",
        {
            "id": "O-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
        },
    )

    async def scenario():  # type: ignore[no-untyped-def]
        created = await orchestrator.initiate_payment(_order(2002, "20", "USD"), "paypal")
        return await orchestrator.capture_payment(created.transaction_id)

    snapshot = asyncio.run(scenario())
    assert snapshot.status == TransactionStatus.COMPLETED
    assert snapshot.gateway == "paypal"


def _paypal_routes(providers: FakeProviders) -> None:
    providers.json(
        "POST",
        "/v2/checkout/orders",
        {"id": "O-1", "status": "CREATED", "links": [{"rel": "approve", "href": "https://paypal.test/approve/O-1"}]},
    )
    providers.json(
        "POST",
        "/v2/checkout/orders/O-1/capture",
        {
            "id": "O-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
        },
    )


def test_polled_refund_is_booked(
    orchestrator: PaymentOrchestrator,
    providers: FakeProviders,
    store: InMemoryTransactionStore,
    notification_sink: RecordingNotificationSink,
) -> None:
    _paypal_routes(providers)
    providers.json(
        "GET",
        "/v2/checkout/orders/O-1",
        {
            "id": "O-1",
            "status": "COMPLETED",
            "purchase_units": [
                {
                    "payments": {
                        "captures": [{"id": "CAP-1", "status": "REFUNDED"}],
                        "refunds": [
                            {"id": "RF-1", "status": "COMPLETED", "amount": {"value": "20.00", "currency_code": "USD"}}
                        ],
                    }
                }
            ],
        },
    )

    async def scenario():  # type: ignore[no-untyped-def]
        created = await orchestrator.initiate_payment(_order(2002, "20", "USD"), "paypal")
        await orchestrator.capture_payment(created.transaction_id)
        return await orchestrator.confirm_payment(created.transaction_id)

    snapshot = asyncio.run(scenario())
    assert snapshot.status == TransactionStatus.REFUNDED
    assert snapshot.refunded_amount == Decimal("20.00")
    [refund] = store.list_refunds(snapshot.transaction_id)
    assert refund.amount == Decimal("20.00")
    assert refund.status == RefundStatus.SUCCEEDED
    assert [event for _, event in notification_sink.events] == ["payment.completed", "payment.refunded"]


def test_polled_full_refund_without_breakdown(
    orchestrator: PaymentOrchestrator, providers: FakeProviders, store: InMemoryTransactionStore
) -> None:
    _paypal_routes(providers)
    providers.json(
        "GET",
        "/v2/checkout/orders/O-1",
        {
            "id": "O-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "REFUNDED"}]}}],
        },
    )

    async def scenario():  # type: ignore[no-untyped-def]
        created = await orchestrator.initiate_payment(_order(2002, "20", "USD"), "paypal")
        await orchestrator.capture_payment(created.transaction_id)
        first = await orchestrator.confirm_payment(created.transaction_id)
        second = await orchestrator.confirm_payment(created.transaction_id)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status == TransactionStatus.REFUNDED
    assert second.refunded_amount == Decimal("20.00")
    assert len(store.list_refunds(first.transaction_id)) == 1


def test_refund_below_minor_unit_is_rejected(
    orchestrator: PaymentOrchestrator, providers: FakeProviders, store: InMemoryTransactionStore
) -> None:
    _refund_route(providers)

    async def scenario() -> int:
        tid = await _completed_gcash(orchestrator)
        with pytest.raises(InvalidAmount):
            await orchestrator.refund(tid, Decimal("0.001"))
        return tid

    tid = asyncio.run(scenario())
    assert providers.calls("POST", "/v1/refunds") == []
    assert store.list_refunds(tid) == []
    assert store.get(tid).status == TransactionStatus.COMPLETED


def test_refund_failing_after_acceptance_frees_the_amount(
    orchestrator: PaymentOrchestrator,
    providers: FakeProviders,
    store: InMemoryTransactionStore,
    notification_sink: RecordingNotificationSink,
) -> None:
    _refund_route(providers)

    async def scenario():  # type: ignore[no-untyped-def]
        tid = await _completed_gcash(orchestrator)
        await orchestrator.refund(tid, Decimal("100"))
        await orchestrator.update_gateway_refund(tid, "rf_1", RefundStatus.FAILED)
        # repeated failure notices change nothing
        await orchestrator.update_gateway_refund(tid, "rf_1", RefundStatus.FAILED)
        return tid, await orchestrator.refund(tid)

    tid, last = asyncio.run(scenario())
    assert last.amount == Decimal("250.00")
    assert last.transaction_status == TransactionStatus.REFUNDED
    statuses = {r.refund_id: r.status for r in store.list_refunds(tid)}
    assert statuses == {"rf_1": RefundStatus.FAILED, "rf_2": RefundStatus.SUCCEEDED}
    assert [event for _, event in notification_sink.events].count("refund.failed") == 1


def test_unknown_failed_refund_is_ignored(
    orchestrator: PaymentOrchestrator, store: InMemoryTransactionStore
) -> None:
    async def scenario() -> int:
        tid = await _completed_gcash(orchestrator)
        await orchestrator.update_gateway_refund(tid, "rf_never", RefundStatus.FAILED)
        return tid

    tid = asyncio.run(scenario())
    assert store.list_refunds(tid) == []
    assert store.get(tid).status == TransactionStatus.COMPLETED


def test_reversal_is_flagged_and_reported_once(
    orchestrator: PaymentOrchestrator,
    store: InMemoryTransactionStore,
    order_sink: RecordingOrderSink,
    notification_sink: RecordingNotificationSink,
) -> None:
    async def scenario() -> int:
        tid = await _completed_gcash(orchestrator)
        await orchestrator.record_reversal(tid, reason="chargeback")
        await orchestrator.record_reversal(tid, reason="chargeback")
        return tid

    tid = asyncio.run(scenario())
    transaction = store.get(tid)
    assert transaction.status == TransactionStatus.COMPLETED
    assert transaction.metadata["reversed"] is True
    assert transaction.metadata["reversal_reason"] == "chargeback"
    assert order_sink.reversals == [(tid, "chargeback")]
    assert [event for _, event in notification_sink.events] == ["payment.completed", "payment.reversed"]


def test_reversal_of_unpaid_transaction_is_rejected(orchestrator: PaymentOrchestrator) -> None:
    async def scenario() -> None:
        created = await orchestrator.initiate_payment(_order(), "gcash")
        await orchestrator.record_reversal(created.transaction_id)

    with pytest.raises(InvalidStateTransition):
        asyncio.run(scenario())


def _bare_transaction(order_id: int, reference: str | None) -> Transaction:
    return Transaction(
        order_id=order_id,
        gateway="gcash",
        amount=Decimal("250.00"),
        currency="PHP",
        idempotency_key=f"order-{order_id}-gcash-1",
        gateway_transaction_id=reference,
    )


def test_store_rejects_reused_gateway_reference(store: InMemoryTransactionStore) -> None:
    store.create_transaction(_bare_transaction(1, "gc_txn_1"))
    with pytest.raises(DuplicateGatewayReference):
        store.create_transaction(_bare_transaction(2, "gc_txn_1"))

    other = store.create_transaction(_bare_transaction(3, None))
    other.gateway_transaction_id = "gc_txn_1"
    with pytest.raises(DuplicateGatewayReference):
        store.update_transaction(other, expected_status=TransactionStatus.PENDING)
    assert store.get_by_gateway_reference("gcash", "gc_txn_1").order_id == 1


def test_store_rejects_duplicate_refund_and_processed_webhook(store: InMemoryTransactionStore) -> None:
    tid = store.create_transaction(_bare_transaction(1, "gc_txn_1")).id
    refund = RefundRecord(transaction_id=tid, amount=Decimal("50.00"), status=RefundStatus.SUCCEEDED, refund_id="rf_1")
    store.add_refund(refund)
    with pytest.raises(DuplicateRefund):
        store.add_refund(refund)
    assert store.refunded_total(tid) == Decimal("50.00")

    def received() -> WebhookEvent:
        return store.record_webhook_event(
            WebhookEvent(
                gateway="gcash",
                raw_payload="{}",
                event_type="payment.completed",
                gateway_transaction_id="gc_txn_1",
            )
        )

    first, second = received(), received()
    store.mark_webhook_processed(first.id)
    with pytest.raises(DuplicateWebhook):
        store.mark_webhook_processed(second.id)
    assert [e.processed for e in store.list_webhook_events("gcash")] == [True, False]
