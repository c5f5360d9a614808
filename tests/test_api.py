from __future__ import annotations

import pathlib
import sys
from typing import Dict

import httpx
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from arbiter_payments.domain.statuses import TransactionStatus
from arbiter_payments.repositories.memory_store import InMemoryTransactionStore

from conftest import FakeProviders, dumps, gcash_signature


def _create(client: TestClient, headers: Dict[str, str], **overrides):  # type: ignore[no-untyped-def]
    payload = {
        "order_id": 1001,
        "amount": "250",
        "currency": "PHP",
        "customer_email": "ana@example.com",
        "description": "2x Flat white",
    }
    payload.update(overrides)
    return client.post("/api/v1/payments/gcash", json=payload, headers=headers)


def _complete(client: TestClient) -> None:
    body = dumps({"event_type": "payment.success", "transaction_id": "gc_txn_1", "status": "paid"})
    response = client.post(
        "/api/v1/webhooks/gcash", content=body, headers={"X-GCash-Signature": gcash_signature(body)}
    )
    assert response.status_code == 200


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_health_metrics_endpoint(client: TestClient, auth_headers: Dict[str, str]) -> None:
    _create(client, auth_headers)
    response = client.get("/health/metrics")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["database"]["enabled"] is False
    assert set(body["service"]["gateways"]) == {"gcash", "maya", "stripe", "paypal"}
    assert body["payments"]["status_counts"] == {"awaiting_redirect": 1}


def test_payments_require_bearer_token(client: TestClient) -> None:
    response = _create(client, {})
    assert response.status_code == 401
    response = _create(client, {"Authorization": "Bearer wrong"})
    assert response.status_code == 401


def test_docs_require_bearer_token(client: TestClient, auth_headers: Dict[str, str]) -> None:
    assert client.get("/openapi.json").status_code == 401
    assert client.get("/openapi.json", headers=auth_headers).status_code == 200


def test_list_gateways(client: TestClient, auth_headers: Dict[str, str]) -> None:
    response = client.get("/api/v1/payments/gateways", headers=auth_headers)
    assert response.status_code == 200
    gateways = {g["name"]: g for g in response.json()}
    assert gateways["gcash"]["currencies"] == ["PHP"]
    assert gateways["stripe"]["minimum_amounts"]["PHP"] == "50.00"


def test_create_payment_flow(client: TestClient, auth_headers: Dict[str, str]) -> None:
    response = _create(client, auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "awaiting_redirect"
    assert body["payment_url"] == "https://pay.gcash.test/gc_txn_1"
    assert "gateway_transaction_id" not in body

    status = client.get(f"/api/v1/payments/{body['transaction_id']}/status", headers=auth_headers)
    assert status.status_code == 200
    assert status.json()["status"] == "awaiting_redirect"
    assert status.json()["amount"] == "250.00"


def test_create_payment_picks_gateway_by_currency(
    client: TestClient, auth_headers: Dict[str, str], providers: FakeProviders
) -> None:
    providers.json(
        "POST",
        "/payby/v2/paymaya/payments",
        {"paymentId": "maya-1", "redirectUrl": "https://payments.maya.test/maya-1"},
    )
    response = client.post(
        "/api/v1/payments",
        json={"order_id": 5, "amount": "120", "currency": "PHP"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    status = client.get(f"/api/v1/payments/{response.json()['transaction_id']}/status", headers=auth_headers)
    assert status.json()["gateway"] == "maya"


def test_create_payment_validation_errors(client: TestClient, auth_headers: Dict[str, str]) -> None:
    below = _create(client, auth_headers, amount="0.25")
    assert below.status_code == 422
    assert below.json()["error"] == "below_minimum_amount"

    currency = _create(client, auth_headers, currency="USD")
    assert currency.status_code == 422
    assert currency.json()["error"] == "unsupported_currency"

    unknown = client.post(
        "/api/v1/payments/bitcoin",
        json={"order_id": 1, "amount": "10", "currency": "PHP"},
        headers=auth_headers,
    )
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "unknown_gateway"


def test_duplicate_pending_payment_conflict(client: TestClient, auth_headers: Dict[str, str]) -> None:
    assert _create(client, auth_headers).status_code == 200
    second = _create(client, auth_headers)
    assert second.status_code == 409
    assert second.json()["error"] == "duplicate_pending_payment"


def test_idempotency_key_header(client: TestClient, auth_headers: Dict[str, str]) -> None:
    headers = {**auth_headers, "Idempotency-Key": "checkout-1001"}
    first = _create(client, headers)
    second = _create(client, headers)
    assert first.status_code == second.status_code == 200
    assert first.json()["transaction_id"] == second.json()["transaction_id"]


def test_gateway_unreachable_is_503(
    client: TestClient, auth_headers: Dict[str, str], providers: FakeProviders
) -> None:
    providers.json("POST", "/v1/payments", {"message": "maintenance"}, status_code=503)
    response = _create(client, auth_headers)
    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_refund_endpoints(
    client: TestClient,
    auth_headers: Dict[str, str],
    providers: FakeProviders,
    store: InMemoryTransactionStore,
) -> None:
    providers.json("POST", "/v1/refunds", {"refund_id": "rf_1", "status": "success"})
    tid = _create(client, auth_headers).json()["transaction_id"]

    early = client.post(f"/api/v1/payments/{tid}/refund", json={"amount": "10"}, headers=auth_headers)
    assert early.status_code == 409
    assert early.json()["error"] == "transaction_not_refundable"

    _complete(client)
    partial = client.post(
        f"/api/v1/payments/{tid}/refund", json={"amount": "100", "reason": "cold coffee"}, headers=auth_headers
    )
    assert partial.status_code == 200
    assert partial.json()["transaction_status"] == "partially_refunded"
    assert partial.json()["refunded_amount"] == "100.00"

    excess = client.post(f"/api/v1/payments/{tid}/refund", json={"amount": "200"}, headers=auth_headers)
    assert excess.status_code == 409
    assert excess.json()["error"] == "refund_exceeds_amount"

    rest = client.post(f"/api/v1/payments/{tid}/refund", headers=auth_headers)
    assert rest.status_code == 200
    assert rest.json()["amount"] == "150.00"
    assert store.get(tid).status == TransactionStatus.REFUNDED

    refunds = client.get(f"/api/v1/payments/{tid}/refunds", headers=auth_headers).json()
    assert [r["amount"] for r in refunds] == ["100.00", "150.00"]
    assert refunds[0]["reason"] == "cold coffee"


def test_cancel_endpoint(client: TestClient, auth_headers: Dict[str, str], providers: FakeProviders) -> None:
    providers.json("POST", "/v1/payments/gc_txn_1/cancel", {"status": "cancelled"})
    tid = _create(client, auth_headers).json()["transaction_id"]
    response = client.post(f"/api/v1/payments/{tid}/cancel", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    again = client.post(f"/api/v1/payments/{tid}/cancel", headers=auth_headers)
    assert again.status_code == 409
    assert again.json()["error"] == "already_finalized"


def test_status_refresh_polls_gateway(
    client: TestClient, auth_headers: Dict[str, str], providers: FakeProviders
) -> None:
    providers.add(
        "GET",
        "/v1/payments/gc_txn_1",
        httpx.Response(200, json={"transaction_id": "gc_txn_1", "status": "paid"}),
    )
    tid = _create(client, auth_headers).json()["transaction_id"]
    response = client.get(f"/api/v1/payments/{tid}/status", params={"refresh": True}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["paid_at"] is not None


def test_unknown_transaction_is_404(client: TestClient, auth_headers: Dict[str, str]) -> None:
    response = client.get("/api/v1/payments/999/status", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "unknown_transaction"
