from __future__ import annotations

import hashlib
import hmac
import json
import pathlib
import sys
import time
from typing import Any, Callable, Dict, Tuple, Union

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from arbiter_payments.config import Settings
from arbiter_payments.domain.models import Transaction
from arbiter_payments.domain.statuses import TransactionStatus
from arbiter_payments.gateways.factory import GatewayRegistry, build_registry
from arbiter_payments.main import create_app
from arbiter_payments.repositories.memory_store import InMemoryTransactionStore
from arbiter_payments.services.orchestrator import PaymentOrchestrator
from arbiter_payments.services.sinks import NotificationSink, OrderStatusSink
from arbiter_payments.services.webhooks import WebhookDispatcher

GCASH_SECRET = "gcash-webhook-secret"
MAYA_SECRET = "maya-webhook-secret"
STRIPE_SECRET = "whsec_test_secret"

Handler = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "api_bearer_token": "testtoken",
        "enabled_gateways": "gcash,maya,stripe,paypal",
        "frontend_url": "http://cafe.test",
        "app_url": "http://api.cafe.test",
        "verify_retry_backoff_seconds": 0,
        "gcash_api_url": "https://gcash.test/v1",
        "gcash_api_key": "gcash-key",
        "gcash_merchant_id": "MERCHANT-1",
        "gcash_webhook_secret": GCASH_SECRET,
        "maya_api_url": "https://maya.test",
        "maya_public_key": "pk-maya",
        "maya_secret_key": "sk-maya",
        "maya_webhook_secret": MAYA_SECRET,
        "stripe_secret_key": "sk_test_123",
        "stripe_webhook_secret": STRIPE_SECRET,
        "paypal_base_url": "https://paypal.test",
        "paypal_client_id": "paypal-client",
        "paypal_client_secret": "paypal-secret",
        "paypal_webhook_id": "WH-123",
        "db_host": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeProviders:
    """Routes gateway HTTP calls to canned responses keyed by (method, path)."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method.upper(), path)] = handler

    def json(self, method: str, path: str, payload: Any, status_code: int = 200) -> None:
        self.add(method, path, httpx.Response(status_code, json=payload))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route for {request.url.path}"})
        if callable(handler):
            return handler(request)
        return handler

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class RecordingOrderSink(OrderStatusSink):
    def __init__(self) -> None:
        self.calls: list[Tuple[int, TransactionStatus, TransactionStatus]] = []
        self.reversals: list[Tuple[int, str | None]] = []

    async def payment_status_changed(
        self, transaction: Transaction, previous_status: TransactionStatus
    ) -> None:
        self.calls.append((transaction.id, previous_status, transaction.status))

    async def payment_reversed(self, transaction: Transaction, reason: str | None) -> None:
        self.reversals.append((transaction.id, reason))


class RecordingNotificationSink(NotificationSink):
    def __init__(self) -> None:
        self.events: list[Tuple[int, str]] = []

    async def notify(self, transaction: Transaction, event: str) -> None:
        self.events.append((transaction.id, event))


def gcash_signature(body: bytes) -> str:
    return hmac.new(GCASH_SECRET.encode(), body, hashlib.sha256).hexdigest()


def maya_signature(body: bytes) -> str:
    return hmac.new(MAYA_SECRET.encode(), body, hashlib.sha256).hexdigest()


def stripe_signature(body: bytes, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.{body.decode()}".encode()
    digest = hmac.new(STRIPE_SECRET.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def dumps(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def cfg() -> Settings:
    return make_settings()


@pytest.fixture
def providers() -> FakeProviders:
    fake = FakeProviders()
    fake.json(
        "POST",
        "/v1/payments",
        {"transaction_id": "gc_txn_1", "status": "pending", "payment_url": "https://pay.gcash.test/gc_txn_1"},
    )
    fake.json("POST", "/v1/oauth2/token", {"access_token": "A21AA", "expires_in": 3600})
    return fake


@pytest.fixture
def store() -> InMemoryTransactionStore:
    return InMemoryTransactionStore()


@pytest.fixture
def registry(cfg: Settings, providers: FakeProviders) -> GatewayRegistry:
    return build_registry(cfg, transport=providers.transport)


@pytest.fixture
def order_sink() -> RecordingOrderSink:
    return RecordingOrderSink()


@pytest.fixture
def notification_sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def orchestrator(
    cfg: Settings,
    store: InMemoryTransactionStore,
    registry: GatewayRegistry,
    order_sink: RecordingOrderSink,
    notification_sink: RecordingNotificationSink,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        store, registry, order_sink=order_sink, notification_sink=notification_sink, cfg=cfg
    )


@pytest.fixture
def dispatcher(
    orchestrator: PaymentOrchestrator,
    registry: GatewayRegistry,
    store: InMemoryTransactionStore,
) -> WebhookDispatcher:
    return WebhookDispatcher(orchestrator, registry, store)


@pytest.fixture
def client(
    cfg: Settings,
    store: InMemoryTransactionStore,
    registry: GatewayRegistry,
    order_sink: RecordingOrderSink,
    notification_sink: RecordingNotificationSink,
) -> TestClient:
    app = create_app(
        cfg,
        store=store,
        registry=registry,
        order_sink=order_sink,
        notification_sink=notification_sink,
    )
    return TestClient(app)


@pytest.fixture
def auth_headers(cfg: Settings) -> Dict[str, str]:
    return {"Authorization": f"Bearer {cfg.api_bearer_token}"}
