from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse

from arbiter_payments.config import Settings
from arbiter_payments.db.client import Database
from arbiter_payments.domain.dtos import ErrorResponse
from arbiter_payments.domain.errors import PaymentError
from arbiter_payments.gateways.factory import GatewayRegistry, build_registry
from arbiter_payments.logging import setup_logging
from arbiter_payments.repositories.base import TransactionStore
from arbiter_payments.repositories.memory_store import InMemoryTransactionStore
from arbiter_payments.repositories.pg_store import PgTransactionStore
from arbiter_payments.routes import health, payments, webhooks
from arbiter_payments.services.orchestrator import PaymentOrchestrator
from arbiter_payments.services.sinks import (
    HttpNotificationSink,
    HttpOrderStatusSink,
    NotificationSink,
    OrderStatusSink,
)
from arbiter_payments.services.webhooks import WebhookDispatcher
from arbiter_payments.utils.security import verify_bearer_token

logger = logging.getLogger(__name__)


def _default_store(cfg: Settings) -> TransactionStore:
    if cfg.db_enabled:
        return PgTransactionStore(Database(cfg.db_dsn, schema=cfg.db_schema))
    logger.warning("database not configured; using in-memory transaction store")
    return InMemoryTransactionStore()


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    level = logging.ERROR if exc.retryable else logging.INFO
    logger.log(level, "payment error", extra={"error": exc.kind, "endpoint": request.url.path})
    body = ErrorResponse(error=exc.kind, message=exc.message, retryable=exc.retryable)
    return JSONResponse(status_code=exc.http_status, content=body.model_dump())


def create_app(
    cfg: Settings | None = None,
    *,
    store: TransactionStore | None = None,
    registry: GatewayRegistry | None = None,
    order_sink: OrderStatusSink | None = None,
    notification_sink: NotificationSink | None = None,
) -> FastAPI:
    """Wire settings, gateways, store and services into a FastAPI app.

    Enabled gateways are built here, so a missing credential stops startup
    with GatewayConfigurationError.
    """
    cfg = cfg or Settings()
    store = store or _default_store(cfg)
    registry = registry or build_registry(cfg)
    if order_sink is None and cfg.order_callback_url:
        order_sink = HttpOrderStatusSink(cfg.order_callback_url)
    if notification_sink is None and cfg.notification_callback_url:
        notification_sink = HttpNotificationSink(cfg.notification_callback_url)
    orchestrator = PaymentOrchestrator(
        store,
        registry,
        order_sink=order_sink,
        notification_sink=notification_sink,
        cfg=cfg,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if isinstance(store, PgTransactionStore):
            store.db.close()

    app = FastAPI(title="Arbiter Payments", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
    app.state.settings = cfg
    app.state.store = store
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    app.state.dispatcher = WebhookDispatcher(orchestrator, registry, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PaymentError, payment_error_handler)  # type: ignore[arg-type]
    app.include_router(health.router)
    app.include_router(payments.router)
    app.include_router(webhooks.router)

    @app.get("/openapi.json", include_in_schema=False)
    def custom_openapi(_: None = Depends(verify_bearer_token)) -> JSONResponse:
        return JSONResponse(content=app.openapi())

    @app.get("/docs", include_in_schema=False)
    def custom_swagger_ui(_: None = Depends(verify_bearer_token)):  # type: ignore[no-untyped-def]
        return get_swagger_ui_html(openapi_url="/openapi.json", title="Arbiter Payments API")

    return app


setup_logging()
app = create_app()
