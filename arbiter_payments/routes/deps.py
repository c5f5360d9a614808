from __future__ import annotations

from fastapi import Request

from arbiter_payments.gateways.factory import GatewayRegistry
from arbiter_payments.repositories.base import TransactionStore
from arbiter_payments.services.orchestrator import PaymentOrchestrator
from arbiter_payments.services.webhooks import WebhookDispatcher


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


def get_registry(request: Request) -> GatewayRegistry:
    return request.app.state.registry


def get_store(request: Request) -> TransactionStore:
    return request.app.state.store
