from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from arbiter_payments.domain.dtos import (
    CancelResponse,
    GatewayInfo,
    PaymentCreateRequest,
    PaymentCreateResponse,
    RefundRequest,
    RefundResponse,
    RefundSummary,
    TransactionSnapshot,
)
from arbiter_payments.domain.models import PaymentOrder
from arbiter_payments.gateways.factory import GatewayRegistry
from arbiter_payments.services.orchestrator import PaymentOrchestrator
from arbiter_payments.utils.idempotency import get_idempotency_key
from arbiter_payments.utils.security import verify_bearer_token

from .deps import get_orchestrator, get_registry

router = APIRouter(
    prefix="/api/v1/payments",
    tags=["payments"],
    dependencies=[Depends(verify_bearer_token)],
)
logger = logging.getLogger(__name__)


def _order_from_request(request: PaymentCreateRequest) -> PaymentOrder:
    return PaymentOrder(
        order_id=request.order_id,
        amount=request.amount,
        currency=request.currency,
        customer_email=request.customer_email,
        description=request.description,
        metadata=dict(request.metadata),
    )


@router.get("/gateways", response_model=list[GatewayInfo])
async def list_gateways(registry: GatewayRegistry = Depends(get_registry)) -> list[GatewayInfo]:
    """Enabled gateways with their currencies and minimum amounts."""
    return [
        GatewayInfo(
            name=gateway.get_gateway_name(),
            currencies=gateway.get_supported_currencies(),
            minimum_amounts={
                code: gateway.get_minimum_amount(code) for code in gateway.get_supported_currencies()
            },
        )
        for gateway in registry.available()
    ]


@router.post("", response_model=PaymentCreateResponse)
async def create_payment_for_currency(
    request: PaymentCreateRequest,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    registry: GatewayRegistry = Depends(get_registry),
) -> PaymentCreateResponse:
    """Create a payment with the preferred enabled gateway for the currency."""
    gateway = registry.for_currency(request.currency)
    return await orchestrator.initiate_payment(
        _order_from_request(request), gateway.name, idempotency_key
    )


@router.post("/{gateway}", response_model=PaymentCreateResponse)
async def create_payment(
    gateway: str,
    request: PaymentCreateRequest,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentCreateResponse:
    logger.info(
        "create payment request",
        extra={"order_id": request.order_id, "gateway": gateway, "idempotency_key": idempotency_key},
    )
    return await orchestrator.initiate_payment(
        _order_from_request(request), gateway, idempotency_key
    )


@router.get("/{transaction_id}/status", response_model=TransactionSnapshot)
async def payment_status(
    transaction_id: int,
    refresh: bool = Query(default=False, description="Re-read the status from the gateway"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionSnapshot:
    if refresh:
        return await orchestrator.confirm_payment(transaction_id)
    return orchestrator.get_transaction(transaction_id)


@router.post("/{transaction_id}/confirm", response_model=TransactionSnapshot)
async def confirm_payment(
    transaction_id: int,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionSnapshot:
    return await orchestrator.confirm_payment(transaction_id)


@router.post("/{transaction_id}/capture", response_model=TransactionSnapshot)
async def capture_payment(
    transaction_id: int,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionSnapshot:
    return await orchestrator.capture_payment(transaction_id)


@router.post("/{transaction_id}/refund", response_model=RefundResponse)
async def refund_payment(
    transaction_id: int,
    request: Optional[RefundRequest] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> RefundResponse:
    request = request or RefundRequest()
    return await orchestrator.refund(transaction_id, request.amount, request.reason)


@router.post("/{transaction_id}/cancel", response_model=CancelResponse)
async def cancel_payment(
    transaction_id: int,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    return await orchestrator.cancel(transaction_id)


@router.get("/{transaction_id}/refunds", response_model=list[RefundSummary])
async def list_refunds(
    transaction_id: int,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> list[RefundSummary]:
    return orchestrator.list_refunds(transaction_id)
