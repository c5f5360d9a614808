from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from arbiter_payments.services.webhooks import WebhookDispatcher

from .deps import get_dispatcher

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/{gateway}")
async def receive_webhook(
    gateway: str,
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """Provider notifications; authenticated by signature, not bearer token."""
    payload = await request.body()
    result = await dispatcher.dispatch(gateway, payload, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.body)
