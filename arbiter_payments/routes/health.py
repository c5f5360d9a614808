from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

from arbiter_payments.domain.errors import TransactionStoreError

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


@router.get("/health/metrics")
async def health_metrics(request: Request) -> dict[str, Any]:
    """Service health with transaction counts per status."""
    settings = request.app.state.settings
    captured_at = datetime.now(timezone.utc)
    store_connected = True
    status_counts: dict[str, int] = {}
    try:
        status_counts = request.app.state.store.status_counts()
    except TransactionStoreError as exc:
        store_connected = False
        logger.info("health metrics collection failed", extra={"error": exc.message})

    return {
        "status": "ok" if store_connected else "degraded",
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": int((captured_at - SERVICE_STARTED_AT).total_seconds()),
        "service": {
            "environment": settings.app_env,
            "version": settings.app_version,
            "gateways": request.app.state.registry.names(),
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": settings.db_enabled,
            "connected": store_connected,
            "schema": settings.db_schema if settings.db_enabled else None,
        },
        "payments": {"status_counts": status_counts},
    }
