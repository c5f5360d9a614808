from __future__ import annotations

from typing import Optional

from fastapi import Header


async def get_idempotency_key(idempotency_key: Optional[str] = Header(default=None)) -> Optional[str]:
    """Return the provided Idempotency-Key header if any."""
    if idempotency_key is None:
        return None
    return idempotency_key.strip() or None


def derive_idempotency_key(order_id: int, gateway: str, attempt: int) -> str:
    """Key used when the client sends none: one per order payment attempt."""
    return f"order-{order_id}-{gateway}-{attempt}"
