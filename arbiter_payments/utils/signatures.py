from __future__ import annotations

import hashlib
import hmac


def hmac_sha256_hex(secret: str, payload: bytes | str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison of two signature strings."""
    if not provided:
        return False
    return hmac.compare_digest(
        expected.strip().lower().encode("utf-8"),
        provided.strip().lower().encode("utf-8"),
    )
