"""HMAC-SHA256 signing of outbound webhook bodies.

The signature covers the exact serialized bytes that are transmitted, so a
receiver can verify it against the raw request body without re-encoding.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_HEADER = "X-Webhook-Signature"
_PREFIX = "sha256="


def serialize(payload: dict[str, Any]) -> bytes:
    """Serialize a payload once; these bytes are both signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode()


def sign(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` header value for ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{_PREFIX}{digest}"


def verify(secret: str, body: bytes, signature: str) -> bool:
    """Check a ``sha256=<hex>`` signature in constant time."""
    if not signature.startswith(_PREFIX):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[len(_PREFIX):], expected)
