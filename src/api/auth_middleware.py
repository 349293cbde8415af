"""ASGI middleware for API-key authentication."""

from __future__ import annotations

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)

# Paths that bypass authentication (exact match)
PUBLIC_PATHS = {"/", "/health"}

API_KEY_HEADER = "x-api-key"
API_KEY_QUERY = "apiKey"


class ApiKeyMiddleware:
    """Validates the X-API-Key header (or apiKey query parameter) in constant time."""

    def __init__(self, app: ASGIApp, api_key: str) -> None:
        self.app = app
        self._api_key = api_key.encode()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path

        if path in PUBLIC_PATHS:
            await self.app(scope, receive, send)
            return

        provided = (
            request.headers.get(API_KEY_HEADER)
            or request.query_params.get(API_KEY_QUERY)
            or ""
        )

        if not provided or not hmac.compare_digest(provided.encode(), self._api_key):
            logger.warning(
                "Rejected %s %s from %s: %s API key",
                request.method,
                path,
                request.client.host if request.client else "unknown",
                "missing" if not provided else "invalid",
            )
            response = JSONResponse(
                {"success": False, "message": "Invalid API key"}, status_code=401,
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
