"""FastAPI application exposing the WhatsApp session over HTTP."""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.api.auth_middleware import ApiKeyMiddleware
from src.gateway.auto_reply import make_ping_responder
from src.gateway.outbound import (
    DEFAULT_COUNTRY_CODE,
    InvalidRecipientError,
    NotConnectedError,
    OutboundGateway,
    SendFailedError,
)
from src.models import ConnectionState, WebhookConfig, WebhookConfigUpdate
from src.session.machine import DEFAULT_RECONNECT_DELAY_SECONDS, SessionStateMachine
from src.session.transport import load_transport
from src.webhook.delivery import (
    WebhookConfigError,
    WebhookDeliveryEngine,
    WebhookNotConfiguredError,
)
from src.webhook.failure_log import FailureLog

logger = logging.getLogger(__name__)

SERVICE_NAME = "WhatsApp API Server"
SERVICE_VERSION = "1.0.0"

_MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10MB


class UploadTooLargeError(Exception):
    pass


class SendMessageRequest(BaseModel):
    to: str | None = None
    message: str | None = None


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _webhook_config_from_env() -> WebhookConfig:
    return WebhookConfig(
        url=os.environ.get("WEBHOOK_URL") or None,
        secret=os.environ.get("WEBHOOK_SECRET") or None,
        enabled=_env_flag("WEBHOOK_ENABLED"),
        retry_attempts=int(os.environ.get("WEBHOOK_RETRY_ATTEMPTS", "3")),
        timeout_ms=int(os.environ.get("WEBHOOK_TIMEOUT", "10000")),
    )


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    api_key = os.environ["API_KEY"]
    transport = load_transport(os.environ["TRANSPORT_FACTORY"])
    failure_log = FailureLog.from_env(
        os.environ.get("WEBHOOK_FAILURE_LOG", "./logs/webhook-failures.log"),
    )
    engine = WebhookDeliveryEngine(
        config=_webhook_config_from_env(), failure_log=failure_log,
    )
    session = SessionStateMachine(
        transport,
        os.environ.get("SESSION_DIR", "./sessions"),
        delivery_engine=engine,
        reconnect_delay=float(
            os.environ.get("RECONNECT_DELAY_SECONDS", str(DEFAULT_RECONNECT_DELAY_SECONDS)),
        ),
    )
    gateway = OutboundGateway(
        session, country_code=os.environ.get("COUNTRY_CODE", DEFAULT_COUNTRY_CODE),
    )
    if _env_flag("AUTO_REPLY_PING"):
        session.add_message_handler(make_ping_responder(gateway))
    return create_app(
        api_key,
        session,
        gateway,
        engine,
        upload_dir=os.environ.get("UPLOAD_DIR", "./uploads"),
        debug=os.environ.get("APP_ENV", "production") == "development",
    )


def create_app(
    api_key: str,
    session: SessionStateMachine,
    gateway: OutboundGateway,
    engine: WebhookDeliveryEngine,
    upload_dir: str = "./uploads",
    debug: bool = False,
) -> FastAPI:
    """Create the API app around an existing session, gateway and engine."""
    uploads = Path(upload_dir)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        uploads.mkdir(parents=True, exist_ok=True)
        if not session.initialized:
            await session.initialize()
        yield
        await session.close()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)

    # --- Error mapping ---

    @app.exception_handler(NotConnectedError)
    async def not_connected(request: Request, exc: NotConnectedError) -> JSONResponse:
        return JSONResponse({"success": False, "message": str(exc)}, status_code=400)

    @app.exception_handler(SendFailedError)
    async def send_failed(request: Request, exc: SendFailedError) -> JSONResponse:
        return JSONResponse(
            {"success": False, "message": "Failed to send message", "error": str(exc)},
            status_code=500,
        )

    @app.exception_handler(InvalidRecipientError)
    @app.exception_handler(WebhookConfigError)
    @app.exception_handler(WebhookNotConfiguredError)
    @app.exception_handler(UploadTooLargeError)
    async def bad_request(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"success": False, "message": str(exc)}, status_code=400)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"success": False, "message": "Invalid request", "error": str(exc.errors())},
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        body: dict[str, Any] = {"success": False, "message": "Internal Server Error"}
        if debug:
            body["message"] = str(exc)
        return JSONResponse(body, status_code=500)

    # --- Public endpoints ---

    @app.get("/")
    async def index() -> dict[str, Any]:
        return {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "endpoints": {
                "health": "GET /health",
                "status": "GET /status",
                "qr": "GET /qr",
                "sendMessage": "POST /send-message",
                "sendImage": "POST /send-image",
                "sendDocument": "POST /send-document",
                "logout": "POST /logout",
                "webhookConfig": "POST /webhook/config",
                "webhookStatus": "GET /webhook/status",
                "webhookTest": "POST /webhook/test",
            },
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": round(time.monotonic() - started_at, 3),
            "version": SERVICE_VERSION,
        }

    # --- Session ---

    @app.get("/status")
    async def status() -> dict[str, Any]:
        current = session.get_status()
        return {
            "success": True,
            "data": {
                "connectionState": current.connection_state.value,
                "hasQr": current.qr_payload is not None,
                "isConnected": current.is_connected,
                "lastError": current.last_error,
            },
        }

    @app.get("/qr")
    async def qr() -> dict[str, Any]:
        current = session.get_status()
        if current.connection_state is ConnectionState.AWAITING_SCAN and current.qr_payload:
            return {
                "success": True,
                "data": {
                    "qrCode": current.qr_payload,
                    "message": "Scan the QR code with WhatsApp",
                },
            }
        if current.is_connected:
            return {"success": True, "data": {"message": "WhatsApp is already connected"}}
        return {
            "success": False,
            "message": "QR code is not available yet. Try again shortly.",
        }

    @app.post("/logout")
    async def logout() -> dict[str, Any]:
        await gateway.logout()
        return {"success": True, "data": {"message": "Logged out of WhatsApp"}}

    # --- Sending ---

    @app.post("/send-message")
    async def send_message(body: SendMessageRequest) -> JSONResponse:
        _require_connected(session)
        if not body.to or not body.message:
            return _missing('Parameters "to" and "message" are required')
        receipt = await gateway.send_text(body.to, body.message)
        return JSONResponse({
            "success": True,
            "data": {
                "messageId": receipt.message_id,
                "to": body.to,
                "message": body.message,
                "timestamp": _now_ms(),
            },
        })

    @app.post("/send-image")
    async def send_image(
        to: str | None = Form(None),
        caption: str = Form(""),
        image: UploadFile | None = File(None),
    ) -> JSONResponse:
        _require_connected(session)
        if not to:
            return _missing('Parameter "to" is required')
        if image is None:
            return _missing("An image file is required")

        path = await _store_upload(image, uploads)
        try:
            receipt = await gateway.send_image(to, path, caption)
        finally:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        return JSONResponse({
            "success": True,
            "data": {
                "messageId": receipt.message_id,
                "to": to,
                "caption": caption,
                "timestamp": _now_ms(),
            },
        })

    @app.post("/send-document")
    async def send_document(
        to: str | None = Form(None),
        caption: str = Form(""),
        document: UploadFile | None = File(None),
    ) -> JSONResponse:
        _require_connected(session)
        if not to:
            return _missing('Parameter "to" is required')
        if document is None:
            return _missing("A document file is required")

        file_name = Path(document.filename or "document").name
        path = await _store_upload(document, uploads)
        try:
            receipt = await gateway.send_document(to, path, file_name, caption)
        finally:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        return JSONResponse({
            "success": True,
            "data": {
                "messageId": receipt.message_id,
                "to": to,
                "fileName": file_name,
                "caption": caption,
                "timestamp": _now_ms(),
            },
        })

    # --- Webhook ---

    @app.post("/webhook/config")
    async def webhook_config(update: WebhookConfigUpdate) -> dict[str, Any]:
        config = engine.update_config(update)
        return {
            "success": True,
            "data": {"message": "Webhook configuration updated", "config": config},
        }

    @app.get("/webhook/status")
    async def webhook_status() -> dict[str, Any]:
        return {"success": True, "data": engine.status()}

    @app.post("/webhook/test")
    async def webhook_test() -> dict[str, Any]:
        result = await engine.test_webhook()
        return {"success": result.success, "data": result.model_dump(exclude_none=True)}

    @app.post("/webhook")
    async def webhook_inbound(request: Request) -> dict[str, Any]:
        body = await request.body()
        logger.info("Legacy webhook endpoint received %d bytes", len(body))
        return {"success": True, "message": "Webhook received"}

    app.add_middleware(ApiKeyMiddleware, api_key=api_key)

    return app


def _require_connected(session: SessionStateMachine) -> None:
    if not session.get_status().is_connected:
        raise NotConnectedError()


def _missing(message: str) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=400)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _store_upload(upload: UploadFile, upload_dir: Path) -> Path:
    """Write an upload to ``upload_dir``, enforcing the 10MB limit."""
    data = await upload.read(_MAX_UPLOAD_BYTES + 1)
    if len(data) > _MAX_UPLOAD_BYTES:
        raise UploadTooLargeError("File too large. Maximum size is 10MB.")
    name = Path(upload.filename or "upload").name
    path = upload_dir / f"{_now_ms()}-{uuid.uuid4().hex}-{name}"
    await asyncio.to_thread(upload_dir.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(path.write_bytes, data)
    return path
