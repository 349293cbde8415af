"""Webhook delivery engine.

Forwards each inbound message to the configured webhook URL as a signed JSON
envelope. Delivery is fire-and-forget: every message gets its own background
task that retries with exponential backoff (1s, 2s, 4s, ...) until the
configured number of attempts is used up, then appends one entry to the
failure log.

The config is read again at the start of every attempt, so disabling the
webhook stops a pending retry before its next network call. Scheduled
retries are never cancelled by a config change.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

import httpx

from src.fatal import FatalHandler, terminate_process, watch_task
from src.models import (
    DeliveryFailure,
    InboundMessage,
    WebhookConfig,
    WebhookConfigUpdate,
    WebhookTestResult,
)
from src.webhook.failure_log import FailureLog
from src.webhook.signature import SIGNATURE_HEADER, serialize, sign

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
EVENT_MESSAGE_RECEIVED = "message.received"
EVENT_WEBHOOK_TEST = "webhook.test"
_USER_AGENT = "WhatsApp-API-Webhook/1.0"


class WebhookDeliveryError(Exception):
    """A single delivery attempt failed; drives the retry loop."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class WebhookConfigError(ValueError):
    """Rejected webhook configuration update."""


class WebhookNotConfiguredError(Exception):
    """Raised by test_webhook when no URL is configured."""


def display_number(jid: str) -> str:
    """'6281234@s.whatsapp.net' -> '+6281234'."""
    return f"+{jid.split('@', 1)[0]}"


def build_envelope(message: InboundMessage) -> dict[str, Any]:
    return {
        "event": EVENT_MESSAGE_RECEIVED,
        "timestamp": int(time.time() * 1000),
        "data": {
            "id": message.id,
            "from": message.sender,
            "fromDisplay": display_number(message.sender),
            "message": message.content,
            "messageType": message.raw_type,
            "contentType": message.content_type.value,
            "timestamp": message.timestamp,
            "isGroup": message.is_group,
            "webhookId": str(uuid.uuid4()),
            "apiVersion": API_VERSION,
        },
    }


class WebhookDeliveryEngine:
    """Owns the process-wide webhook config and runs deliveries."""

    def __init__(
        self,
        config: WebhookConfig | None = None,
        failure_log: FailureLog | None = None,
        on_fatal: FatalHandler = terminate_process,
    ) -> None:
        self._config = config or WebhookConfig()
        self._failure_log = failure_log
        self._on_fatal = on_fatal
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def config(self) -> WebhookConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.enabled and bool(self._config.url)

    def status(self) -> dict[str, Any]:
        return self._config.redacted()

    def update_config(self, update: WebhookConfigUpdate) -> dict[str, Any]:
        """Apply the provided fields and return the redacted config."""
        changes = update.model_dump(exclude_none=True)
        # An empty URL keeps the current one; an empty secret clears signing
        if not changes.get("url"):
            changes.pop("url", None)
        new_config = self._config.model_copy(update=changes)
        if new_config.enabled and not new_config.url:
            raise WebhookConfigError("A webhook URL is required to enable the webhook")
        self._config = new_config
        logger.info(
            "Webhook configuration updated: url=%s enabled=%s has_secret=%s",
            new_config.url, new_config.enabled, bool(new_config.secret),
        )
        return new_config.redacted()

    def deliver(self, message: InboundMessage) -> asyncio.Task[None]:
        """Schedule delivery of ``message`` and return at once.

        The returned task is the cancel handle for the whole retry timeline.
        """
        task = asyncio.create_task(
            self._run(message), name=f"webhook-delivery-{message.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        watch_task(task, self._on_fatal)
        return task

    async def wait_idle(self) -> None:
        """Wait for every in-flight delivery, including pending retries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, message: InboundMessage) -> None:
        attempt = 1
        while True:
            config = self._config
            if not config.enabled or not config.url:
                logger.info("Webhook disabled or URL not set; skipping message %s", message.id)
                return
            try:
                status = await self._post(config, build_envelope(message))
            except WebhookDeliveryError as exc:
                logger.warning(
                    "Webhook delivery of %s failed (attempt %d/%d): %s",
                    message.id, attempt, config.retry_attempts, exc,
                )
                if attempt >= config.retry_attempts:
                    logger.error(
                        "Webhook delivery of %s gave up after %d attempts",
                        message.id, attempt,
                    )
                    await self._record_failure(config, message, exc)
                    return
                delay = 2 ** (attempt - 1)
                logger.info("Retrying webhook delivery of %s in %ds", message.id, delay)
                await asyncio.sleep(delay)
                attempt += 1
                continue
            logger.info("Webhook delivered message %s (status %d)", message.id, status)
            return

    async def _send(
        self, url: str, config: WebhookConfig, envelope: dict[str, Any],
    ) -> httpx.Response:
        """POST one envelope, signing the exact bytes that go on the wire."""
        body = serialize(envelope)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
        }
        if config.secret:
            headers[SIGNATURE_HEADER] = sign(config.secret, body)

        try:
            async with httpx.AsyncClient() as client:
                return await client.post(
                    url,
                    content=body,
                    headers=headers,
                    timeout=config.timeout_ms / 1000,
                )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise WebhookDeliveryError(f"{type(exc).__name__}: {exc}") from exc

    async def _post(self, config: WebhookConfig, envelope: dict[str, Any]) -> int:
        """Deliver one envelope; any non-2xx outcome raises WebhookDeliveryError."""
        resp = await self._send(config.url or "", config, envelope)
        if not 200 <= resp.status_code < 300:
            raise WebhookDeliveryError(
                f"HTTP {resp.status_code}: {resp.reason_phrase}",
                status_code=resp.status_code,
            )
        return resp.status_code

    async def _record_failure(
        self,
        config: WebhookConfig,
        message: InboundMessage,
        exc: WebhookDeliveryError,
    ) -> None:
        if self._failure_log is None:
            return
        failure = DeliveryFailure(
            url=config.url,
            message_id=message.id,
            message=message.model_dump(mode="json"),
            error=str(exc),
        )
        try:
            await asyncio.to_thread(self._failure_log.record, failure)
        except OSError:
            logger.exception("Could not write webhook failure log %s", self._failure_log.log_path)

    async def test_webhook(self) -> WebhookTestResult:
        """Send one synthetic envelope without retries and report the outcome."""
        config = self._config
        if not config.url:
            raise WebhookNotConfiguredError("Webhook URL is not configured")

        envelope = {
            "event": EVENT_WEBHOOK_TEST,
            "timestamp": int(time.time() * 1000),
            "data": {
                "message": "Test webhook from WhatsApp API",
                "testId": str(uuid.uuid4()),
            },
        }
        try:
            resp = await self._send(config.url, config, envelope)
        except WebhookDeliveryError as exc:
            return WebhookTestResult(success=False, error=str(exc))

        if not 200 <= resp.status_code < 300:
            return WebhookTestResult(
                success=False,
                status=resp.status_code,
                status_text=resp.reason_phrase,
                error=f"HTTP {resp.status_code}: {resp.reason_phrase}",
            )
        return WebhookTestResult(
            success=True,
            status=resp.status_code,
            status_text=resp.reason_phrase,
            data=_response_data(resp),
        )


def _response_data(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
