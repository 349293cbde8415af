"""Session state machine: QR pairing, live connection and reconnect policy.

Transport callbacks only enqueue typed events; a single dispatcher task
drains the queue and applies transitions, so a transition never interleaves
with another one.

    IDLE -> AWAITING_SCAN -> CONNECTED
    CONNECTED -> RECONNECTING -> (AWAITING_SCAN | CONNECTED)
    any -> IDLE on logout (terminal for the instance)
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from src.fatal import FatalHandler, terminate_process, watch_task
from src.models import ConnectionState, InboundMessage, SessionStatus
from src.session.normalizer import normalize
from src.session.transport import (
    ConnectionUpdate,
    DisconnectReason,
    InboundBatch,
    Transport,
    TransportEvent,
    TransportHandle,
)

if TYPE_CHECKING:
    from src.webhook.delivery import WebhookDeliveryEngine

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Awaitable[None]]

DEFAULT_RECONNECT_DELAY_SECONDS = 5.0


class FatalInitError(Exception):
    """The credential store could not be read at startup."""


class SessionAlreadyInitializedError(RuntimeError):
    """initialize() was called twice on the same instance."""


class SessionClosedError(RuntimeError):
    """The instance was logged out; a new state machine is required."""


class SessionStateMachine:
    """Owns the connection lifecycle and gates inbound messages."""

    def __init__(
        self,
        transport: Transport,
        session_dir: str | Path,
        delivery_engine: WebhookDeliveryEngine | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        on_fatal: FatalHandler = terminate_process,
    ) -> None:
        self._transport = transport
        self._session_dir = Path(session_dir)
        self._delivery = delivery_engine
        self._reconnect_delay = reconnect_delay
        self._on_fatal = on_fatal

        self._status = SessionStatus()
        self._handle: TransportHandle | None = None
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._handlers: list[MessageHandler] = []
        self._dispatcher: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_pending = False
        self._initialized = False
        self._logged_out = False

    # --- Read side ---

    def get_status(self) -> SessionStatus:
        return self._status

    @property
    def handle(self) -> TransportHandle | None:
        return self._handle

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_pending

    # --- Message handlers ---

    def add_message_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def remove_message_handler(self, handler: MessageHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Connect the transport and start the event dispatcher.

        Raises FatalInitError when the credential store is unusable. Any other
        connect failure is handled as a closed connection and retried.
        """
        if self._logged_out:
            raise SessionClosedError("Session was logged out; create a new instance")
        if self._initialized:
            raise SessionAlreadyInitializedError("Session is already initialized")
        self._initialized = True

        try:
            await asyncio.to_thread(self._session_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise FatalInitError(f"Cannot prepare session directory {self._session_dir}: {exc}") from exc

        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="session-dispatcher")
        watch_task(self._dispatcher, self._on_fatal)
        logger.info("Initializing WhatsApp session from %s", self._session_dir)
        try:
            await self._connect(initial=True)
        except FatalInitError:
            self._dispatcher.cancel()
            raise

    async def logout(self) -> None:
        """Log out, wipe credentials and force IDLE. Safe to repeat."""
        self._logged_out = True
        self._cancel_reconnect()
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                await handle.logout()
            except Exception:  # teardown continues even if the transport is already gone
                logger.exception("Transport logout failed; wiping local session anyway")
        await self._wipe_credentials()
        self._set_state(ConnectionState.IDLE, qr_payload=None, last_error=None)
        logger.info("Logged out of WhatsApp")

    async def close(self) -> None:
        """Disconnect without logging out; credentials are kept for next start."""
        self._cancel_reconnect()
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.close()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
        if self._status.connection_state is not ConnectionState.IDLE:
            self._set_state(ConnectionState.DISCONNECTED)

    async def drain(self) -> None:
        """Wait until every queued transport event has been handled."""
        await self._events.join()

    # --- Transport event intake ---

    def emit(self, event: TransportEvent) -> None:
        """Event sink handed to the transport."""
        self._events.put_nowait(event)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            finally:
                self._events.task_done()

    async def handle_event(self, event: TransportEvent) -> None:
        """Apply one transport event."""
        if isinstance(event, ConnectionUpdate):
            await self._on_connection_update(event)
        elif isinstance(event, InboundBatch):
            await self._on_inbound_batch(event)

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if self._logged_out:
            logger.debug("Ignoring connection update after logout: %s", update)
            return

        if update.qr:
            logger.info("New QR code available")
            self._set_state(ConnectionState.AWAITING_SCAN, qr_payload=update.qr)

        if update.connection == "close":
            reason = update.disconnect_reason or DisconnectReason.UNKNOWN
            detail = f"{reason.value}: {update.error}" if update.error else reason.value
            self._handle = None
            if reason is DisconnectReason.LOGGED_OUT:
                logger.warning("Logged out by the server; a new QR scan is required")
                self._cancel_reconnect()
                self._set_state(ConnectionState.IDLE, qr_payload=None, last_error=detail)
                await self._wipe_credentials()
            else:
                logger.warning("Connection closed (%s); reconnecting", detail)
                self._set_state(ConnectionState.RECONNECTING, last_error=detail)
                self._schedule_reconnect()
        elif update.connection == "open":
            logger.info("WhatsApp connected")
            self._set_state(ConnectionState.CONNECTED, qr_payload=None, last_error=None)

    async def _on_inbound_batch(self, batch: InboundBatch) -> None:
        if not self._status.is_connected:
            logger.warning(
                "Dropping %d inbound message(s) received while %s",
                len(batch.messages), self._status.connection_state.value,
            )
            return

        own_jid = self._handle.own_jid if self._handle is not None else None
        for raw in batch.messages:
            message = normalize(raw, own_jid=own_jid)
            if message is None:
                continue
            logger.info(
                "Inbound %s message %s from %s",
                message.content_type.value, message.id, message.sender,
            )
            if self._delivery is not None:
                self._delivery.deliver(message)
            for handler in list(self._handlers):
                try:
                    await handler(message)
                except Exception:  # one bad handler must not stop the batch
                    logger.exception("Message handler %r failed", handler)

    # --- Connection management ---

    async def _connect(self, *, initial: bool) -> None:
        try:
            self._handle = await self._transport.connect(self._session_dir, self.emit)
        except OSError as exc:
            if initial:
                raise FatalInitError(f"Cannot read session credentials: {exc}") from exc
            self._report_connect_failure(exc)
        except Exception as exc:  # connect failures take the reconnect path
            self._report_connect_failure(exc)

    def _report_connect_failure(self, exc: Exception) -> None:
        logger.error("Transport connect failed: %s", exc)
        self.emit(ConnectionUpdate(
            connection="close",
            disconnect_reason=DisconnectReason.CONNECTION_LOST,
            error=str(exc),
        ))

    def _schedule_reconnect(self) -> None:
        if self._reconnect_pending:
            logger.debug("Reconnect already pending; not scheduling another")
            return
        self._reconnect_pending = True
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_delay(), name="session-reconnect",
        )
        watch_task(self._reconnect_task, self._on_fatal)

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._reconnect_pending = False
        if self._logged_out:
            return
        logger.info("Reconnecting to WhatsApp")
        await self._connect(initial=False)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        self._reconnect_pending = False

    async def _wipe_credentials(self) -> None:
        await asyncio.to_thread(shutil.rmtree, self._session_dir, True)

    def _set_state(self, state: ConnectionState, **changes: str | None) -> None:
        self._status = self._status.model_copy(
            update={"connection_state": state, **changes},
        )
