"""Transport collaborator interface.

The wire-level WhatsApp client lives outside this package. It is plugged in
through the ``Transport`` protocol below and reports everything it observes
as typed events pushed into an ``EventSink``.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from src.models import DeliveryReceipt


class DisconnectReason(str, Enum):
    LOGGED_OUT = "logged_out"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    BAD_SESSION = "bad_session"
    RESTART_REQUIRED = "restart_required"
    STREAM_ERROR = "stream_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConnectionUpdate:
    """Connection lifecycle change reported by the transport."""

    connection: str | None = None  # "connecting" | "open" | "close"
    qr: str | None = None
    disconnect_reason: DisconnectReason | None = None
    error: str | None = None


@dataclass(frozen=True)
class InboundBatch:
    """A batch of raw inbound message records, in arrival order."""

    messages: list[dict[str, Any]] = field(default_factory=list)


TransportEvent = ConnectionUpdate | InboundBatch
EventSink = Callable[[TransportEvent], None]


class TransportHandle(Protocol):
    """A live connection returned by ``Transport.connect``."""

    own_jid: str | None

    async def send(self, jid: str, content: dict[str, Any]) -> DeliveryReceipt: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def connect(self, auth_dir: Path, emit: EventSink) -> TransportHandle:
        """Open a connection using credentials stored under ``auth_dir``.

        Credential persistence is owned by the transport. Reading the
        credential store may raise ``OSError``; every later failure must be
        reported through ``emit`` as a ``ConnectionUpdate(connection="close")``.
        """
        ...


def load_transport(factory_path: str) -> Transport:
    """Build a transport from a ``module:callable`` reference."""
    module_name, sep, attr = factory_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Transport factory must look like 'package.module:callable', got {factory_path!r}"
        )
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory()
