"""Shared test fixtures for the WhatsApp gateway."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.models import ContentType, DeliveryReceipt, InboundMessage
from src.session.transport import EventSink


class FakeHandle:
    """In-memory TransportHandle recording sends."""

    def __init__(self, own_jid: str | None = "6289999@s.whatsapp.net") -> None:
        self.own_jid = own_jid
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.send_error: Exception | None = None
        self.logged_out = False
        self.closed = False

    async def send(self, jid: str, content: dict[str, Any]) -> DeliveryReceipt:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, content))
        return DeliveryReceipt(message_id=f"MSG{len(self.sent)}", jid=jid)

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Transport whose connect() hands out FakeHandles and keeps the sink."""

    def __init__(self, connect_error: Exception | None = None) -> None:
        self.connect_error = connect_error
        self.connect_calls = 0
        self.auth_dirs: list[Path] = []
        self.emit: EventSink | None = None
        self.handle = FakeHandle()

    async def connect(self, auth_dir: Path, emit: EventSink) -> FakeHandle:
        self.connect_calls += 1
        self.auth_dirs.append(auth_dir)
        self.emit = emit
        if self.connect_error is not None:
            raise self.connect_error
        return self.handle


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def session_dir(tmp_path: Path) -> Path:
    path = tmp_path / "sessions"
    path.mkdir()
    (path / "creds.json").write_text("{}")
    return path


@pytest.fixture
def fatal_handler() -> MagicMock:
    return MagicMock()


# --- Factory functions for test data ---


def make_raw_message(**kwargs: Any) -> dict[str, Any]:
    """Factory for a raw transport message record with sensible defaults."""
    key = {
        "id": kwargs.pop("id", "3EB0ABC"),
        "remoteJid": kwargs.pop("remote_jid", "6281234@s.whatsapp.net"),
        "fromMe": kwargs.pop("from_me", False),
    }
    defaults: dict[str, Any] = {
        "key": key,
        "messageTimestamp": 1_700_000_000,
        "message": {"conversation": "hello"},
    }
    defaults.update(kwargs)
    return defaults


def make_inbound_message(**kwargs: Any) -> InboundMessage:
    """Factory for InboundMessage with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "3EB0ABC",
        "sender": "6281234@s.whatsapp.net",
        "timestamp": 1_700_000_000,
        "content_type": ContentType.TEXT,
        "content": "hello",
        "raw_type": "conversation",
    }
    defaults.update(kwargs)
    return InboundMessage(**defaults)
