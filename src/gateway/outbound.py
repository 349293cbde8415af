"""Outbound gateway: readiness-checked sends through the live transport."""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

from src.models import DeliveryReceipt
from src.session.machine import SessionStateMachine

logger = logging.getLogger(__name__)

USER_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
DEFAULT_COUNTRY_CODE = "62"

_NON_DIGITS = re.compile(r"\D")
_JID_CACHE_SIZE = 1024


class NotConnectedError(Exception):
    """The operation needs a connected session."""

    def __init__(self) -> None:
        super().__init__("WhatsApp is not connected. Scan the QR code first.")


class SendFailedError(Exception):
    """The transport rejected a send."""


class InvalidRecipientError(ValueError):
    """The recipient could not be turned into a routing address."""


class OutboundGateway:
    """Translates send requests into transport calls."""

    def __init__(
        self,
        session: SessionStateMachine,
        country_code: str = DEFAULT_COUNTRY_CODE,
    ) -> None:
        self._session = session
        self._country_code = country_code

    def format_jid(self, to: str) -> str:
        """Normalize a phone number or JID into a routing address.

        '0812345', '62812345', '+62 812-345' and '812345' all become
        '62812345@s.whatsapp.net'. Inputs that already carry a user or group
        suffix pass through unchanged.
        """
        return _to_jid(to, self._country_code)

    async def send_text(self, to: str, body: str) -> DeliveryReceipt:
        return await self._send(to, {"text": body}, kind="message")

    async def send_image(
        self, to: str, path: str | Path, caption: str = "",
    ) -> DeliveryReceipt:
        content = {"image": str(path), "caption": caption}
        return await self._send(to, content, kind="image")

    async def send_document(
        self, to: str, path: str | Path, file_name: str, caption: str = "",
    ) -> DeliveryReceipt:
        content = {"document": str(path), "file_name": file_name, "caption": caption}
        return await self._send(to, content, kind="document")

    async def logout(self) -> None:
        await self._session.logout()

    async def _send(self, to: str, content: dict[str, Any], kind: str) -> DeliveryReceipt:
        handle = self._session.handle
        if not self._session.get_status().is_connected or handle is None:
            raise NotConnectedError()

        jid = self.format_jid(to)
        try:
            receipt = await handle.send(jid, content)
        except Exception as exc:  # transport errors surface as SendFailedError
            logger.error("Failed to send %s to %s: %s", kind, to, exc)
            raise SendFailedError(str(exc)) from exc

        logger.info("Sent %s %s to %s", kind, receipt.message_id, to)
        return receipt


@lru_cache(maxsize=_JID_CACHE_SIZE)
def _to_jid(to: str, country_code: str) -> str:
    if GROUP_SUFFIX in to or USER_SUFFIX in to:
        return to

    number = _NON_DIGITS.sub("", to)
    if not number:
        raise InvalidRecipientError(f"Recipient {to!r} contains no digits")
    if number.startswith("0"):
        number = country_code + number[1:]
    if not number.startswith(country_code):
        number = country_code + number
    return number + USER_SUFFIX
