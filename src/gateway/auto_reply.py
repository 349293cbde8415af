"""Ping auto-reply handler for liveness checks from a phone."""

from __future__ import annotations

import logging

from src.gateway.outbound import NotConnectedError, OutboundGateway, SendFailedError
from src.models import ContentType, InboundMessage
from src.session.machine import MessageHandler

logger = logging.getLogger(__name__)

PONG_TEXT = "Pong! The WhatsApp API is working."


def make_ping_responder(gateway: OutboundGateway) -> MessageHandler:
    """Answer any text message containing 'ping' with a pong."""

    async def _respond(message: InboundMessage) -> None:
        if message.content_type is not ContentType.TEXT:
            return
        if not isinstance(message.content, str) or "ping" not in message.content.lower():
            return
        try:
            await gateway.send_text(message.sender, PONG_TEXT)
        except (NotConnectedError, SendFailedError) as exc:
            logger.warning("Ping auto-reply to %s failed: %s", message.sender, exc)

    return _respond
