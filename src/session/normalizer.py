"""Inbound message normalization.

Turns a raw transport record into an ``InboundMessage``. A raw record looks
like::

    {
        "key": {"id": "3EB0...", "remoteJid": "628123@s.whatsapp.net", "fromMe": False},
        "messageTimestamp": 1700000000,
        "message": {"conversation": "hello"},
    }
"""

from __future__ import annotations

from typing import Any

from src.models import ContentType, InboundMessage

_TYPE_MAP: dict[str, ContentType] = {
    "conversation": ContentType.TEXT,
    "extendedTextMessage": ContentType.TEXT,
    "imageMessage": ContentType.IMAGE,
    "videoMessage": ContentType.VIDEO,
    "audioMessage": ContentType.AUDIO,
    "documentMessage": ContentType.DOCUMENT,
}

# Keys that wrap protocol metadata rather than user content
_ENVELOPE_KEYS = frozenset({"messageContextInfo", "senderKeyDistributionMessage"})


def content_tag(body: dict[str, Any]) -> str | None:
    """Return the first content key of a message body."""
    for key in body:
        if key not in _ENVELOPE_KEYS:
            return key
    return None


def normalize(
    raw: dict[str, Any], own_jid: str | None = None,
) -> InboundMessage | None:
    """Build an InboundMessage, or None when the record should be skipped.

    Skips self-echo (records sent by this account), records without an id or
    sender, and records with no body.
    """
    key = raw.get("key")
    if not isinstance(key, dict) or key.get("fromMe"):
        return None
    message_id = key.get("id")
    sender = key.get("remoteJid")
    if not isinstance(message_id, str) or not message_id:
        return None
    if not isinstance(sender, str) or not sender:
        return None
    if own_jid and _bare(sender) == _bare(own_jid):
        return None

    body = raw.get("message")
    if not body or not isinstance(body, dict):
        return None
    tag = content_tag(body)
    if tag is None:
        return None

    content_type = _TYPE_MAP.get(tag, ContentType.OTHER)
    return InboundMessage(
        id=message_id,
        sender=sender,
        timestamp=_timestamp(raw.get("messageTimestamp")),
        content_type=content_type,
        content=_extract_content(tag, content_type, body.get(tag)),
        raw_type=tag,
    )


def _timestamp(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _extract_content(
    tag: str, content_type: ContentType, node: Any,
) -> str | dict[str, str]:
    if tag == "conversation":
        return _text(node)
    node = node if isinstance(node, dict) else {}
    if content_type is ContentType.TEXT:
        return _text(node.get("text"))
    if content_type in (ContentType.IMAGE, ContentType.VIDEO):
        return {"mediaType": content_type.value, "caption": _text(node.get("caption"))}
    if content_type is ContentType.AUDIO:
        return {"mediaType": content_type.value}
    if content_type is ContentType.DOCUMENT:
        return {"mediaType": content_type.value, "fileName": _text(node.get("fileName"))}
    return tag


def _bare(jid: str) -> str:
    """Strip the device suffix and server from a JID: '62812:3@s.whatsapp.net' -> '62812'."""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]
