"""Shared Pydantic data models for the WhatsApp gateway."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

# --- Enums ---


class ConnectionState(str, Enum):
    IDLE = "idle"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"


# --- Session Models ---


class SessionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    connection_state: ConnectionState = ConnectionState.IDLE
    qr_payload: str | None = None
    last_error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED


# --- Message Models ---


class InboundMessage(BaseModel):
    """Canonical record for one inbound transport message."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    sender: str = Field(min_length=1)  # routing address (JID)
    timestamp: int = Field(ge=0)  # unix seconds
    content_type: ContentType
    content: str | dict[str, str]
    raw_type: str  # transport content tag, e.g. "conversation"

    @property
    def is_group(self) -> bool:
        return self.sender.endswith("@g.us")


class DeliveryReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    jid: str
    timestamp: int = Field(default_factory=lambda: int(datetime.now(UTC).timestamp()))


# --- Webhook Models ---

_HTTP_URL: TypeAdapter[AnyHttpUrl] = TypeAdapter(AnyHttpUrl)


def _check_webhook_url(value: str | None) -> str | None:
    """Reject anything that is not an absolute http(s) URL; '' and None pass."""
    if not value:
        return value
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError as exc:
        raise ValueError(f"Invalid webhook URL: {value!r}") from exc
    return value


class WebhookConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str | None = None
    secret: str | None = None
    enabled: bool = False
    retry_attempts: int = Field(default=3, ge=1)
    timeout_ms: int = Field(default=10_000, gt=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str | None) -> str | None:
        return _check_webhook_url(value)

    def redacted(self) -> dict[str, Any]:
        """Public view of the config; the secret is reduced to a flag."""
        return {
            "enabled": self.enabled,
            "url": self.url,
            "hasSecret": bool(self.secret),
            "retryAttempts": self.retry_attempts,
            "timeout": self.timeout_ms,
        }


class WebhookConfigUpdate(BaseModel):
    """Partial update; fields left as None keep their current value."""

    url: str | None = None
    secret: str | None = None
    enabled: bool | None = None
    retry_attempts: int | None = Field(default=None, ge=1, alias="retryAttempts")
    timeout_ms: int | None = Field(default=None, gt=0, alias="timeout")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str | None) -> str | None:
        return _check_webhook_url(value)


class WebhookTestResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    status: int | None = None
    status_text: str | None = None
    data: Any = None
    error: str | None = None


# --- Failure Log Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class DeliveryFailure(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    url: str | None
    message_id: str
    message: dict[str, Any]
    error: str
