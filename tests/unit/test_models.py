"""Tests for shared Pydantic data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.models import (
    ConnectionState,
    ContentType,
    DeliveryFailure,
    InboundMessage,
    SessionStatus,
    WebhookConfig,
    WebhookConfigUpdate,
)
from tests.conftest import make_inbound_message


class TestSessionStatus:
    def test_defaults_to_idle(self):
        status = SessionStatus()
        assert status.connection_state is ConnectionState.IDLE
        assert status.qr_payload is None
        assert status.is_connected is False

    def test_connected_flag(self):
        status = SessionStatus(connection_state=ConnectionState.CONNECTED)
        assert status.is_connected is True

    def test_immutable(self):
        status = SessionStatus()
        with pytest.raises(ValidationError):
            status.connection_state = ConnectionState.CONNECTED  # type: ignore[misc]

    def test_state_serializes_lowercase(self):
        status = SessionStatus(connection_state=ConnectionState.AWAITING_SCAN)
        assert status.model_dump(mode="json")["connection_state"] == "awaiting_scan"


class TestInboundMessage:
    def test_group_detection(self):
        assert make_inbound_message(sender="120363@g.us").is_group is True
        assert make_inbound_message().is_group is False

    def test_media_content_is_a_mapping(self):
        msg = make_inbound_message(
            content_type=ContentType.DOCUMENT,
            content={"mediaType": "document", "fileName": "a.pdf"},
            raw_type="documentMessage",
        )
        assert msg.content == {"mediaType": "document", "fileName": "a.pdf"}

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            make_inbound_message(id="")

    def test_round_trip(self):
        msg = make_inbound_message()
        assert InboundMessage.model_validate(msg.model_dump()) == msg


class TestWebhookConfig:
    def test_defaults(self):
        config = WebhookConfig()
        assert config.enabled is False
        assert config.retry_attempts == 3
        assert config.timeout_ms == 10_000

    def test_retry_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            WebhookConfig(retry_attempts=0)

    def test_redacted_hides_secret(self):
        view = WebhookConfig(url="https://x", secret="s3cret", enabled=True).redacted()
        assert view["hasSecret"] is True
        assert "s3cret" not in str(view)

    @pytest.mark.parametrize("url", ["http://a:notaport/hook", "http://[::1", "not a url"])
    def test_unparseable_url_rejected(self, url):
        with pytest.raises(ValidationError):
            WebhookConfig(url=url)
        with pytest.raises(ValidationError):
            WebhookConfigUpdate(url=url)

    def test_empty_url_update_allowed(self):
        assert WebhookConfigUpdate(url="").url == ""

    def test_update_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            WebhookConfigUpdate(timeout_ms=0)


class TestDeliveryFailure:
    def test_timestamp_defaults_to_iso(self):
        failure = DeliveryFailure(
            url="https://x", message_id="m1", message={}, error="HTTP 500",
        )
        assert "T" in failure.timestamp
