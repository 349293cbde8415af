"""Tests for the webhook failure log."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from src.models import DeliveryFailure
from src.webhook.failure_log import FailureLog


def _make_failure(**kwargs: object) -> DeliveryFailure:
    defaults: dict[str, object] = {
        "url": "https://hooks.example.com/wa",
        "message_id": "3EB0ABC",
        "message": {"id": "3EB0ABC", "content": "hello"},
        "error": "HTTP 503: Service Unavailable",
    }
    defaults.update(kwargs)
    return DeliveryFailure(**defaults)  # type: ignore[arg-type]


def test_record_appends_json_line(tmp_path: Path) -> None:
    log_file = tmp_path / "webhook-failures.log"
    FailureLog(str(log_file)).record(_make_failure())

    lines = log_file.read_text().strip().split("\n")
    assert len(lines) == 1
    parsed = json.loads(lines[0])
    assert parsed["message_id"] == "3EB0ABC"
    assert parsed["url"] == "https://hooks.example.com/wa"
    assert parsed["error"].startswith("HTTP 503")
    assert "T" in parsed["timestamp"]


def test_record_creates_parent_directory(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "nested" / "failures.log"
    FailureLog(str(log_file)).record(_make_failure())
    assert log_file.exists()


def test_entries_are_appended_not_overwritten(tmp_path: Path) -> None:
    log = FailureLog(str(tmp_path / "failures.log"))
    for i in range(3):
        log.record(_make_failure(message_id=f"m{i}"))

    entries = log.read_all()
    assert [e.message_id for e in entries] == ["m0", "m1", "m2"]


def test_read_all_on_missing_file(tmp_path: Path) -> None:
    assert FailureLog(str(tmp_path / "none.log")).read_all() == []


def test_rotation_triggers_at_threshold(tmp_path: Path) -> None:
    log_file = tmp_path / "failures.log"
    log = FailureLog(str(log_file), max_bytes=100, backup_count=3)
    for i in range(10):
        log.record(_make_failure(message_id=f"m{i}"))
    assert (tmp_path / "failures.log.1").exists()


def test_rotation_deletes_oldest(tmp_path: Path) -> None:
    log = FailureLog(str(tmp_path / "failures.log"), max_bytes=50, backup_count=2)
    for i in range(20):
        log.record(_make_failure(message_id=f"m{i}"))
    assert not (tmp_path / "failures.log.3").exists()


def test_rotation_configurable_via_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WEBHOOK_FAILURE_LOG_MAX_BYTES", "500")
    monkeypatch.setenv("WEBHOOK_FAILURE_LOG_BACKUP_COUNT", "7")
    log = FailureLog.from_env(str(tmp_path / "failures.log"))
    assert log._max_bytes == 500
    assert log._backup_count == 7


def test_rotation_keeps_records_until_backups_are_full(tmp_path: Path) -> None:
    log_file = tmp_path / "failures.log"
    log = FailureLog(str(log_file), max_bytes=1, backup_count=3)
    for i in range(4):
        log.record(_make_failure(message_id=f"m{i}"))

    kept = [log_file, *(tmp_path / f"failures.log.{n}" for n in (1, 2, 3))]
    ids = sorted(
        json.loads(line)["message_id"]
        for path in kept
        for line in path.read_text().splitlines()
    )
    assert ids == ["m0", "m1", "m2", "m3"]


def test_discarding_oldest_backup_is_logged(
    tmp_path: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    log = FailureLog(str(tmp_path / "failures.log"), max_bytes=1, backup_count=1)
    with caplog.at_level(logging.WARNING, logger="src.webhook.failure_log"):
        for i in range(3):
            log.record(_make_failure(message_id=f"m{i}"))

    assert any("retention reached" in r.getMessage() for r in caplog.records)
