"""Failure log: append-only JSON Lines record of exhausted webhook deliveries."""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path

from src.models import DeliveryFailure

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5


class FailureLog:
    """One JSON line per delivery that ran out of attempts.

    Records are only ever appended. The file is rotated by size into
    ``<name>.1`` .. ``<name>.<backup_count>``, so retention is bounded at
    roughly ``max_bytes * (backup_count + 1)``: once every backup slot is
    full, rotation deletes the oldest backup and a warning is logged. Raise
    ``WEBHOOK_FAILURE_LOG_BACKUP_COUNT`` (or ship the backups elsewhere) when
    older failures must be kept. A sibling lock file serializes rotation and
    appends across processes.
    """

    def __init__(
        self,
        log_path: str,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count

    @classmethod
    def from_env(cls, log_path: str) -> FailureLog:
        return cls(
            log_path=log_path,
            max_bytes=int(
                os.environ.get("WEBHOOK_FAILURE_LOG_MAX_BYTES", str(DEFAULT_MAX_BYTES)),
            ),
            backup_count=int(
                os.environ.get("WEBHOOK_FAILURE_LOG_BACKUP_COUNT", str(DEFAULT_BACKUP_COUNT)),
            ),
        )

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _needs_rotation(self) -> bool:
        try:
            return self.log_path.stat().st_size >= self._max_bytes
        except FileNotFoundError:
            return False

    def _rotate(self) -> None:
        oldest = self._backup(self._backup_count)
        if oldest.exists():
            logger.warning(
                "Webhook failure log retention reached; discarding %s", oldest,
            )
            oldest.unlink()
        for index in reversed(range(1, self._backup_count)):
            older = self._backup(index)
            if older.exists():
                older.rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))
        logger.info("Rotated webhook failure log %s", self.log_path)

    def record(self, failure: DeliveryFailure) -> None:
        """Append ``failure``, rotating first when the file is full."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.log_path.with_name(f".{self.log_path.name}.lock")
        with open(lock_path, "w") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                if self._needs_rotation():
                    self._rotate()
                with open(self.log_path, "a", encoding="utf-8") as out:
                    out.write(failure.model_dump_json() + "\n")
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

    def read_all(self) -> list[DeliveryFailure]:
        """Entries in the current (unrotated) log file, oldest first."""
        if not self.log_path.exists():
            return []
        lines = self.log_path.read_text(encoding="utf-8").splitlines()
        return [DeliveryFailure.model_validate_json(line) for line in lines if line.strip()]
