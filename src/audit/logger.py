"""Append-only JSON Lines record of webhook and delivery events."""

from __future__ import annotations

import fcntl
import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from src.models import AuditEvent


def read_audit_events(log_path: Path, limit: int | None = None) -> list[dict[str, object]]:
    """Load events from an audit log file, oldest first.

    With ``limit`` only the newest ``limit`` events are returned. Blank lines
    are skipped.
    """
    if not log_path.exists():
        return []
    events = [json.loads(line) for line in log_path.read_text().splitlines() if line.strip()]
    if limit is not None:
        events = events[-limit:] if limit > 0 else []
    return events


class AuditLogger:
    """Audit sink shared by the webhook, token and delivery paths.

    The active file rolls over to ``<name>.1`` once it reaches ``max_bytes``;
    older generations shift up and anything past ``backup_count`` is deleted.
    """

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        """Rotation limits come from AUDIT_LOG_MAX_BYTES and AUDIT_LOG_BACKUP_COUNT."""
        return cls(
            log_path=log_path,
            max_bytes=int(os.environ.get("AUDIT_LOG_MAX_BYTES", "10485760")),
            backup_count=int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", "5")),
        )

    def backups(self) -> list[Path]:
        """Backup file names, newest generation first."""
        return [
            self.log_path.with_name(f"{self.log_path.name}.{n}")
            for n in range(1, self._backup_count + 1)
        ]

    @contextmanager
    def _locked(self) -> Iterator[None]:
        # Separate lock file: the log itself is renamed during rotation
        lock_path = self.log_path.with_name(f".{self.log_path.name}.lock")
        with open(lock_path, "w") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

    def _needs_rotation(self) -> bool:
        try:
            return self.log_path.stat().st_size >= self._max_bytes
        except FileNotFoundError:
            return False

    def _rotate(self) -> None:
        generations = self.backups()
        if not generations:
            self.log_path.unlink()
            return
        generations[-1].unlink(missing_ok=True)
        for newer, older in zip(reversed(generations[:-1]), reversed(generations[1:])):
            if newer.exists():
                newer.rename(older)
        self.log_path.rename(generations[0])

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        line = event.model_dump_json(exclude_none=True) + "\n"
        with self._locked():
            if self._needs_rotation():
                self._rotate()
            with open(self.log_path, "a") as out:
                out.write(line)
