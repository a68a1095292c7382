"""Append-only audit log: JSON lines recording each proxy decision and outcome.

Writes are serialized by a threading lock (connection workers) and a
filelock (other proxy processes sharing the workspace). The file is opened,
appended, flushed and closed per record, without following a symlink at the
log file or its directory (both live where the container can write). A
logging failure never changes the outcome of the request being logged.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
from pathlib import Path
from typing import Iterator

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from sandbox_proxy.core.models import (
    AuditAction,
    AuditDecision,
    AuditRecord,
    AuditStage,
    describe_request,
)

logger = logging.getLogger(__name__)

_APPEND_FLAGS = os.O_WRONLY | os.O_APPEND | os.O_CREAT | os.O_NOFOLLOW
_DIR_FLAGS = os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW


class AuditLogger:
    """Per-workspace audit log for one proxy."""

    LOCK_TIMEOUT: float = 5.0

    def __init__(self, log_path: Path, proxy: str) -> None:
        self.log_path = Path(log_path)
        self.proxy = proxy
        self._lock = threading.Lock()
        self._filelock = FileLock(str(self.log_path) + ".lock", timeout=self.LOCK_TIMEOUT)

    def record(self, entry: AuditRecord) -> bool:
        """Append entry; returns False (after warning) if it could not be written."""
        line = entry.model_dump_json() + "\n"
        try:
            with self._lock:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self._filelock:
                    with self._open_for_append() as f:
                        f.write(line)
                        f.flush()
        except FileLockTimeout:
            logger.warning(f"Audit log lock timeout after {self.LOCK_TIMEOUT}s: {self.log_path}")
            return False
        except OSError as e:
            logger.warning(f"Failed to write audit log {self.log_path}: {e}")
            return False
        return True

    def _open_for_append(self):
        dir_fd = os.open(self.log_path.parent, _DIR_FLAGS)
        try:
            fd = os.open(self.log_path.name, _APPEND_FLAGS, 0o600, dir_fd=dir_fd)
        finally:
            os.close(dir_fd)
        return os.fdopen(fd, "a", encoding="utf-8")

    def log(
        self,
        request: object,
        decision: AuditDecision,
        action: AuditAction,
        reason: str | None = None,
        exit_code: int | None = None,
        duration_ms: float | None = None,
        stage: AuditStage = AuditStage.DECIDED,
    ) -> bool:
        return self.record(
            AuditRecord(
                proxy=self.proxy,
                request=describe_request(request),
                decision=decision,
                action=action,
                stage=stage,
                reason=reason,
                exit_code=exit_code,
                duration_ms=round(duration_ms, 1) if duration_ms is not None else None,
            )
        )

    def read(self) -> Iterator[AuditRecord]:
        """Yield records in file order, skipping unparsable lines."""
        if not self.log_path.exists():
            return
        with open(self.log_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                with contextlib.suppress(ValueError):
                    yield AuditRecord.model_validate_json(line)
