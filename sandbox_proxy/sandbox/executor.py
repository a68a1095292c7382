"""Subprocess execution of the host gh CLI on behalf of the container.

SECURITY:
- Commands are always run from an explicit argument vector, never via a shell.
- Every child gets its own session so timeout/cancel can kill the whole group.
- Debug and repository-override variables are stripped from the child env.
"""

from __future__ import annotations

import atexit
import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable

from pydantic import BaseModel

from sandbox_proxy.core.config import ProxyConfig
from sandbox_proxy.core.models import (
    EXIT_EXEC_ERROR,
    EXIT_TIMEOUT,
    ExecutionPlan,
    PlanKind,
)

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]

# Variables that would make gh print credentials or redirect writes away from
# the workspace repository
ENV_DENYLIST = frozenset({"GH_DEBUG", "DEBUG", "GH_REPO"})
ENV_OVERRIDES = {
    "GH_PROMPT_DISABLED": "1",
    "GH_NO_UPDATE_NOTIFIER": "1",
}


class ExecutionResult(BaseModel):
    """Result of running a command (or a synthetic proxy-side outcome).

    synthetic marks results produced by the proxy itself rather than the CLI;
    their stderr is a proxy diagnostic and gets prefixed by the service.
    """

    exit_code: int
    stdout: bytes = b""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    synthetic: bool = False

    @classmethod
    def failure(cls, exit_code: int, message: str, **kwargs) -> ExecutionResult:
        return cls(exit_code=exit_code, stderr=message, synthetic=True, **kwargs)


@dataclass(frozen=True)
class ExtensionContext:
    """What an extension handler may use: the workspace and a gh runner."""

    workspace: Path
    run_gh: Callable[[list[str]], ExecutionResult]


def _truncate_output(output: bytes, max_bytes: int) -> bytes:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output) <= max_bytes:
        return output
    return output[:max_bytes] + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]\n".encode()


def _child_env() -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in ENV_DENYLIST}
    env.update(ENV_OVERRIDES)
    return env


def _kill_group(proc: subprocess.Popen) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)


class _BoundedReader(threading.Thread):
    """Drain a child's pipe, keeping at most limit bytes.

    Output past the limit is read and discarded so the child never blocks on
    a full pipe, and memory stays bounded by max_output_bytes.
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self._chunks: list[bytes] = []
        self._size = 0

    def run(self) -> None:
        with contextlib.suppress(OSError, ValueError):
            while True:
                chunk = self.stream.read1(self.CHUNK_SIZE)
                if not chunk:
                    return
                if self._size < self.limit:
                    kept = chunk[: self.limit - self._size]
                    self._chunks.append(kept)
                    self._size += len(kept)

    @property
    def data(self) -> bytes:
        return b"".join(self._chunks)


class ProcessRegistry:
    """Track running child processes so none outlives the proxy.

    Uses RLock (reentrant lock) so kill_all() can run from an exit handler
    while the same thread already holds the lock.
    """

    def __init__(self) -> None:
        self._procs: set[subprocess.Popen] = set()
        self._lock = threading.RLock()
        atexit.register(self.kill_all)

    def add(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)

    def remove(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def kill_all(self) -> None:
        """Kill all tracked process groups."""
        with self._lock:
            for proc in list(self._procs):
                if proc.poll() is None:
                    logger.info(f"Killing leftover child process {proc.pid}")
                    _kill_group(proc)
            self._procs.clear()


# Global process registry
_registry = ProcessRegistry()


class SubprocessExecutor:
    """Run gh (or an extension built on it) with a bounded wall-clock timeout."""

    POLL_INTERVAL = 0.1
    READER_GRACE = 5.0

    def __init__(
        self,
        config: ProxyConfig,
        workspace: Path,
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.config = config
        self.workspace = Path(workspace).resolve()
        self._registry = registry or _registry

    def run(
        self,
        plan: ExecutionPlan,
        timeout: float | None = None,
        cancelled: CancelCheck | None = None,
    ) -> ExecutionResult:
        """Execute an allowed plan.

        Args:
            plan: Plan produced by the validator
            timeout: Wall-clock limit in seconds (defaults to config.command_timeout)
            cancelled: Polled while the child runs; True kills it

        Returns:
            ExecutionResult with raw stdout bytes and decoded stderr
        """
        if plan.kind == PlanKind.HELP:
            return ExecutionResult(exit_code=0, stdout=(plan.help_text or "").encode("utf-8"))

        if plan.kind == PlanKind.EXTENSION:
            if plan.extension is None:
                raise ValueError("Extension plan without an extension handler")
            context = ExtensionContext(
                workspace=self.workspace,
                run_gh=lambda args: self.run_gh(args, timeout=timeout, cancelled=cancelled),
            )
            return plan.extension.handler(plan.args, context)

        return self.run_gh(list(plan.args), timeout=timeout, cancelled=cancelled)

    def run_gh(
        self,
        args: list[str],
        timeout: float | None = None,
        cancelled: CancelCheck | None = None,
    ) -> ExecutionResult:
        return self.run_argv([self.config.gh_binary, *args], timeout=timeout, cancelled=cancelled)

    def kill_all(self) -> None:
        self._registry.kill_all()

    def run_argv(
        self,
        argv: list[str],
        timeout: float | None = None,
        cancelled: CancelCheck | None = None,
    ) -> ExecutionResult:
        """Run argv directly (no shell) in the workspace directory."""
        effective_timeout = timeout if timeout is not None else self.config.command_timeout

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.workspace,
                env=_child_env(),
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to execute {argv[0]}: {e}")
            return ExecutionResult.failure(EXIT_EXEC_ERROR, f"failed to execute {argv[0]}: {e}")

        max_bytes = self.config.max_output_bytes
        # One spare byte past the cap lets _truncate_output notice the overflow
        readers = [_BoundedReader(stream, max_bytes + 1) for stream in (proc.stdout, proc.stderr)]
        for reader in readers:
            reader.start()

        self._registry.add(proc)
        try:
            self._wait(proc, effective_timeout, cancelled)
        except subprocess.TimeoutExpired:
            logger.warning(f"{argv[0]} timed out after {effective_timeout}s, killed pid {proc.pid}")
            return ExecutionResult.failure(
                EXIT_TIMEOUT,
                f"command timed out after {effective_timeout:g}s",
                timed_out=True,
            )
        except _Cancelled:
            logger.info(f"Client went away, killed {argv[0]} pid {proc.pid}")
            return ExecutionResult.failure(EXIT_EXEC_ERROR, "request cancelled", cancelled=True)
        finally:
            self._collect(proc, readers)
            self._registry.remove(proc)

        stdout, stderr = (reader.data for reader in readers)
        # Negative return codes mean "killed by signal N"; report shell-style 128+N
        exit_code = proc.returncode if proc.returncode >= 0 else 128 - proc.returncode
        return ExecutionResult(
            exit_code=exit_code,
            stdout=_truncate_output(stdout, max_bytes),
            stderr=_truncate_output(stderr, max_bytes).decode("utf-8", errors="replace"),
        )

    def _wait(
        self,
        proc: subprocess.Popen,
        timeout: float,
        cancelled: CancelCheck | None,
    ) -> None:
        """Wait in short slices so cancellation is noticed promptly.

        Kills the process group and raises TimeoutExpired or _Cancelled when
        the child must be abandoned.
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon(proc)
                raise subprocess.TimeoutExpired(proc.args, timeout)
            try:
                proc.wait(timeout=min(self.POLL_INTERVAL, remaining))
                return
            except subprocess.TimeoutExpired:
                if cancelled is not None and cancelled():
                    self._abandon(proc)
                    raise _Cancelled() from None

    @staticmethod
    def _abandon(proc: subprocess.Popen) -> None:
        _kill_group(proc)
        with contextlib.suppress(subprocess.TimeoutExpired):
            proc.wait(timeout=5)

    def _collect(self, proc: subprocess.Popen, readers: list[_BoundedReader]) -> None:
        """Wait for the pipe readers, then close the pipes.

        A grandchild that inherited the pipes keeps them open after the child
        exits; the rest of its process group is killed after a grace period.
        """
        for reader in readers:
            reader.join(timeout=self.READER_GRACE)
        if any(reader.is_alive() for reader in readers):
            logger.warning(f"Output pipes of pid {proc.pid} still open, killing its group")
            _kill_group(proc)
            for reader in readers:
                reader.join(timeout=self.READER_GRACE)
        for stream in (proc.stdout, proc.stderr):
            with contextlib.suppress(OSError, ValueError):
                stream.close()


class _Cancelled(Exception):
    pass
