# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the sandbox-proxy test suite.

This module provides foundational fixtures used across all test modules:
- A workspace directory and a fake gh executable
- Proxy configuration pointing at the fake gh
- Short socket directories (AF_UNIX paths are limited to ~108 bytes)
- A helper that runs a proxy server on a background thread

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import shutil
import sys
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator

import pytest

from sandbox_proxy.core.audit import AuditLogger
from sandbox_proxy.core.config import ProxyConfig
from sandbox_proxy.core.extensions import detect_repo
from sandbox_proxy.proxy.server import UnixProxyServer
from sandbox_proxy.sandbox.executor import ProcessRegistry, SubprocessExecutor

# Fake gh: echoes its argv, cwd and a few env vars as JSON. A handful of
# leading words switch to special behaviours used by executor tests.
FAKE_GH_SOURCE = """#!{python}
import json
import os
import sys
import time

args = sys.argv[1:]
if args[:1] == ["sleep"]:
    time.sleep(float(args[1]))
elif args[:1] == ["binary"]:
    sys.stdout.buffer.write(bytes([0x89, 0x50, 0x4E, 0x47, 0xFF, 0x00, 0xFE]))
    sys.exit(0)
elif args[:1] == ["fail"]:
    sys.stderr.write("boom\\n")
    sys.exit(3)
elif args[:1] == ["spam"]:
    sys.stdout.write("x" * int(args[1]))
    sys.exit(0)

json.dump(
    {{
        "args": args,
        "cwd": os.getcwd(),
        "env": {{
            name: os.environ.get(name)
            for name in (
                "GH_DEBUG",
                "DEBUG",
                "GH_REPO",
                "GH_PROMPT_DISABLED",
                "GH_NO_UPDATE_NOTIFIER",
            )
        }},
    }},
    sys.stdout,
)
"""


# =============================================================================
# Workspace and Executable Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_repo_cache() -> Generator[None, None, None]:
    """detect_repo caches per workspace path; isolate tests from each other."""
    detect_repo.cache_clear()
    yield
    detect_repo.cache_clear()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """An empty workspace directory (resolved, as the executor resolves it)."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path.resolve()


@pytest.fixture
def fake_gh(tmp_path: Path) -> Path:
    """Executable fake gh run by the current interpreter."""
    script = tmp_path / "bin" / "gh"
    script.parent.mkdir()
    script.write_text(FAKE_GH_SOURCE.format(python=sys.executable))
    script.chmod(0o755)
    return script


@pytest.fixture
def screenshots_dir(tmp_path: Path) -> Path:
    path = tmp_path / "Screenshots"
    path.mkdir()
    return path


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def config(fake_gh: Path, screenshots_dir: Path) -> ProxyConfig:
    """Proxy configuration with short timeouts and the fake gh."""
    return ProxyConfig(
        gh_binary=str(fake_gh),
        command_timeout=10.0,
        read_timeout=5.0,
        screenshots_dir=screenshots_dir,
        watchdog_interval=0.1,
    )


@pytest.fixture
def registry() -> ProcessRegistry:
    return ProcessRegistry()


@pytest.fixture
def executor(config: ProxyConfig, workspace: Path, registry: ProcessRegistry) -> SubprocessExecutor:
    return SubprocessExecutor(config, workspace, registry=registry)


@pytest.fixture
def audit(tmp_path: Path) -> AuditLogger:
    return AuditLogger(tmp_path / "logs" / "gh-proxy.log", "gh-proxy")


# =============================================================================
# Socket Fixtures
# =============================================================================


@pytest.fixture
def socket_dir() -> Generator[Path, None, None]:
    """Short directory under /tmp for socket files."""
    path = Path(tempfile.mkdtemp(prefix="sp-", dir="/tmp"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def serve() -> Generator[Callable[[UnixProxyServer], UnixProxyServer], None, None]:
    """Run servers on background threads; shut them down after the test."""
    running: list[tuple[UnixProxyServer, threading.Thread]] = []

    def _serve(server: UnixProxyServer, watch_parent: bool = False) -> UnixProxyServer:
        thread = threading.Thread(target=server.serve, args=(watch_parent,), daemon=True)
        thread.start()
        running.append((server, thread))
        return server

    yield _serve

    for server, thread in running:
        server.shutdown()
        thread.join(timeout=5)


@pytest.fixture
def git_workspace(workspace: Path, mocker) -> Path:
    """Workspace whose origin remote resolves to octo/widgets."""
    completed = mocker.Mock(returncode=0, stdout="git@github.com:octo/widgets.git\n", stderr="")
    mocker.patch("sandbox_proxy.core.extensions.subprocess.run", return_value=completed)
    return workspace

