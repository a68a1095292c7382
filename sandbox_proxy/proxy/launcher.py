"""Start proxies for a workspace unless they are already listening."""

from __future__ import annotations

import logging
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

STARTUP_POLLS = 30
STARTUP_POLL_INTERVAL = 0.1


def is_listening(socket_path: Path) -> bool:
    """True if something accepts connections on socket_path."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(1.0)
        try:
            sock.connect(str(socket_path))
        except OSError:
            return False
    return True


def proxy_command(
    kind: str,
    socket_path: Path,
    extra_args: Sequence[str] = (),
    config_path: Path | None = None,
) -> list[str]:
    argv = [sys.executable, "-m", "sandbox_proxy"]
    if config_path is not None:
        argv += ["--config", str(config_path)]
    return [*argv, kind, "--socket", str(socket_path), *extra_args]


def ensure_proxy(
    kind: str,
    socket_path: Path,
    extra_args: Sequence[str] = (),
    config_path: Path | None = None,
) -> bool:
    """Make sure a proxy of this kind is serving socket_path.

    Returns:
        True if the proxy was already running or came up in time
    """
    if is_listening(socket_path):
        logger.debug(f"{kind} already listening on {socket_path}")
        return True

    argv = proxy_command(kind, socket_path, extra_args, config_path)
    logger.info(f"Starting {kind}: {' '.join(argv)}")
    try:
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"Failed to start {kind}: {e}")
        return False

    for _ in range(STARTUP_POLLS):
        time.sleep(STARTUP_POLL_INTERVAL)
        if is_listening(socket_path):
            return True

    logger.warning(f"{kind} did not start listening on {socket_path} in time")
    return False
