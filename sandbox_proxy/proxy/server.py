"""Threaded one-shot Unix domain socket server shared by both proxies.

Each accepted connection gets its own worker thread, reads exactly one
newline-terminated JSON frame, receives exactly one response frame, and is
closed. There is no pipelining and no session state.
"""

from __future__ import annotations

import contextlib
import logging
import os
import select
import socket
import socketserver
import stat
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from sandbox_proxy.core.audit import AuditLogger
from sandbox_proxy.core.codec import encode_response
from sandbox_proxy.core.config import ProxyConfig
from sandbox_proxy.core.models import (
    EXIT_EXEC_ERROR,
    EXIT_PROTOCOL_ERROR,
    AuditAction,
    AuditDecision,
    ProxyResponse,
    ResourceError,
)
from sandbox_proxy.sandbox.executor import CancelCheck

logger = logging.getLogger(__name__)

_HANGUP_EVENTS = select.POLLHUP | select.POLLERR | select.POLLNVAL


class ProxyService(ABC):
    """Request semantics for one proxy; the server only handles framing."""

    name: str = "proxy"

    def __init__(self, audit: AuditLogger) -> None:
        self.audit = audit

    @abstractmethod
    def handle(self, line: bytes, cancelled: CancelCheck | None = None) -> ProxyResponse | None:
        """Turn one request frame into one response.

        Returns None only when the client is gone and no response should be
        written.
        """

    @abstractmethod
    def error_response(self, exit_code: int, message: str) -> ProxyResponse:
        """Response for a proxy-side failure with a diagnostic on stderr."""

    def diagnostic(self, message: str) -> str:
        return f"{self.name}: {message}\n"

    def reject_frame(self, raw: bytes, reason: str) -> ProxyResponse:
        """Audit and answer a frame that could not be decoded."""
        self.audit.log(
            raw,
            AuditDecision.DENIED,
            AuditAction.INVALID,
            reason=reason,
            exit_code=EXIT_PROTOCOL_ERROR,
        )
        return self.error_response(EXIT_PROTOCOL_ERROR, f"invalid request: {reason}")

    def close(self) -> None:
        pass


def _peer_closed(sock: socket.socket) -> bool:
    """True once the client has hung up completely.

    A half-close (shutdown(SHUT_WR) after the frame) only ends the client's
    sending side and does not count; the client is still waiting for the
    response. A full close or a socket error reports POLLHUP or POLLERR.
    """
    poller = select.poll()
    try:
        poller.register(sock, select.POLLHUP | select.POLLERR)
        events = poller.poll(0)
    except (OSError, ValueError):
        return True
    return any(mask & _HANGUP_EVENTS for _, mask in events)


class ConnectionHandler(socketserver.StreamRequestHandler):
    """Serve exactly one request/response pair on an accepted connection."""

    server: UnixProxyServer

    def setup(self) -> None:
        # StreamRequestHandler applies self.timeout to the connection
        self.timeout = self.server.config.read_timeout
        super().setup()

    def handle(self) -> None:
        service = self.server.service
        limit = self.server.config.max_request_bytes

        try:
            line = self.rfile.readline(limit + 1)
        except socket.timeout:
            self._send(service.reject_frame(b"", "read timeout"))
            return
        except OSError as e:
            logger.debug(f"{service.name}: connection error while reading: {e}")
            return

        if not line:
            return

        if len(line) > limit:
            response = service.reject_frame(line[:200], f"request exceeds {limit} bytes")
        else:
            try:
                response = service.handle(line, cancelled=self._client_gone)
            except Exception as e:
                logger.exception(f"{service.name}: unhandled error while serving request")
                response = service.error_response(EXIT_EXEC_ERROR, f"internal error: {e}")

        if response is None:
            logger.info(f"{service.name}: client disconnected, response abandoned")
            return
        self._send(response)

    def _client_gone(self) -> bool:
        return _peer_closed(self.connection)

    def _send(self, response: ProxyResponse) -> None:
        try:
            self.wfile.write(encode_response(response))
            self.wfile.flush()
        except OSError as e:
            logger.info(f"{self.server.service.name}: could not deliver response: {e}")


class ParentWatchdog(threading.Thread):
    """Shut the server down once the process that launched it has exited."""

    def __init__(self, server: UnixProxyServer, interval: float) -> None:
        super().__init__(name=f"{server.service.name}-watchdog", daemon=True)
        self.server = server
        self.interval = interval
        self.parent_pid = os.getppid()
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            current = os.getppid()
            if current != self.parent_pid:
                logger.info(
                    f"{self.server.service.name}: parent {self.parent_pid} exited "
                    f"(ppid now {current}), shutting down"
                )
                self.server.shutdown()
                return

    def stop(self) -> None:
        self._stop_event.set()


def prepare_socket_path(socket_path: Path) -> None:
    """Create the owner-only parent directory and remove a stale socket.

    The directory is inside the workspace, so a symlink there is refused
    rather than followed.

    Raises:
        ResourceError: If the directory cannot be created, is a symlink, or
                       the path is occupied by something other than a socket
    """
    parent = socket_path.parent
    if parent.is_symlink():
        raise ResourceError(f"refusing to use symlinked socket directory {parent}")
    try:
        parent.mkdir(parents=True, exist_ok=True)
        dir_fd = os.open(parent, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW)
        try:
            os.fchmod(dir_fd, 0o700)
        finally:
            os.close(dir_fd)
    except OSError as e:
        raise ResourceError(f"cannot prepare socket directory {parent}: {e}") from e

    try:
        mode = os.lstat(socket_path).st_mode
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(mode):
        raise ResourceError(f"refusing to replace non-socket path {socket_path}")
    socket_path.unlink()
    logger.info(f"Removed stale socket {socket_path}")


class UnixProxyServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    """Unix socket server with one daemon worker thread per connection."""

    daemon_threads = True

    def __init__(self, socket_path: Path, service: ProxyService, config: ProxyConfig) -> None:
        self.socket_path = Path(socket_path)
        self.service = service
        self.config = config

        prepare_socket_path(self.socket_path)
        try:
            super().__init__(str(self.socket_path), ConnectionHandler)
        except OSError as e:
            raise ResourceError(f"failed to bind {self.socket_path}: {e}") from e
        self._closed = False

    def serve(self, watch_parent: bool = False) -> None:
        """Serve until shutdown(); always releases the socket on exit."""
        watchdog = None
        if watch_parent:
            watchdog = ParentWatchdog(self, self.config.watchdog_interval)
            watchdog.start()

        logger.info(f"{self.service.name}: listening on {self.socket_path}")
        try:
            self.serve_forever(poll_interval=0.5)
        finally:
            if watchdog is not None:
                watchdog.stop()
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.server_close()
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
        self.service.close()
        logger.info(f"{self.service.name}: stopped")
