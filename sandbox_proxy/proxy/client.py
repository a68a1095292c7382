"""Reference thin clients for both proxies.

They forward a request, then mirror the response as process output: stdout
and stderr byte-for-byte, exit status equal to exit_code. Every local
failure (missing socket, broken response) exits 1 with a diagnostic.
"""

from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import IO, Any, Sequence

from sandbox_proxy.core.codec import decode_response, encode_request, response_stdout
from sandbox_proxy.core.config import (
    CLIPBOARD_PROXY_SOCKET_NAME,
    CONTAINER_WORKSPACE,
    GH_PROXY_SOCKET_NAME,
    proxy_dir,
)
from sandbox_proxy.core.models import ClipboardRequest, CommandRequest, ProtocolError

GH_CLIENT_SOCKET = proxy_dir(CONTAINER_WORKSPACE) / GH_PROXY_SOCKET_NAME
CLIPBOARD_CLIENT_SOCKET = proxy_dir(CONTAINER_WORKSPACE) / CLIPBOARD_PROXY_SOCKET_NAME

# The only clipboard reads the shim answers; anything else is not an image read
CLIPBOARD_INVOCATIONS = {
    "xclip": ("-selection", "clipboard", "-t", "image/png", "-o"),
    "wl-paste": ("--type", "image/png"),
}

RECV_CHUNK = 64 * 1024


def send_request(socket_path: Path, payload: bytes, timeout: float | None = None) -> bytes:
    """Send one frame and read the whole response until the server closes.

    Raises:
        ProtocolError: If the socket is missing or the connection fails
    """
    chunks = []
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(str(socket_path))
            sock.sendall(payload)
            while True:
                chunk = sock.recv(RECV_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
    except FileNotFoundError as e:
        raise ProtocolError(f"socket not found: {socket_path}") from e
    except OSError as e:
        raise ProtocolError(f"connection to {socket_path} failed: {e}") from e

    if not chunks:
        raise ProtocolError("failed to parse response: connection closed without a response")
    return b"".join(chunks)


def call(socket_path: Path, request: CommandRequest | ClipboardRequest) -> dict[str, Any]:
    """Round-trip one request and return the validated response object."""
    return decode_response(send_request(socket_path, encode_request(request)))


def _mirror(obj: dict[str, Any], stdout: IO[bytes], stderr: IO[str]) -> int:
    data = response_stdout(obj)
    stdout.write(data)
    stdout.flush()
    message = obj.get("stderr", "")
    if message:
        stderr.write(message)
        stderr.flush()
    return obj["exit_code"]


def run_gh_client(
    args: Sequence[str],
    socket_path: Path = GH_CLIENT_SOCKET,
    stdout: IO[bytes] | None = None,
    stderr: IO[str] | None = None,
) -> int:
    """Forward a gh argument vector; returns the exit status to use."""
    stdout = stdout if stdout is not None else sys.stdout.buffer
    stderr = stderr if stderr is not None else sys.stderr
    try:
        obj = call(socket_path, CommandRequest(args=list(args)))
        return _mirror(obj, stdout, stderr)
    except ProtocolError as e:
        stderr.write(f"gh-proxy-client: {e}\n")
        return 1


def run_clipboard_client(
    invocation: str,
    args: Sequence[str],
    socket_path: Path = CLIPBOARD_CLIENT_SOCKET,
    stdout: IO[bytes] | None = None,
    stderr: IO[str] | None = None,
) -> int:
    """Answer an xclip/wl-paste image read from the clipboard proxy."""
    stdout = stdout if stdout is not None else sys.stdout.buffer
    stderr = stderr if stderr is not None else sys.stderr

    expected = CLIPBOARD_INVOCATIONS.get(invocation)
    if expected is None:
        stderr.write(f"clipboard-proxy-client: unknown invocation: {invocation}\n")
        return 1
    if tuple(args) != expected:
        stderr.write(
            f"clipboard-proxy-client: only '{invocation} {' '.join(expected)}' "
            f"is supported in the sandbox\n"
        )
        return 1

    try:
        obj = call(socket_path, ClipboardRequest(command="read_image"))
        return _mirror(obj, stdout, stderr)
    except ProtocolError as e:
        stderr.write(f"clipboard-proxy-client: {e}\n")
        return 1
