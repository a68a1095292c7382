"""clipboard-proxy: hand the newest host screenshot to the container.

Substitutes for clipboard image reads inside the container. The only
recognized command is "read_image".
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from sandbox_proxy.core.audit import AuditLogger
from sandbox_proxy.core.codec import clipboard_response, decode_clipboard_request
from sandbox_proxy.core.config import ProxyConfig, audit_log_path
from sandbox_proxy.core.models import (
    EXIT_DENIED,
    EXIT_EXEC_ERROR,
    AuditAction,
    AuditDecision,
    ClipboardResponse,
    ProtocolError,
)
from sandbox_proxy.proxy.server import ProxyService, UnixProxyServer
from sandbox_proxy.sandbox.executor import CancelCheck
from sandbox_proxy.sandbox.screenshots import Found, ScreenshotSelector

logger = logging.getLogger(__name__)

READ_IMAGE = "read_image"


class ClipboardProxyService(ProxyService):
    name = "clipboard-proxy"

    def __init__(self, audit: AuditLogger, selector: ScreenshotSelector) -> None:
        super().__init__(audit)
        self.selector = selector

    def handle(self, line: bytes, cancelled: CancelCheck | None = None) -> ClipboardResponse:
        try:
            request = decode_clipboard_request(line)
        except ProtocolError as e:
            logger.info(f"clipboard-proxy: rejected malformed request: {e}")
            return self.reject_frame(line, str(e))

        if request.command != READ_IMAGE:
            reason = f"unknown command: {request.command}"
            self.audit.log(
                request.command,
                AuditDecision.DENIED,
                AuditAction.INVALID,
                reason=reason,
                exit_code=EXIT_DENIED,
            )
            return self.error_response(EXIT_DENIED, reason)

        return self.read_image()

    def read_image(self) -> ClipboardResponse:
        started = time.monotonic()
        result = self.selector.latest_image()
        elapsed_ms = (time.monotonic() - started) * 1000

        if isinstance(result, Found):
            logger.info(f"clipboard-proxy: serving {result.path} ({len(result.data)} bytes)")
            self.audit.log(
                READ_IMAGE,
                AuditDecision.ALLOWED,
                AuditAction.READ_IMAGE,
                reason=str(result.path),
                exit_code=0,
                duration_ms=elapsed_ms,
            )
            return clipboard_response(0, result.data)

        logger.info(f"clipboard-proxy: {result.reason}")
        self.audit.log(
            READ_IMAGE,
            AuditDecision.ALLOWED,
            AuditAction.READ_IMAGE,
            reason=result.reason,
            exit_code=EXIT_EXEC_ERROR,
            duration_ms=elapsed_ms,
        )
        return self.error_response(EXIT_EXEC_ERROR, result.reason)

    def error_response(self, exit_code: int, message: str) -> ClipboardResponse:
        return ClipboardResponse(exit_code=exit_code, stderr=self.diagnostic(message))


def create_clipboard_proxy(socket_path: Path, config: ProxyConfig) -> UnixProxyServer:
    """Wire a clipboard-proxy server reading from config.screenshots_dir.

    Raises:
        ResourceError: If the socket cannot be bound
    """
    audit = AuditLogger(audit_log_path(socket_path), ClipboardProxyService.name)
    selector = ScreenshotSelector(
        config.screenshots_dir,
        max_age=config.screenshot_max_age,
        extensions=config.screenshot_extensions,
    )
    return UnixProxyServer(socket_path, ClipboardProxyService(audit, selector), config)
